import re
from decimal import Decimal, InvalidOperation
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 checksum validation for catalogue entries."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:-1].isdigit() or not (s[-1].isdigit() or s[-1] == "X"):
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:-1], 1))
            check = 10 if s[-1] == "X" else int(s[-1])
            return (total + 10 * check) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:-1]))
            return (10 - total % 10) % 10 == int(s[-1])
        return False


class TextValidator:
    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return bool(title and title.strip() and any(c.isalpha() for c in title))

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        return bool(author and author.strip() and not author.strip().isdigit())

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email and re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", email.strip()))


class ConfirmationValidator:
    """Return confirmation codes.

    A borrower confirms a return by typing ``return`` or ``confirm`` or any
    part of the book's title; the comparison ignores case.
    """

    KEYWORDS = ("return", "confirm")

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not text.strip()

    @staticmethod
    def matches(text: Optional[str], book_title: str) -> bool:
        if ConfirmationValidator.is_blank(text):
            return False
        normalized = text.strip().lower()
        if normalized in ConfirmationValidator.KEYWORDS:
            return True
        return normalized in (book_title or "").lower()


class AmountValidator:
    @staticmethod
    def parse(raw) -> Optional[Decimal]:
        """Parse a positive monetary amount; None when it is not one."""
        try:
            value = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return None
        if not value.is_finite() or value <= 0:
            return None
        return value
