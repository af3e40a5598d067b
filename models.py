from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

CENT = Decimal("0.01")

Money = Union[Decimal, int, float, str]


# ------------------------- Money & time helpers ------------------------- #
def to_cents(amount: Money) -> int:
    """Convert a monetary amount to integer cents (half-up rounding)."""
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


# ------------------------- Enums ------------------------- #
class UserStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class BorrowRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURN_PENDING = "RETURN_PENDING"
    RETURNED = "RETURNED"


class BorrowRecordStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"


class ReturnRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class FineType(str, Enum):
    LATE_RETURN = "LATE_RETURN"
    LOST_BOOK = "LOST_BOOK"
    DAMAGE_FEE = "DAMAGE_FEE"
    PROCESSING_FEE = "PROCESSING_FEE"


class PenaltyType(str, Enum):
    FLAT_FEE = "FLAT_FEE"
    DAILY_FEE = "DAILY_FEE"
    LOST_BOOK_FEE = "LOST_BOOK_FEE"


class FineStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    WAIVED = "WAIVED"
    PARTIAL_PAID = "PARTIAL_PAID"


OUTSTANDING_FINE_STATUSES = (FineStatus.PENDING.value, FineStatus.PARTIAL_PAID.value)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class ActorType(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class _Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return {key: _jsonable(value) for key, value in asdict(self).items()}


# ------------------------- Entities ------------------------- #
@dataclass
class Book(_Serializable):
    """A catalogue title and its copy counts."""

    id: str
    title: str
    author: str
    total_copies: int
    available_copies: int
    isbn: Optional[str] = None
    price: Optional[Decimal] = None
    reserve_on_request: bool = False
    created_at: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Book":
        return cls(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            price=from_cents(row["price_cents"]) if row["price_cents"] is not None else None,
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            reserve_on_request=bool(row["reserve_on_request"]),
            created_at=row["created_at"],
        )


@dataclass
class User(_Serializable):
    id: str
    full_name: str
    email: str
    status: UserStatus = UserStatus.PENDING
    role: UserRole = UserRole.USER
    total_fines_owed: Decimal = Decimal("0.00")
    is_restricted: bool = False
    restriction_reason: Optional[str] = None
    restricted_at: Optional[str] = None
    last_fine_calculation: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            email=row["email"],
            status=UserStatus(row["status"]),
            role=UserRole(row["role"]),
            total_fines_owed=from_cents(row["total_fines_owed_cents"]),
            is_restricted=bool(row["is_restricted"]),
            restriction_reason=row["restriction_reason"],
            restricted_at=row["restricted_at"],
            last_fine_calculation=row["last_fine_calculation"],
            created_at=row["created_at"],
        )


@dataclass
class BorrowRequest(_Serializable):
    id: str
    user_id: str
    book_id: str
    status: BorrowRequestStatus
    requested_at: str
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    due_date: Optional[str] = None
    borrow_record_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    copy_reserved: bool = False
    admin_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BorrowRequest":
        data = dict(row)
        data["status"] = BorrowRequestStatus(data["status"])
        data["copy_reserved"] = bool(data["copy_reserved"])
        return cls(**data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BorrowRequest":
        data = dict(data)
        data["status"] = BorrowRequestStatus(data["status"])
        return cls(**data)


@dataclass
class BorrowRecord(_Serializable):
    id: str
    user_id: str
    book_id: str
    borrow_date: str
    due_date: str
    status: BorrowRecordStatus = BorrowRecordStatus.BORROWED
    return_date: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "BorrowRecord":
        data = dict(row)
        data["status"] = BorrowRecordStatus(data["status"])
        return cls(**data)


@dataclass
class ReturnRequest(_Serializable):
    id: str
    user_id: str
    book_id: str
    borrow_record_id: str
    status: ReturnRequestStatus
    requested_at: str
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    admin_notes: Optional[str] = None
    is_resubmission: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ReturnRequest":
        data = dict(row)
        data["status"] = ReturnRequestStatus(data["status"])
        data["is_resubmission"] = bool(data["is_resubmission"])
        return cls(**data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReturnRequest":
        data = dict(data)
        data["status"] = ReturnRequestStatus(data["status"])
        return cls(**data)


@dataclass
class Fine(_Serializable):
    id: str
    user_id: str
    book_id: str
    borrow_record_id: str
    fine_type: FineType
    penalty_type: PenaltyType
    amount: Decimal
    paid_amount: Decimal
    status: FineStatus
    due_date: str
    calculation_date: str
    days_overdue: int
    is_book_lost: bool = False
    description: Optional[str] = None
    paid_at: Optional[str] = None
    waived_at: Optional[str] = None
    waived_by: Optional[str] = None
    waiver_reason: Optional[str] = None

    @property
    def outstanding(self) -> Decimal:
        if self.status == FineStatus.WAIVED:
            return Decimal("0.00")
        return max(Decimal("0.00"), self.amount - self.paid_amount)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Fine":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrow_record_id=row["borrow_record_id"],
            fine_type=FineType(row["fine_type"]),
            penalty_type=PenaltyType(row["penalty_type"]),
            amount=from_cents(row["amount_cents"]),
            paid_amount=from_cents(row["paid_cents"]),
            status=FineStatus(row["status"]),
            due_date=row["due_date"],
            calculation_date=row["calculation_date"],
            days_overdue=row["days_overdue"],
            is_book_lost=bool(row["is_book_lost"]),
            description=row["description"],
            paid_at=row["paid_at"],
            waived_at=row["waived_at"],
            waived_by=row["waived_by"],
            waiver_reason=row["waiver_reason"],
        )


@dataclass
class PaymentTransaction(_Serializable):
    id: str
    user_id: str
    fine_ids: List[str]
    total_amount: Decimal
    status: PaymentStatus
    external_ref: Optional[str] = None
    checkout_session_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PaymentTransaction":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            fine_ids=json.loads(row["fine_ids"]),
            total_amount=from_cents(row["total_cents"]),
            status=PaymentStatus(row["status"]),
            external_ref=row["external_ref"],
            checkout_session_id=row["checkout_session_id"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class AuditLogEntry(_Serializable):
    id: int
    action: str
    actor_type: ActorType
    created_at: str
    actor_id: Optional[str] = None
    target_user_id: Optional[str] = None
    target_book_id: Optional[str] = None
    target_request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditLogEntry":
        return cls(
            id=row["id"],
            action=row["action"],
            actor_type=ActorType(row["actor_type"]),
            actor_id=row["actor_id"],
            target_user_id=row["target_user_id"],
            target_book_id=row["target_book_id"],
            target_request_id=row["target_request_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
        )
