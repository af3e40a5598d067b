from decimal import Decimal

import httpx
import pytest

from config import FeatureFlags
from errors import ExternalServiceError
from notifications import EmailTemplates, HttpEmailSender, LoggingEmailSender, default_sender
from utils.validators import AmountValidator, ConfirmationValidator, ISBNValidator, TextValidator


# ------------------------- Feature flags ------------------------- #
def test_flags_default_values(monkeypatch):
    monkeypatch.delenv("FEATURE_RESERVE_ON_REQUEST", raising=False)
    monkeypatch.delenv("FEATURE_ENABLE_OVERDUE", raising=False)
    flags = FeatureFlags.from_env()
    assert flags.reserve_on_request is False
    assert flags.enable_overdue is True


def test_flags_read_environment(monkeypatch):
    monkeypatch.setenv("FEATURE_RESERVE_ON_REQUEST", "true")
    monkeypatch.setenv("FEATURE_ENABLE_NOTIFY", "0")
    flags = FeatureFlags.from_env()
    assert flags.is_enabled("RESERVE_ON_REQUEST")
    assert not flags.is_enabled("enable_notify")


def test_unknown_flag():
    with pytest.raises(KeyError):
        FeatureFlags().is_enabled("ENABLE_TELEPORT")


# ------------------------- Email transport ------------------------- #
def test_http_sender_posts_to_relay():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    sender = HttpEmailSender("https://relay.test/send", client=httpx.Client(transport=httpx.MockTransport(handler)))
    sender.send_email("mia@library.test", "Hello", "Body")

    assert seen[0].url == "https://relay.test/send"
    assert b"mia@library.test" in seen[0].content


def test_http_sender_raises_on_rejection():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    sender = HttpEmailSender("https://relay.test/send", client=client)
    with pytest.raises(ExternalServiceError):
        sender.send_email("mia@library.test", "Hello", "Body")


def test_http_sender_raises_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    sender = HttpEmailSender("https://relay.test/send", client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(ExternalServiceError, match="unreachable"):
        sender.send_email("mia@library.test", "Hello", "Body")


def test_default_sender_logs_without_relay(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "email_relay_url", None)
    assert isinstance(default_sender(), LoggingEmailSender)


def test_templates():
    subject, body = EmailTemplates.return_rejected("Mia", "Dune", "Missing pages")
    assert subject == "Your Book Return Request has been Rejected"
    assert "Missing pages" in body
    subject, body = EmailTemplates.overdue("Mia", "Dune", "2026-03-09", 3)
    assert "Dune" in subject
    assert "3 day(s)" in body


# ------------------------- Validators ------------------------- #
@pytest.mark.parametrize("isbn", ["0306406152", "978-0-306-40615-7", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(ISBNValidator.normalize_isbn(isbn))


@pytest.mark.parametrize("isbn", ["", "1234567890", "978030640615", "abc"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(ISBNValidator.normalize_isbn(isbn))


def test_text_validators():
    assert TextValidator.validate_title("Dune")
    assert not TextValidator.validate_title("   ")
    assert TextValidator.validate_author("Frank Herbert")
    assert not TextValidator.validate_author("1984")
    assert TextValidator.validate_email("mia@library.test")
    assert not TextValidator.validate_email("not-an-email")


def test_confirmation_validator():
    assert ConfirmationValidator.matches("  Return ", "Dune")
    assert ConfirmationValidator.matches("dune", "Dune Messiah")
    assert not ConfirmationValidator.matches("yes", "Dune")
    assert ConfirmationValidator.is_blank("   ")


@pytest.mark.parametrize("raw, expected", [("10", Decimal("10")), ("0.50", Decimal("0.50")), ("0", None),
                                           ("-1", None), ("NaN", None), ("ten", None), (None, None)])
def test_amount_validator(raw, expected):
    assert AmountValidator.parse(raw) == expected
