import os
from datetime import datetime, timedelta, timezone

import pytest

from library import Library
from notifications import EmailSender


class FakeClock:
    """Controllable clock for due dates, fines and idempotency TTLs."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender(EmailSender):
    def __init__(self) -> None:
        self.sent = []

    def send_email(self, to, subject, body):
        self.sent.append((to, subject, body))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def lib(tmp_path, request, clock, sender, monkeypatch):
    # Each test gets its own database file and default feature flags
    for name in list(os.environ):
        if name.startswith("FEATURE_"):
            monkeypatch.delenv(name)
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    yield Library(db_file=db_file, clock=clock, sender=sender)
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def admin(lib):
    return lib.add_user("Ada Admin", "admin@library.test", role="ADMIN")


@pytest.fixture
def member(lib):
    return lib.add_user("Mia Member", "mia@library.test")


@pytest.fixture
def book(lib):
    return lib.add_book("The Pragmatic Programmer", "Hunt", total_copies=2, price="50.00")


@pytest.fixture
def borrowed(lib, admin, member, book):
    """An approved loan of ``book`` to ``member``."""
    request = lib.create_borrow_request(member.id, book.id)
    return lib.approve_borrow_request(request.id, admin.id)
