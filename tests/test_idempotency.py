import pytest

from config import FeatureFlags
from database import read_connection
from errors import DuplicateRequest, ValidationError
from idempotency import IdempotencyGuard


def _count(lib, table):
    with read_connection(lib.db_file) as conn:
        return conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]


def test_runs_once_per_key(lib):
    calls = []

    def op(conn):
        calls.append(1)
        return {"value": len(calls)}

    first = lib.guard.run("op:key", "op", op, 60)
    second = lib.guard.run("op:key", "op", op, 60)
    assert first.value == {"value": 1}
    assert first.replayed is False
    assert second.value == {"value": 1}
    assert second.replayed is True
    assert calls == [1]


def test_key_expires(lib, clock):
    lib.guard.run("op:key", "op", lambda conn: "first", 60)
    clock.advance(seconds=61)
    again = lib.guard.run("op:key", "op", lambda conn: "second", 60)
    assert again.value == "second"
    assert again.replayed is False


def test_failed_operation_releases_key(lib):
    def boom(conn):
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        lib.guard.run("op:key", "op", boom, 60)
    assert lib.guard.lookup("op:key") is None
    assert lib.guard.run("op:key", "op", lambda conn: "ok", 60).value == "ok"


def test_derived_keys_ignore_parameter_order():
    a = IdempotencyGuard.derive_key("create", {"user_id": "u1", "book_id": "b1"})
    b = IdempotencyGuard.derive_key("create", {"book_id": "b1", "user_id": "u1"})
    c = IdempotencyGuard.derive_key("create", {"book_id": "b2", "user_id": "u1"})
    assert a == b
    assert a != c
    assert a.startswith("create:")


def test_empty_token_rejected():
    with pytest.raises(ValidationError):
        IdempotencyGuard.token_key("create", "u1", "   ")


@pytest.mark.parametrize("token", ["", "   "])
def test_blank_token_refuses_borrow_request(lib, member, book, token):
    with pytest.raises(ValidationError):
        lib.create_borrow_request(member.id, book.id, idempotency_key=token)
    assert _count(lib, "borrow_requests") == 0
    assert _count(lib, "idempotency_records") == 0


def test_purge_expired(lib, clock):
    lib.guard.run("short", "op", lambda conn: 1, 10)
    lib.guard.run("long", "op", lambda conn: 2, 3600)
    clock.advance(minutes=1)
    assert lib.guard.purge_expired() == 1
    assert lib.guard.lookup("long") == 2


# ------------------------- Borrow request tokens ------------------------- #
def test_same_token_creates_one_request(lib, member, book, clock):
    first = lib.create_borrow_request(member.id, book.id, idempotency_key="tok-1")
    clock.advance(hours=1)
    second = lib.create_borrow_request(member.id, book.id, idempotency_key="tok-1")
    assert second.id == first.id
    assert second.idempotency_key == first.idempotency_key
    assert _count(lib, "borrow_requests") == 1


def test_tokens_are_scoped_per_user(lib, member, book):
    other = lib.add_user("Omar Other", "omar@library.test")
    mine = lib.create_borrow_request(member.id, book.id, idempotency_key="shared")
    theirs = lib.create_borrow_request(other.id, book.id, idempotency_key="shared")
    assert mine.id != theirs.id


def test_token_survives_derived_window(lib, member, book, clock):
    first = lib.create_borrow_request(member.id, book.id, idempotency_key="tok-2")
    clock.advance(hours=23)
    assert lib.create_borrow_request(member.id, book.id, idempotency_key="tok-2").id == first.id


def test_duplicate_token_without_guard(lib, member, book):
    flags = FeatureFlags(enable_idempotency=False)
    lib.create_borrow_request(member.id, book.id, idempotency_key="tok-3", flags=flags)
    with pytest.raises(DuplicateRequest):
        lib.create_borrow_request(member.id, book.id, idempotency_key="tok-3", flags=flags)
