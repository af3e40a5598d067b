import pytest

from audit import AuditAction
from database import transaction
from errors import NotFound, OutOfStock, ValidationError


def _reserve(lib, book_id):
    with transaction(lib.db_file) as conn:
        lib.inventory.reserve_copy(conn, book_id)


def _release(lib, book_id):
    with transaction(lib.db_file) as conn:
        return lib.inventory.release_copy(conn, book_id)


def test_add_book_starts_fully_available(lib):
    book = lib.add_book("Dune", "Frank Herbert", total_copies=3, price="19.99")
    assert book.available_copies == 3
    assert book.total_copies == 3
    assert str(book.price) == "19.99"
    assert [b.id for b in lib.list_books()] == [book.id]


def test_add_book_is_audited(lib):
    book = lib.add_book("Dune", "Frank Herbert", total_copies=3)
    entries = lib.audit.entries(action=AuditAction.INVENTORY_UPDATED)
    assert len(entries) == 1
    assert entries[0].target_book_id == book.id
    assert entries[0].metadata == {"kind": "inventory", "total_copies": 3, "available_copies": 3}


def test_add_book_rejects_bad_input(lib):
    with pytest.raises(ValidationError):
        lib.add_book("", "Someone")
    with pytest.raises(ValidationError):
        lib.add_book("Title", "12345")
    with pytest.raises(ValidationError):
        lib.add_book("Title", "Author", total_copies=-1)
    with pytest.raises(ValidationError, match="ISBN"):
        lib.add_book("Title", "Author", isbn="1234567890")


def test_duplicate_book_id_is_rejected(lib):
    lib.add_book("Dune", "Frank Herbert", book_id="dune")
    with pytest.raises(ValidationError, match="already exists"):
        lib.add_book("Dune Messiah", "Frank Herbert", book_id="dune")


def test_reserve_until_out_of_stock(lib):
    book = lib.add_book("Dune", "Frank Herbert", total_copies=2)
    _reserve(lib, book.id)
    _reserve(lib, book.id)
    with pytest.raises(OutOfStock):
        _reserve(lib, book.id)
    assert lib.get_book(book.id).available_copies == 0


def test_release_is_capped_at_total(lib):
    book = lib.add_book("Dune", "Frank Herbert", total_copies=1)
    assert _release(lib, book.id) is False
    _reserve(lib, book.id)
    assert _release(lib, book.id) is True
    assert lib.get_book(book.id).available_copies == 1


def test_unknown_book(lib):
    with pytest.raises(NotFound):
        _reserve(lib, "missing")
    with pytest.raises(NotFound):
        _release(lib, "missing")
    with pytest.raises(NotFound):
        lib.get_book("missing")


def test_zero_copy_book_is_out_of_stock(lib):
    book = lib.add_book("Rare Manuscript", "Anonymous Scribe", total_copies=0)
    with pytest.raises(OutOfStock):
        _reserve(lib, book.id)
