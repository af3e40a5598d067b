import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from audit import AuditAction, AuditLog, InventoryMeta
from database import read_connection, transaction
from errors import NotFound, OutOfStock, ValidationError
from models import ActorType, Book, Money, to_cents, utcnow

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Sole writer of ``books.available_copies``.

    Both mutations are single conditional UPDATE statements; the row count
    tells whether the guard held. Callers pass the connection of the
    transaction they are running in.
    """

    def __init__(self, db_file: Optional[str] = None, audit: Optional[AuditLog] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db_file = db_file
        self.clock = clock
        self.audit = audit or AuditLog(db_file, clock=clock)

    # ------------------------- Core operations ------------------------- #
    def reserve_copy(self, conn: sqlite3.Connection, book_id: str) -> None:
        """Take one copy off the shelf, or raise OutOfStock."""
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
            (book_id,),
        )
        if cursor.rowcount == 1:
            return
        if not self._book_exists(conn, book_id):
            raise NotFound(f"Book {book_id} not found.")
        raise OutOfStock(f"No copies of book {book_id} are available.", details={"book_id": book_id})

    def release_copy(self, conn: sqlite3.Connection, book_id: str) -> bool:
        """Put one copy back, capped at total_copies.

        Returns False when the count was already at the cap.
        """
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies + 1 "
            "WHERE id = ? AND available_copies < total_copies",
            (book_id,),
        )
        if cursor.rowcount == 1:
            return True
        if not self._book_exists(conn, book_id):
            raise NotFound(f"Book {book_id} not found.")
        logger.warning(f"Release of book {book_id} ignored: available copies already at total")
        return False

    # ------------------------- Catalogue ------------------------- #
    def add_book(
        self,
        title: str,
        author: str,
        *,
        total_copies: int = 1,
        isbn: Optional[str] = None,
        price: Optional[Money] = None,
        reserve_on_request: bool = False,
        book_id: Optional[str] = None,
    ) -> Book:
        """Register a title with all of its copies available."""
        title = (title or "").strip()
        author = (author or "").strip()
        if not title or not author:
            raise ValidationError("Title and author are required.")
        if total_copies < 0:
            raise ValidationError("Total copies cannot be negative.")
        price_cents = to_cents(price) if price is not None else None
        if price_cents is not None and price_cents < 0:
            raise ValidationError("Price cannot be negative.")

        book_id = book_id or str(uuid.uuid4())
        try:
            with transaction(self.db_file) as conn:
                conn.execute(
                    """
                    INSERT INTO books (id, title, author, isbn, price_cents, total_copies,
                                       available_copies, reserve_on_request, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (book_id, title, author, isbn, price_cents, total_copies, total_copies,
                     int(reserve_on_request), self.clock().isoformat()),
                )
                self.audit.append(
                    conn,
                    AuditAction.INVENTORY_UPDATED,
                    ActorType.ADMIN,
                    target_book_id=book_id,
                    metadata=InventoryMeta(total_copies=total_copies, available_copies=total_copies),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Book with id {book_id} already exists.") from e
        logger.info(f"Added book {book_id} '{title}' with {total_copies} copies")
        return self.get_book(book_id)

    def get_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Book:
        if conn is not None:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        else:
            with read_connection(self.db_file) as own:
                row = own.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound(f"Book {book_id} not found.")
        return Book.from_row(row)

    def list_books(self) -> List[Book]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY title").fetchall()
        return [Book.from_row(row) for row in rows]

    @staticmethod
    def _book_exists(conn: sqlite3.Connection, book_id: str) -> bool:
        return conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is not None
