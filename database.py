import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# Make sure .env is loaded before the database path is resolved, even when this
# module is imported before config.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) LIBRARY_DATA_FILE (legacy variable read by config.py/.env)
# 3) per-process temp file
def default_database_file() -> str:
    return (
        os.environ.get("LIBRARY_DB_FILE")
        or os.environ.get("LIBRARY_DATA_FILE")
        or os.path.join(tempfile.gettempdir(), f"library_{os.getpid()}.db")
    )


DATABASE_FILE = default_database_file()


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode (``isolation_level=None``); writes go
    through :func:`transaction`, which opens an explicit ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers run alongside the single writer
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
    concurrent callers serialize here instead of failing later on upgrade.
    Commits on success, rolls back on any exception and re-raises it.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED')),
        role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'ADMIN')),
        total_fines_owed_cents INTEGER NOT NULL DEFAULT 0,
        is_restricted INTEGER NOT NULL DEFAULT 0,
        restriction_reason TEXT,
        restricted_at TIMESTAMP,
        last_fine_calculation TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT,
        price_cents INTEGER,
        total_copies INTEGER NOT NULL DEFAULT 1 CHECK (total_copies >= 0),
        available_copies INTEGER NOT NULL DEFAULT 0,
        reserve_on_request INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        CHECK (available_copies >= 0 AND available_copies <= total_copies)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrow_records (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        book_id TEXT NOT NULL REFERENCES books(id),
        borrow_date TIMESTAMP NOT NULL,
        due_date DATE NOT NULL,
        return_date DATE,
        status TEXT NOT NULL DEFAULT 'BORROWED' CHECK (status IN ('BORROWED', 'RETURNED')),
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrow_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        book_id TEXT NOT NULL REFERENCES books(id),
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED', 'RETURN_PENDING', 'RETURNED')),
        requested_at TIMESTAMP NOT NULL,
        approved_at TIMESTAMP,
        rejected_at TIMESTAMP,
        due_date DATE,
        borrow_record_id TEXT REFERENCES borrow_records(id),
        idempotency_key TEXT UNIQUE,
        copy_reserved INTEGER NOT NULL DEFAULT 0,
        admin_notes TEXT,
        CHECK (NOT (approved_at IS NOT NULL AND rejected_at IS NOT NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS return_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        book_id TEXT NOT NULL REFERENCES books(id),
        borrow_record_id TEXT NOT NULL REFERENCES borrow_records(id),
        status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN ('PENDING', 'APPROVED', 'REJECTED')),
        requested_at TIMESTAMP NOT NULL,
        approved_at TIMESTAMP,
        rejected_at TIMESTAMP,
        admin_notes TEXT,
        is_resubmission INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fines (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        book_id TEXT NOT NULL REFERENCES books(id),
        borrow_record_id TEXT NOT NULL UNIQUE REFERENCES borrow_records(id),
        fine_type TEXT NOT NULL
            CHECK (fine_type IN ('LATE_RETURN', 'LOST_BOOK', 'DAMAGE_FEE', 'PROCESSING_FEE')),
        penalty_type TEXT NOT NULL CHECK (penalty_type IN ('FLAT_FEE', 'DAILY_FEE', 'LOST_BOOK_FEE')),
        amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
        paid_cents INTEGER NOT NULL DEFAULT 0 CHECK (paid_cents >= 0),
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'PAID', 'WAIVED', 'PARTIAL_PAID')),
        due_date DATE NOT NULL,
        calculation_date DATE NOT NULL,
        days_overdue INTEGER NOT NULL,
        is_book_lost INTEGER NOT NULL DEFAULT 0,
        description TEXT,
        paid_at TIMESTAMP,
        waived_at TIMESTAMP,
        waived_by TEXT,
        waiver_reason TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        fine_ids TEXT NOT NULL,
        total_cents INTEGER NOT NULL CHECK (total_cents > 0),
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED')),
        external_ref TEXT UNIQUE,
        checkout_session_id TEXT,
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fine_payments (
        id TEXT PRIMARY KEY,
        fine_id TEXT NOT NULL REFERENCES fines(id),
        user_id TEXT NOT NULL REFERENCES users(id),
        transaction_id TEXT NOT NULL REFERENCES payment_transactions(id),
        amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
        payment_reference TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        operation_key TEXT PRIMARY KEY,
        operation TEXT NOT NULL,
        result TEXT,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        actor_type TEXT NOT NULL CHECK (actor_type IN ('USER', 'ADMIN', 'SYSTEM')),
        actor_id TEXT,
        target_user_id TEXT,
        target_book_id TEXT,
        target_request_id TEXT,
        metadata TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_preferences (
        user_id TEXT NOT NULL REFERENCES users(id),
        book_id TEXT NOT NULL REFERENCES books(id),
        notify_on_available INTEGER NOT NULL DEFAULT 1,
        notified_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, book_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_outbox (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recipient TEXT NOT NULL,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN ('PENDING', 'SENT', 'FAILED')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMP NOT NULL,
        sent_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metric_counters (
        name TEXT NOT NULL,
        period TEXT NOT NULL,
        value INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (name, period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        severity TEXT NOT NULL CHECK (severity IN ('HIGH', 'CRITICAL')),
        message TEXT NOT NULL,
        details TEXT,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_borrow_requests_user_book ON borrow_requests(user_id, book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_borrow_requests_status ON borrow_requests(status)",
    "CREATE INDEX IF NOT EXISTS idx_borrow_records_status_due ON borrow_records(status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_borrow_records_user ON borrow_records(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_return_requests_record ON return_requests(borrow_record_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_fines_user_status ON fines(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_fine_payments_fine ON fine_payments(fine_id)",
    "CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_records(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_action ON audit_logs(action)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_target_user ON audit_logs(target_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_outbox_status ON notification_outbox(status, id)",
    "CREATE INDEX IF NOT EXISTS idx_notification_prefs_book ON notification_preferences(book_id, notify_on_available)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_expires ON alerts(expires_at)",
]


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the ledger tables and indexes if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        for statement in INDEXES:
            conn.execute(statement)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")
