import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from database import read_connection, transaction
from errors import ValidationError
from metrics import IDEMPOTENCY_HITS, LibraryMetrics
from models import utcnow

logger = logging.getLogger(__name__)

Operation = Callable[[sqlite3.Connection], Any]


@dataclass
class IdempotentResult:
    value: Any
    replayed: bool = False


class IdempotencyGuard:
    """Runs an operation at most once per key.

    The key is claimed with a plain INSERT in the same write transaction that
    runs the operation and stores its result. A second caller with the same
    key either waits on the write lock and then hits the primary-key
    conflict, or finds the committed record; both get the stored result.
    If the operation raises, the claim is rolled back with everything else.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[LibraryMetrics] = None) -> None:
        self.db_file = db_file
        self.clock = clock
        self.metrics = metrics or LibraryMetrics(db_file, clock)

    # ------------------------- Key derivation ------------------------- #
    @staticmethod
    def derive_key(operation: str, params: Dict[str, Any]) -> str:
        """Deterministic key from the operation name and its stable parameters."""
        canonical = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{operation}:{digest}"

    @staticmethod
    def token_key(operation: str, scope: str, token: str) -> str:
        """Key for a caller-supplied token, scoped to the caller and operation."""
        token = (token or "").strip()
        if not token:
            raise ValidationError("Idempotency key cannot be blank.")
        return f"{operation}:{scope}:{token}"

    # ------------------------- Execution ------------------------- #
    def run(self, key: str, operation: str, fn: Operation, ttl_seconds: int, *,
            enabled: bool = True) -> IdempotentResult:
        with transaction(self.db_file) as conn:
            if not enabled:
                return IdempotentResult(fn(conn))
            return self.run_in(conn, key, operation, fn, ttl_seconds)

    def run_in(self, conn: sqlite3.Connection, key: str, operation: str, fn: Operation,
               ttl_seconds: int) -> IdempotentResult:
        """Same as :meth:`run`, inside a transaction the caller already holds."""
        now = self.clock()
        conn.execute(
            "DELETE FROM idempotency_records WHERE operation_key = ? AND expires_at <= ?",
            (key, now.isoformat()),
        )
        try:
            conn.execute(
                """
                INSERT INTO idempotency_records (operation_key, operation, result, created_at, expires_at)
                VALUES (?, ?, NULL, ?, ?)
                """,
                (key, operation, now.isoformat(), (now + timedelta(seconds=ttl_seconds)).isoformat()),
            )
        except sqlite3.IntegrityError:
            row = conn.execute(
                "SELECT result FROM idempotency_records WHERE operation_key = ?", (key,)
            ).fetchone()
            logger.info(f"Operation {operation} already processed for key {key}, returning stored result")
            self.metrics.increment(conn, IDEMPOTENCY_HITS)
            return IdempotentResult(_decode(row["result"]) if row else None, replayed=True)

        value = fn(conn)
        conn.execute(
            "UPDATE idempotency_records SET result = ? WHERE operation_key = ?",
            (json.dumps(value, default=str), key),
        )
        return IdempotentResult(value)

    # ------------------------- Maintenance ------------------------- #
    def lookup(self, key: str) -> Optional[Any]:
        with read_connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT result FROM idempotency_records WHERE operation_key = ? AND expires_at > ?",
                (key, self.clock().isoformat()),
            ).fetchone()
        return _decode(row["result"]) if row else None

    @staticmethod
    def forget(conn: sqlite3.Connection, key: str) -> None:
        """Drop a claim so the next call with the key runs again."""
        conn.execute("DELETE FROM idempotency_records WHERE operation_key = ?", (key,))

    def purge_expired(self) -> int:
        with transaction(self.db_file) as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= ?", (self.clock().isoformat(),)
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Purged {removed} expired idempotency records")
        return removed


def _decode(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw is not None else None
