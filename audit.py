"""Append-only audit log of every state transition in the ledger."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from datetime import datetime
from typing import Callable, List, Optional, Union

from database import read_connection
from models import ActorType, AuditLogEntry, utcnow

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    BORROW_REQUEST_CREATED = "BORROW_REQUEST_CREATED"
    BORROW_REQUEST_APPROVED = "BORROW_REQUEST_APPROVED"
    BORROW_REQUEST_REJECTED = "BORROW_REQUEST_REJECTED"
    RETURN_REQUEST_CREATED = "RETURN_REQUEST_CREATED"
    RETURN_REQUEST_APPROVED = "RETURN_REQUEST_APPROVED"
    RETURN_REQUEST_REJECTED = "RETURN_REQUEST_REJECTED"
    BOOK_BORROWED = "BOOK_BORROWED"
    BOOK_RETURNED = "BOOK_RETURNED"
    INVENTORY_UPDATED = "INVENTORY_UPDATED"
    FINE_CALCULATED = "FINE_CALCULATED"
    FINE_UPDATED = "FINE_UPDATED"
    FINE_WAIVED = "FINE_WAIVED"
    FINE_PAID = "FINE_PAID"
    USER_RESTRICTED = "USER_RESTRICTED"
    USER_UNRESTRICTED = "USER_UNRESTRICTED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    NOTIFICATION_SUBSCRIBED = "NOTIFICATION_SUBSCRIBED"
    REMINDER_SENT = "REMINDER_SENT"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    JOB_FAILED = "JOB_FAILED"


# ------------------------- Metadata shapes ------------------------- #
# Each action carries one of these shapes; ``kind`` is the tag stored with it.
@dataclass
class BorrowRequestMeta:
    kind: str = field(default="borrow_request", init=False)
    idempotency_key: Optional[str] = None
    reserve_on_request: bool = False
    due_date: Optional[str] = None
    borrow_record_id: Optional[str] = None
    admin_notes: Optional[str] = None
    copy_released: bool = False


@dataclass
class ReturnRequestMeta:
    kind: str = field(default="return_request", init=False)
    borrow_record_id: Optional[str] = None
    is_resubmission: bool = False
    return_date: Optional[str] = None
    admin_notes: Optional[str] = None


@dataclass
class InventoryMeta:
    kind: str = field(default="inventory", init=False)
    total_copies: int = 0
    available_copies: int = 0


@dataclass
class FineMeta:
    kind: str = field(default="fine", init=False)
    fine_id: str = ""
    borrow_record_id: Optional[str] = None
    amount: str = "0.00"
    previous_amount: Optional[str] = None
    days_overdue: int = 0
    is_book_lost: bool = False
    penalty_type: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class RestrictionMeta:
    kind: str = field(default="restriction", init=False)
    reason: str = ""
    threshold: str = "0.00"
    total_fines: str = "0.00"


@dataclass
class PaymentMeta:
    kind: str = field(default="payment", init=False)
    transaction_id: str = ""
    external_ref: Optional[str] = None
    checkout_session_id: Optional[str] = None
    amount: str = "0.00"
    fine_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class NotificationMeta:
    kind: str = field(default="notification", init=False)
    notification_type: str = ""
    borrow_record_id: Optional[str] = None
    due_date: Optional[str] = None
    days_overdue: Optional[int] = None


@dataclass
class JobMeta:
    kind: str = field(default="job", init=False)
    job: str = ""
    error: Optional[str] = None
    details: List[str] = field(default_factory=list)


AuditMetadata = Union[
    BorrowRequestMeta,
    ReturnRequestMeta,
    InventoryMeta,
    FineMeta,
    RestrictionMeta,
    PaymentMeta,
    NotificationMeta,
    JobMeta,
]


class AuditLog:
    """Writes audit entries inside the caller's transaction.

    A failed write is logged and rolled back to a savepoint; it never
    aborts the surrounding transaction.
    """

    def __init__(self, db_file: Optional[str] = None, enabled: bool = True,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db_file = db_file
        self.enabled = enabled
        self.clock = clock

    def append(
        self,
        conn: sqlite3.Connection,
        action: AuditAction,
        actor_type: ActorType,
        *,
        actor_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
        target_book_id: Optional[str] = None,
        target_request_id: Optional[str] = None,
        metadata: Optional[AuditMetadata] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if not (self.enabled if enabled is None else enabled):
            return
        payload = json.dumps(asdict(metadata), default=str) if metadata is not None else None
        try:
            conn.execute("SAVEPOINT audit_entry")
        except sqlite3.Error:
            logger.exception(f"Could not open savepoint for audit entry {action.value}")
            return
        try:
            conn.execute(
                """
                INSERT INTO audit_logs (action, actor_type, actor_id, target_user_id,
                                        target_book_id, target_request_id, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.value,
                    actor_type.value,
                    actor_id,
                    target_user_id,
                    target_book_id,
                    target_request_id,
                    payload,
                    self.clock().isoformat(),
                ),
            )
            conn.execute("RELEASE SAVEPOINT audit_entry")
        except sqlite3.Error:
            logger.exception(f"Failed to write audit entry {action.value}")
            conn.execute("ROLLBACK TO SAVEPOINT audit_entry")
            conn.execute("RELEASE SAVEPOINT audit_entry")

    def entries(
        self,
        *,
        action: Optional[AuditAction] = None,
        target_user_id: Optional[str] = None,
        target_request_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Read entries, newest first."""
        clauses = []
        params: list = []
        if action is not None:
            clauses.append("action = ?")
            params.append(action.value)
        if target_user_id is not None:
            clauses.append("target_user_id = ?")
            params.append(target_user_id)
        if target_request_id is not None:
            clauses.append("target_request_id = ?")
            params.append(target_request_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY id DESC LIMIT ?", params
            ).fetchall()
        return [AuditLogEntry.from_row(row) for row in rows]
