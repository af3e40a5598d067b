"""Restriction engine: fine balances and borrowing eligibility.

Two thresholds are deliberately different. Any outstanding balance blocks a
new borrow request, while the account restriction flag is only raised once
the balance exceeds ``settings.restriction_threshold``. Paying down below the
threshold therefore lifts the restriction but still leaves borrowing blocked
until the balance is zero.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from audit import AuditAction, AuditLog, RestrictionMeta
from config import FeatureFlags, settings
from database import read_connection, transaction
from errors import NotFound, Unauthorized
from models import (
    OUTSTANDING_FINE_STATUSES,
    ActorType,
    Fine,
    User,
    UserStatus,
    from_cents,
    to_cents,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class Eligibility:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class RestrictionDecision:
    user_id: str
    restricted: bool
    changed: bool
    balance: Decimal
    reason: Optional[str] = None


@dataclass
class UserStatusSummary:
    user_id: str
    can_borrow: bool
    can_return_books: bool
    is_restricted: bool
    total_fines_owed: Decimal
    restriction_reason: Optional[str] = None
    borrow_block_reason: Optional[str] = None
    active_fines: List[Fine] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if self.is_restricted:
            return f"Account restricted: {self.restriction_reason}"
        if not self.can_borrow:
            return self.borrow_block_reason or "Borrowing is not allowed"
        return "Account in good standing"

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "can_borrow": self.can_borrow,
            "can_return_books": self.can_return_books,
            "is_restricted": self.is_restricted,
            "restriction_reason": self.restriction_reason,
            "total_fines_owed": str(self.total_fines_owed),
            "active_fines": [fine.to_dict() for fine in self.active_fines],
            "summary": self.summary,
        }


class RestrictionEngine:
    def __init__(self, db_file: Optional[str] = None, audit: Optional[AuditLog] = None,
                 threshold: Optional[Decimal] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.db_file = db_file
        self.clock = clock
        self.audit = audit or AuditLog(db_file, clock=clock)
        self.threshold_cents = to_cents(threshold if threshold is not None else settings.restriction_threshold)

    # ------------------------- Balance ------------------------- #
    @staticmethod
    def outstanding_cents(conn: sqlite3.Connection, user_id: str) -> int:
        """Unpaid remainder of the open fines; a fine paid beyond its amount counts as zero."""
        row = conn.execute(
            "SELECT COALESCE(SUM(MAX(amount_cents - paid_cents, 0)), 0) AS owed FROM fines "
            "WHERE user_id = ? AND status IN (?, ?)",
            (user_id, *OUTSTANDING_FINE_STATUSES),
        ).fetchone()
        return row["owed"]

    def recompute_balance(self, conn: sqlite3.Connection, user_id: str) -> int:
        """Recompute the cached balance from the fines table; returns cents."""
        owed = self.outstanding_cents(conn, user_id)
        conn.execute("UPDATE users SET total_fines_owed_cents = ? WHERE id = ?", (owed, user_id))
        return owed

    # ------------------------- Evaluation ------------------------- #
    def evaluate(self, user_id: str, flags: Optional[FeatureFlags] = None) -> RestrictionDecision:
        with transaction(self.db_file) as conn:
            return self.evaluate_in(conn, user_id, flags)

    def evaluate_in(self, conn: sqlite3.Connection, user_id: str,
                    flags: Optional[FeatureFlags] = None) -> RestrictionDecision:
        flags = flags or FeatureFlags.from_env()
        user = _load_user(conn, user_id)
        owed = self.recompute_balance(conn, user_id)
        balance = from_cents(owed)
        threshold = from_cents(self.threshold_cents)

        if owed > self.threshold_cents:
            reason = f"Outstanding fines of ${balance} exceed the ${threshold} limit"
            if user.is_restricted:
                conn.execute("UPDATE users SET restriction_reason = ? WHERE id = ?", (reason, user_id))
                return RestrictionDecision(user_id, True, False, balance, reason)
            conn.execute(
                "UPDATE users SET is_restricted = 1, restriction_reason = ?, restricted_at = ? WHERE id = ?",
                (reason, self.clock().isoformat(), user_id),
            )
            self.audit.append(
                conn,
                AuditAction.USER_RESTRICTED,
                ActorType.SYSTEM,
                target_user_id=user_id,
                metadata=RestrictionMeta(reason=reason, threshold=str(threshold), total_fines=str(balance)),
                enabled=flags.enable_audit_logs,
            )
            logger.info(f"User {user_id} restricted: {reason}")
            return RestrictionDecision(user_id, True, True, balance, reason)

        if user.is_restricted:
            conn.execute(
                "UPDATE users SET is_restricted = 0, restriction_reason = NULL, restricted_at = NULL WHERE id = ?",
                (user_id,),
            )
            self.audit.append(
                conn,
                AuditAction.USER_UNRESTRICTED,
                ActorType.SYSTEM,
                target_user_id=user_id,
                metadata=RestrictionMeta(
                    reason="Outstanding fines at or below limit",
                    threshold=str(threshold),
                    total_fines=str(balance),
                ),
                enabled=flags.enable_audit_logs,
            )
            logger.info(f"Restriction lifted for user {user_id} (balance ${balance})")
            return RestrictionDecision(user_id, False, True, balance)
        return RestrictionDecision(user_id, False, False, balance)

    def evaluate_all(self, flags: Optional[FeatureFlags] = None) -> List[RestrictionDecision]:
        """Re-evaluate every user that owes money or is currently restricted."""
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT id FROM users WHERE is_restricted = 1 OR total_fines_owed_cents > 0 "
                "OR id IN (SELECT user_id FROM fines WHERE status IN (?, ?))",
                OUTSTANDING_FINE_STATUSES,
            ).fetchall()
        return [self.evaluate(row["id"], flags) for row in rows]

    # ------------------------- Eligibility ------------------------- #
    def can_borrow(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> Eligibility:
        if conn is None:
            with read_connection(self.db_file) as own:
                return self.can_borrow(user_id, own)
        user = _load_user(conn, user_id)
        if user.status != UserStatus.APPROVED:
            return Eligibility(False, f"Account status is {user.status.value}, approval required")
        if user.is_restricted:
            return Eligibility(False, f"Account restricted: {user.restriction_reason}")
        owed = self.outstanding_cents(conn, user_id)
        if owed > 0:
            return Eligibility(False, f"Outstanding fines of ${from_cents(owed)} must be paid before borrowing")
        return Eligibility(True)

    def can_return_book(self, user_id: str, borrow_record_id: str,
                        conn: Optional[sqlite3.Connection] = None) -> Eligibility:
        """A return is blocked only by an unpaid fine on that same record."""
        if conn is None:
            with read_connection(self.db_file) as own:
                return self.can_return_book(user_id, borrow_record_id, own)
        row = conn.execute(
            "SELECT amount_cents - paid_cents AS owed FROM fines "
            "WHERE user_id = ? AND borrow_record_id = ? AND status IN (?, ?)",
            (user_id, borrow_record_id, *OUTSTANDING_FINE_STATUSES),
        ).fetchone()
        if row is not None:
            return Eligibility(False, f"Fine of ${from_cents(row['owed'])} on this loan must be paid before returning")
        return Eligibility(True)

    def get_status(self, user_id: str) -> UserStatusSummary:
        with read_connection(self.db_file) as conn:
            user = _load_user(conn, user_id)
            eligibility = self.can_borrow(user_id, conn)
            fine_rows = conn.execute(
                "SELECT * FROM fines WHERE user_id = ? AND status IN (?, ?) ORDER BY created_at",
                (user_id, *OUTSTANDING_FINE_STATUSES),
            ).fetchall()
            blocked_returns = conn.execute(
                "SELECT COUNT(*) AS n FROM fines f JOIN borrow_records r ON r.id = f.borrow_record_id "
                "WHERE f.user_id = ? AND r.status = 'BORROWED' AND f.status IN (?, ?)",
                (user_id, *OUTSTANDING_FINE_STATUSES),
            ).fetchone()["n"]
            owed = self.outstanding_cents(conn, user_id)
        return UserStatusSummary(
            user_id=user_id,
            can_borrow=eligibility.allowed,
            can_return_books=blocked_returns == 0,
            is_restricted=user.is_restricted,
            total_fines_owed=from_cents(owed),
            restriction_reason=user.restriction_reason,
            borrow_block_reason=eligibility.reason,
            active_fines=[Fine.from_row(row) for row in fine_rows],
        )


def _load_user(conn: sqlite3.Connection, user_id: str) -> User:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise NotFound(f"User {user_id} not found.")
    return User.from_row(row)


def require_admin(conn: sqlite3.Connection, admin_id: Optional[str]) -> User:
    if not admin_id:
        raise Unauthorized("An administrator is required for this action.")
    row = conn.execute("SELECT * FROM users WHERE id = ?", (admin_id,)).fetchone()
    if row is None or not User.from_row(row).is_admin:
        logger.warning(f"Non-admin {admin_id} attempted an admin action")
        raise Unauthorized(f"User {admin_id} is not an administrator.")
    return User.from_row(row)
