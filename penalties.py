"""Overdue penalty schedule and the sweep that applies it.

Schedule, with D the number of days past the due date:

* D <= 0: no fine
* D == 1: flat $10.00
* 2 <= D <= 7: $10.00 plus $0.50 for each day after the first
* D >= 8: the book is considered lost and the fine is 130% of its price
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional

from audit import AuditAction, AuditLog, FineMeta
from config import FeatureFlags, settings
from database import read_connection, transaction
from errors import LendingError, NotFound
from models import (
    CENT,
    OUTSTANDING_FINE_STATUSES,
    ActorType,
    Fine,
    FineStatus,
    FineType,
    Money,
    PenaltyType,
    from_cents,
    parse_date,
    to_cents,
    utcnow,
)
from restrictions import RestrictionEngine

logger = logging.getLogger(__name__)

FLAT_FEE = Decimal("10.00")
DAILY_FEE = Decimal("0.50")
MAX_DAILY_DAYS = 7
LOST_BOOK_MULTIPLIER = Decimal("1.30")


@dataclass(frozen=True)
class PenaltyQuote:
    days_overdue: int
    amount: Decimal
    penalty_type: Optional[PenaltyType] = None
    fine_type: FineType = FineType.LATE_RETURN
    is_book_lost: bool = False

    @property
    def has_fine(self) -> bool:
        return self.penalty_type is not None

    @property
    def description(self) -> str:
        if self.is_book_lost:
            return f"Book considered lost after {self.days_overdue} days overdue"
        if self.penalty_type == PenaltyType.FLAT_FEE:
            return "Late return: 1 day overdue"
        return f"Late return: {self.days_overdue} days overdue"


def calculate_penalty(days_overdue: int, book_price: Optional[Money] = None) -> PenaltyQuote:
    if days_overdue <= 0:
        return PenaltyQuote(days_overdue, Decimal("0.00"))
    if days_overdue == 1:
        return PenaltyQuote(days_overdue, FLAT_FEE, PenaltyType.FLAT_FEE)
    if days_overdue <= MAX_DAILY_DAYS:
        amount = FLAT_FEE + DAILY_FEE * (days_overdue - 1)
        return PenaltyQuote(days_overdue, amount.quantize(CENT), PenaltyType.DAILY_FEE)
    price = Decimal(str(book_price if book_price is not None else settings.default_book_price))
    amount = (price * LOST_BOOK_MULTIPLIER).quantize(CENT, rounding=ROUND_HALF_UP)
    return PenaltyQuote(days_overdue, amount, PenaltyType.LOST_BOOK_FEE, FineType.LOST_BOOK, True)


def days_overdue(due_date, today: date) -> int:
    return (today - parse_date(due_date)).days


@dataclass
class Assessment:
    borrow_record_id: str
    outcome: str  # created | updated | unchanged | no_fine
    fine: Optional[Fine] = None


@dataclass
class SweepReport:
    run_date: str
    skipped: bool = False
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date,
            "skipped": self.skipped,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "errors": list(self.errors),
        }


class PenaltyCalculator:
    """Creates and updates the single Fine row of each overdue loan."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        audit: Optional[AuditLog] = None,
        restrictions: Optional[RestrictionEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_file = db_file
        self.audit = audit or AuditLog(db_file, clock=clock)
        self.restrictions = restrictions or RestrictionEngine(db_file, self.audit, clock=clock)
        self.clock = clock

    def assess_record(self, borrow_record_id: str, today: Optional[date] = None,
                      flags: Optional[FeatureFlags] = None) -> Assessment:
        flags = flags or FeatureFlags.from_env()
        today = today or self.clock().date()
        with transaction(self.db_file) as conn:
            return self.assess_in(conn, borrow_record_id, today, flags)

    def assess_in(self, conn: sqlite3.Connection, borrow_record_id: str, today: date,
                  flags: FeatureFlags) -> Assessment:
        """Apply the schedule to one record inside the caller's transaction."""
        record = conn.execute(
            "SELECT r.*, b.price_cents FROM borrow_records r JOIN books b ON b.id = r.book_id WHERE r.id = ?",
            (borrow_record_id,),
        ).fetchone()
        if record is None:
            raise NotFound(f"Borrow record {borrow_record_id} not found.")

        price = from_cents(record["price_cents"]) if record["price_cents"] is not None else None
        quote = calculate_penalty(days_overdue(record["due_date"], today), price)
        if not quote.has_fine:
            return Assessment(borrow_record_id, "no_fine")

        existing = conn.execute(
            "SELECT * FROM fines WHERE borrow_record_id = ?", (borrow_record_id,)
        ).fetchone()
        now = self.clock().isoformat()
        amount_cents = to_cents(quote.amount)

        if existing is None:
            fine_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO fines (id, user_id, book_id, borrow_record_id, fine_type, penalty_type,
                                   amount_cents, paid_cents, status, due_date, calculation_date,
                                   days_overdue, is_book_lost, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, 'PENDING', ?, ?, ?, ?, ?, ?, ?)
                """,
                (fine_id, record["user_id"], record["book_id"], borrow_record_id, quote.fine_type.value,
                 quote.penalty_type.value, amount_cents, record["due_date"], today.isoformat(),
                 quote.days_overdue, int(quote.is_book_lost), quote.description, now, now),
            )
            self._audit_fine(conn, AuditAction.FINE_CALCULATED, record, fine_id, quote, None, flags)
            outcome = "created"
        elif existing["status"] not in OUTSTANDING_FINE_STATUSES:
            # settled fines are frozen
            return Assessment(borrow_record_id, "unchanged", Fine.from_row(existing))
        elif existing["amount_cents"] == amount_cents and existing["days_overdue"] == quote.days_overdue:
            return Assessment(borrow_record_id, "unchanged", Fine.from_row(existing))
        else:
            fine_id = existing["id"]
            paid = existing["paid_cents"]
            description = quote.description
            excess = None
            if paid > amount_cents:
                # recalculated below what was already paid; keep the surplus on record
                excess = from_cents(paid - amount_cents)
                description = f"{description}; overpaid by ${excess}"
                logger.warning(f"Fine {fine_id} dropped to ${quote.amount} after ${from_cents(paid)} was paid")
            if paid >= amount_cents:
                status = FineStatus.PAID.value
            elif paid > 0:
                status = FineStatus.PARTIAL_PAID.value
            else:
                status = FineStatus.PENDING.value
            cursor = conn.execute(
                """
                UPDATE fines SET fine_type = ?, penalty_type = ?, amount_cents = ?, status = ?,
                                 calculation_date = ?, days_overdue = ?, is_book_lost = ?,
                                 description = ?, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (quote.fine_type.value, quote.penalty_type.value, amount_cents, status, today.isoformat(),
                 quote.days_overdue, int(quote.is_book_lost), description, now, fine_id,
                 *OUTSTANDING_FINE_STATUSES),
            )
            if cursor.rowcount == 0:
                return Assessment(borrow_record_id, "unchanged", Fine.from_row(existing))
            self._audit_fine(conn, AuditAction.FINE_UPDATED, record, fine_id, quote,
                             str(from_cents(existing["amount_cents"])), flags,
                             reason=f"overpaid by ${excess}" if excess is not None else None)
            outcome = "updated"

        conn.execute("UPDATE users SET last_fine_calculation = ? WHERE id = ?", (now, record["user_id"]))
        self.restrictions.evaluate_in(conn, record["user_id"], flags)
        fine = Fine.from_row(conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone())
        logger.info(f"Fine {fine_id} {outcome} for record {borrow_record_id}: ${fine.amount} "
                    f"({quote.days_overdue} days overdue)")
        return Assessment(borrow_record_id, outcome, fine)

    def run_sweep(self, today: Optional[date] = None, flags: Optional[FeatureFlags] = None) -> SweepReport:
        """Assess every active loan past its due date.

        Each record is handled in its own transaction, so a sweep can be
        interrupted and simply run again.
        """
        flags = flags or FeatureFlags.from_env()
        today = today or self.clock().date()
        report = SweepReport(run_date=today.isoformat())
        if not flags.enable_overdue:
            logger.info("Overdue processing disabled, skipping penalty sweep")
            report.skipped = True
            return report

        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT id FROM borrow_records WHERE status = 'BORROWED' AND due_date < ? ORDER BY due_date",
                (today.isoformat(),),
            ).fetchall()

        for row in rows:
            report.processed += 1
            try:
                assessment = self.assess_record(row["id"], today, flags)
            except (LendingError, sqlite3.Error) as e:
                logger.exception(f"Penalty assessment failed for record {row['id']}")
                report.errors.append(f"{row['id']}: {e}")
                continue
            if assessment.outcome == "created":
                report.created += 1
            elif assessment.outcome == "updated":
                report.updated += 1
            else:
                report.unchanged += 1

        logger.info(f"Penalty sweep {report.run_date}: {report.processed} processed, {report.created} created, "
                    f"{report.updated} updated, {len(report.errors)} errors")
        return report

    def _audit_fine(self, conn, action, record, fine_id, quote, previous_amount, flags, reason=None) -> None:
        self.audit.append(
            conn,
            action,
            ActorType.SYSTEM,
            target_user_id=record["user_id"],
            target_book_id=record["book_id"],
            metadata=FineMeta(
                fine_id=fine_id,
                borrow_record_id=record["id"],
                amount=str(quote.amount),
                previous_amount=previous_amount,
                days_overdue=quote.days_overdue,
                is_book_lost=quote.is_book_lost,
                penalty_type=quote.penalty_type.value,
                reason=reason,
            ),
            enabled=flags.enable_audit_logs,
        )
