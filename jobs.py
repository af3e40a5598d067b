"""Scheduled jobs: penalty sweep, reminders, outbox delivery and checks.

Every job can be interrupted and run again; per-item work is idempotent.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from audit import AuditAction, AuditLog, JobMeta, NotificationMeta
from config import FeatureFlags
from database import read_connection, transaction
from errors import LendingError
from idempotency import IdempotencyGuard
from metrics import DUE_SOON_NOTIFICATIONS_SENT, OVERDUE_NOTIFICATIONS_SENT, LibraryMetrics
from models import ActorType, utcnow
from notifications import DrainReport, EmailSender, EmailTemplates, NotificationOutbox
from penalties import PenaltyCalculator, SweepReport, days_overdue
from restrictions import RestrictionEngine

logger = logging.getLogger(__name__)

REMINDER_TTL_SECONDS = 2 * 24 * 60 * 60


@dataclass
class ReminderReport:
    run_date: str
    skipped: bool = False
    due_soon: int = 0
    overdue: int = 0
    already_sent: int = 0

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date,
            "skipped": self.skipped,
            "due_soon": self.due_soon,
            "overdue": self.overdue,
            "already_sent": self.already_sent,
        }


@dataclass
class InvariantReport:
    checked: int = 0
    violations: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {"checked": self.checked, "ok": self.ok, "violations": list(self.violations)}


class JobRunner:
    def __init__(
        self,
        db_file: Optional[str] = None,
        *,
        audit: Optional[AuditLog] = None,
        penalties: Optional[PenaltyCalculator] = None,
        restrictions: Optional[RestrictionEngine] = None,
        guard: Optional[IdempotencyGuard] = None,
        outbox: Optional[NotificationOutbox] = None,
        metrics: Optional[LibraryMetrics] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_file = db_file
        self.clock = clock
        self.metrics = metrics or LibraryMetrics(db_file, clock)
        self.audit = audit or AuditLog(db_file, clock=clock)
        self.restrictions = restrictions or RestrictionEngine(db_file, self.audit, clock=clock)
        self.penalties = penalties or PenaltyCalculator(db_file, self.audit, self.restrictions, clock)
        self.guard = guard or IdempotencyGuard(db_file, clock, self.metrics)
        self.outbox = outbox or NotificationOutbox(db_file, clock=clock, metrics=self.metrics)

    def run_penalty_sweep(self, today: Optional[date] = None, flags: Optional[FeatureFlags] = None) -> SweepReport:
        return self.penalties.run_sweep(today, flags)

    def process_due_reminders(self, today: Optional[date] = None,
                              flags: Optional[FeatureFlags] = None) -> ReminderReport:
        """Queue due-tomorrow and overdue reminders, at most one per loan per day."""
        flags = flags or FeatureFlags.from_env()
        today = today or self.clock().date()
        report = ReminderReport(run_date=today.isoformat())
        if not flags.enable_email_notifications:
            report.skipped = True
            return report

        tomorrow = (today + timedelta(days=1)).isoformat()
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.user_id, r.book_id, r.due_date, u.full_name, u.email, b.title
                FROM borrow_records r
                JOIN users u ON u.id = r.user_id
                JOIN books b ON b.id = r.book_id
                WHERE r.status = 'BORROWED' AND (r.due_date = ? OR r.due_date < ?)
                ORDER BY r.due_date
                """,
                (tomorrow, today.isoformat()),
            ).fetchall()

        for row in rows:
            kind = "due_soon" if row["due_date"] == tomorrow else "overdue"
            overdue_days = days_overdue(row["due_date"], today)
            key = self.guard.derive_key("reminder", {"kind": kind, "record": row["id"], "date": today.isoformat()})

            def send(conn: sqlite3.Connection, row=row, kind=kind, overdue_days=overdue_days) -> str:
                if kind == "due_soon":
                    message = EmailTemplates.due_soon(row["full_name"], row["title"], row["due_date"])
                else:
                    message = EmailTemplates.overdue(row["full_name"], row["title"], row["due_date"], overdue_days)
                self.outbox.enqueue(conn, row["email"], message)
                self.metrics.increment(
                    conn, DUE_SOON_NOTIFICATIONS_SENT if kind == "due_soon" else OVERDUE_NOTIFICATIONS_SENT
                )
                self.audit.append(
                    conn,
                    AuditAction.REMINDER_SENT,
                    ActorType.SYSTEM,
                    target_user_id=row["user_id"],
                    target_book_id=row["book_id"],
                    metadata=NotificationMeta(
                        notification_type=kind,
                        borrow_record_id=row["id"],
                        due_date=row["due_date"],
                        days_overdue=overdue_days if kind == "overdue" else None,
                    ),
                    enabled=flags.enable_audit_logs,
                )
                return kind

            result = self.guard.run(key, "reminder", send, REMINDER_TTL_SECONDS)
            if result.replayed:
                report.already_sent += 1
            elif kind == "due_soon":
                report.due_soon += 1
            else:
                report.overdue += 1

        logger.info(f"Reminders {report.run_date}: {report.due_soon} due soon, {report.overdue} overdue, "
                    f"{report.already_sent} already sent")
        return report

    def drain_outbox(self, sender: EmailSender, limit: Optional[int] = None) -> DrainReport:
        return self.outbox.drain(sender, limit)

    def check_inventory_invariants(self, flags: Optional[FeatureFlags] = None) -> InvariantReport:
        """Verify copy counts against open loans and reserved requests.

        For every book: available + on loan + held by pending requests == total.
        Violations are audited, never repaired automatically.
        """
        flags = flags or FeatureFlags.from_env()
        report = InvariantReport()
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.total_copies, b.available_copies,
                       (SELECT COUNT(*) FROM borrow_records r
                         WHERE r.book_id = b.id AND r.status = 'BORROWED') AS on_loan,
                       (SELECT COUNT(*) FROM borrow_requests q
                         WHERE q.book_id = b.id AND q.status = 'PENDING' AND q.copy_reserved = 1) AS held
                FROM books b
                """
            ).fetchall()
        broken = []
        for row in rows:
            report.checked += 1
            accounted = row["available_copies"] + row["on_loan"] + row["held"]
            if row["available_copies"] < 0 or accounted != row["total_copies"]:
                detail = (f"book {row['id']}: total={row['total_copies']} available={row['available_copies']} "
                          f"on_loan={row['on_loan']} held={row['held']}")
                report.violations.append(detail)
                broken.append((row["id"], row["available_copies"], detail))
        if report.violations:
            logger.error(f"Inventory invariant violated for {len(report.violations)} book(s)")
            with transaction(self.db_file) as conn:
                self.audit.append(
                    conn,
                    AuditAction.INVARIANT_VIOLATION,
                    ActorType.SYSTEM,
                    metadata=JobMeta(job="check_inventory_invariants", details=report.violations),
                    enabled=flags.enable_audit_logs,
                )
                for book_id, available, detail in broken:
                    self.metrics.alert_inventory_violation(conn, book_id, available, detail)
        return report

    def run_nightly_jobs(self, sender: EmailSender, today: Optional[date] = None,
                         flags: Optional[FeatureFlags] = None) -> Dict[str, Any]:
        """Run every scheduled job in order; one failing job does not stop the rest."""
        flags = flags or FeatureFlags.from_env()
        today = today or self.clock().date()
        if not flags.enable_background_jobs:
            logger.info("Background jobs disabled, nothing to run")
            return {"skipped": True}

        steps = [
            ("penalty_sweep", lambda: self.run_penalty_sweep(today, flags).to_dict()),
            ("restrictions", lambda: {"evaluated": len(self.restrictions.evaluate_all(flags))}),
            ("reminders", lambda: self.process_due_reminders(today, flags).to_dict()),
            ("idempotency_purge", lambda: {"purged": self.guard.purge_expired()}),
            ("outbox", lambda: vars(self.drain_outbox(sender))),
            ("inventory_check", lambda: self.check_inventory_invariants(flags).to_dict()),
            ("metrics_purge", lambda: {"purged": self.metrics.purge()}),
        ]
        results: Dict[str, Any] = {"skipped": False, "run_date": today.isoformat()}
        failed = 0
        for name, step in steps:
            try:
                results[name] = step()
            except (LendingError, sqlite3.Error) as e:
                logger.exception(f"Nightly job {name} failed")
                results[name] = {"error": str(e)}
                failed += 1
                self._record_failure(name, e, flags)
        if failed:
            self.metrics.check_failure_rate("nightly_jobs", failed, len(steps))
        results["metrics"] = self.metrics.snapshot().to_dict()
        return results

    def _record_failure(self, job: str, error: Exception, flags: FeatureFlags) -> None:
        try:
            with transaction(self.db_file) as conn:
                self.audit.append(
                    conn,
                    AuditAction.JOB_FAILED,
                    ActorType.SYSTEM,
                    metadata=JobMeta(job=job, error=str(error)),
                    enabled=flags.enable_audit_logs,
                )
        except sqlite3.Error:
            logger.exception(f"Could not record failure of job {job}")
