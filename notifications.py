"""Notification outbox.

State-changing operations record the intent to email inside their own
transaction; :meth:`NotificationOutbox.drain` delivers afterwards, so a
transport failure never touches ledger state and can be retried on its own.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import httpx

from config import settings
from database import read_connection, transaction
from errors import ExternalServiceError
from metrics import EMAIL_FAILURES, EMAILS_SENT, LibraryMetrics
from models import utcnow

logger = logging.getLogger(__name__)


# ------------------------- Senders ------------------------- #
class EmailSender:
    """Transport interface: deliver one message or raise."""

    def send_email(self, to: str, subject: str, body: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class LoggingEmailSender(EmailSender):
    """Writes messages to the log instead of delivering them (development default)."""

    def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"[email] to={to} subject={subject!r}")


class HttpEmailSender(EmailSender):
    """Posts messages to an HTTP email relay."""

    def __init__(self, relay_url: str, timeout: Optional[float] = None,
                 client: Optional[httpx.Client] = None) -> None:
        self.relay_url = relay_url
        self.timeout = timeout or settings.email_relay_timeout
        self._client = client or httpx.Client(timeout=self.timeout)

    def send_email(self, to: str, subject: str, body: str) -> None:
        payload = {
            "from": {"email": settings.smtp_from_email, "name": settings.smtp_from_name},
            "to": to,
            "subject": subject,
            "text": body,
        }
        try:
            response = self._client.post(self.relay_url, json=payload)
        except httpx.RequestError as exc:
            raise ExternalServiceError("Email relay unreachable") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(f"Email relay rejected message: {response.status_code}")

    def close(self) -> None:
        self._client.close()


def default_sender() -> EmailSender:
    if settings.email_relay_url:
        return HttpEmailSender(settings.email_relay_url)
    return LoggingEmailSender()


# ------------------------- Templates ------------------------- #
class EmailTemplates:
    @staticmethod
    def borrow_approved(name: str, title: str, due_date: str) -> Tuple[str, str]:
        return (
            "Borrow Request Approved",
            f"Dear {name},\n\nYour borrow request for \"{title}\" has been approved.\n"
            f"Please return it by {due_date}.\n",
        )

    @staticmethod
    def borrow_rejected(name: str, title: str, notes: Optional[str]) -> Tuple[str, str]:
        reason = f"\nReason: {notes}\n" if notes else ""
        return (
            "Borrow Request Rejected",
            f"Dear {name},\n\nYour borrow request for \"{title}\" has been rejected.{reason}\n",
        )

    @staticmethod
    def return_approved(name: str, title: str) -> Tuple[str, str]:
        return (
            "Your Book Return has been Confirmed",
            f"Dear {name},\n\nYour return of \"{title}\" has been confirmed. Thank you.\n",
        )

    @staticmethod
    def return_rejected(name: str, title: str, notes: Optional[str]) -> Tuple[str, str]:
        reason = f"\nReason: {notes}\n" if notes else ""
        return (
            "Your Book Return Request has been Rejected",
            f"Dear {name},\n\nYour return request for \"{title}\" has been rejected.{reason}\n"
            "Please contact the library for more information.\n",
        )

    @staticmethod
    def book_available(name: str, title: str) -> Tuple[str, str]:
        return (
            "Book Now Available!",
            f"Dear {name},\n\n\"{title}\" is now available for borrowing.\n",
        )

    @staticmethod
    def due_soon(name: str, title: str, due_date: str) -> Tuple[str, str]:
        return (
            f"Reminder: \"{title}\" is due tomorrow",
            f"Dear {name},\n\n\"{title}\" is due on {due_date}. Please return it on time to avoid fines.\n",
        )

    @staticmethod
    def overdue(name: str, title: str, due_date: str, days_overdue: int) -> Tuple[str, str]:
        return (
            f"Overdue: \"{title}\"",
            f"Dear {name},\n\n\"{title}\" was due on {due_date} and is {days_overdue} day(s) overdue.\n"
            "Fines accrue until the book is returned.\n",
        )

    @staticmethod
    def payment_receipt(name: str, amount: str, fine_count: int) -> Tuple[str, str]:
        return (
            "Payment Received",
            f"Dear {name},\n\nWe received your payment of ${amount} covering {fine_count} fine(s).\n",
        )


# ------------------------- Outbox ------------------------- #
@dataclass
class DrainReport:
    sent: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class NotificationOutbox:
    def __init__(self, db_file: Optional[str] = None, max_attempts: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow, metrics: Optional[LibraryMetrics] = None) -> None:
        self.db_file = db_file
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.clock = clock
        self.metrics = metrics or LibraryMetrics(db_file, clock)

    def enqueue(self, conn: sqlite3.Connection, recipient: str, message: Tuple[str, str], *,
                enabled: bool = True) -> Optional[int]:
        """Record a message inside the caller's transaction."""
        if not enabled:
            return None
        subject, body = message
        cursor = conn.execute(
            "INSERT INTO notification_outbox (recipient, subject, body, created_at) VALUES (?, ?, ?, ?)",
            (recipient, subject, body, self.clock().isoformat()),
        )
        return cursor.lastrowid

    def pending(self, limit: int = 100) -> List[sqlite3.Row]:
        with read_connection(self.db_file) as conn:
            return conn.execute(
                "SELECT * FROM notification_outbox WHERE status = 'PENDING' ORDER BY id LIMIT ?", (limit,)
            ).fetchall()

    def drain(self, sender: EmailSender, limit: Optional[int] = None) -> DrainReport:
        """Deliver pending messages; each send happens outside any transaction."""
        report = DrainReport()
        for row in self.pending(limit or settings.outbox_batch_size):
            if not self._claim(row["id"], row["attempts"]):
                continue  # another worker took it
            attempts = row["attempts"] + 1
            try:
                sender.send_email(row["recipient"], row["subject"], row["body"])
            except Exception as e:
                logger.warning(f"Delivery of outbox message {row['id']} failed (attempt {attempts}): {e}")
                exhausted = attempts >= self.max_attempts
                self._record_failure(row["id"], str(e), exhausted)
                report.errors.append(f"{row['id']}: {e}")
                if exhausted:
                    report.failed += 1
                else:
                    report.retried += 1
                continue
            self._mark_sent(row["id"])
            report.sent += 1
        if report.sent or report.failed or report.retried:
            logger.info(f"Outbox drained: {report.sent} sent, {report.retried} to retry, {report.failed} failed")
            self.metrics.check_failure_rate("email_delivery", report.retried + report.failed,
                                            report.sent + report.retried + report.failed)
        return report

    def _claim(self, message_id: int, attempts: int) -> bool:
        with transaction(self.db_file) as conn:
            cursor = conn.execute(
                "UPDATE notification_outbox SET attempts = attempts + 1 "
                "WHERE id = ? AND status = 'PENDING' AND attempts = ?",
                (message_id, attempts),
            )
            return cursor.rowcount == 1

    def _mark_sent(self, message_id: int) -> None:
        with transaction(self.db_file) as conn:
            conn.execute(
                "UPDATE notification_outbox SET status = 'SENT', sent_at = ?, last_error = NULL WHERE id = ?",
                (self.clock().isoformat(), message_id),
            )
            self.metrics.increment(conn, EMAILS_SENT)

    def _record_failure(self, message_id: int, error: str, exhausted: bool) -> None:
        with transaction(self.db_file) as conn:
            conn.execute(
                "UPDATE notification_outbox SET status = ?, last_error = ? WHERE id = ?",
                ("FAILED" if exhausted else "PENDING", error[:500], message_id),
            )
            self.metrics.increment(conn, EMAIL_FAILURES)
