"""Operational counters, gauges and alerts.

Counters live in the ledger database and are bumped inside the transaction
of the transition they count, so a rolled back operation is never counted
and the API and the CLI see the same numbers. Each counter keeps a running
total plus one row per day.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from database import read_connection, transaction
from models import utcnow

logger = logging.getLogger(__name__)

BORROW_REQUESTS_CREATED = "borrow_requests_created"
BORROW_REQUESTS_APPROVED = "borrow_requests_approved"
BORROW_REQUESTS_REJECTED = "borrow_requests_rejected"
RETURN_REQUESTS_APPROVED = "return_requests_approved"
NOTIFY_EMAILS_SENT = "notify_emails_sent"
DUE_SOON_NOTIFICATIONS_SENT = "due_soon_notifications_sent"
OVERDUE_NOTIFICATIONS_SENT = "overdue_notifications_sent"
IDEMPOTENCY_HITS = "idempotency_hits"
EMAILS_SENT = "emails_sent"
EMAIL_FAILURES = "email_failures"

COUNTERS = (
    BORROW_REQUESTS_CREATED,
    BORROW_REQUESTS_APPROVED,
    BORROW_REQUESTS_REJECTED,
    RETURN_REQUESTS_APPROVED,
    NOTIFY_EMAILS_SENT,
    DUE_SOON_NOTIFICATIONS_SENT,
    OVERDUE_NOTIFICATIONS_SENT,
    IDEMPOTENCY_HITS,
    EMAILS_SENT,
    EMAIL_FAILURES,
)

TOTAL = "total"
ALERT_TTL_DAYS = 7
DAILY_RETENTION_DAYS = 30
FAILURE_RATE_ALERT = 10.0
FAILURE_RATE_CRITICAL = 25.0


@dataclass
class Alert:
    kind: str
    severity: str
    message: str
    created_at: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "created_at": self.created_at,
            "details": dict(self.details),
        }


@dataclass
class MetricsSnapshot:
    day: str
    totals: Dict[str, int]
    today: Dict[str, int]
    gauges: Dict[str, int]
    alerts: List[Alert] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "totals": dict(self.totals),
            "today": dict(self.today),
            "gauges": dict(self.gauges),
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


class LibraryMetrics:
    def __init__(self, db_file: Optional[str] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.db_file = db_file
        self.clock = clock

    # ------------------------- Counters ------------------------- #
    def increment(self, conn: sqlite3.Connection, name: str, amount: int = 1) -> None:
        """Bump a counter inside the caller's transaction."""
        if name not in COUNTERS:
            raise KeyError(f"Unknown metric: {name}")
        day = self.clock().date().isoformat()
        for period in (TOTAL, day):
            conn.execute(
                "INSERT INTO metric_counters (name, period, value) VALUES (?, ?, ?) "
                "ON CONFLICT(name, period) DO UPDATE SET value = value + excluded.value",
                (name, period, amount),
            )

    def record(self, name: str, amount: int = 1) -> None:
        with transaction(self.db_file) as conn:
            self.increment(conn, name, amount)

    def counters(self, period: str = TOTAL) -> Dict[str, int]:
        """Every known counter for ``period`` ('total' or an ISO day), zero when never hit."""
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT name, value FROM metric_counters WHERE period = ?", (period,)
            ).fetchall()
        values = {name: 0 for name in COUNTERS}
        values.update({row["name"]: row["value"] for row in rows if row["name"] in values})
        return values

    # ------------------------- Gauges ------------------------- #
    def gauges(self) -> Dict[str, int]:
        """Current state, read straight from the ledger tables."""
        today = self.clock().date().isoformat()
        with read_connection(self.db_file) as conn:
            available = conn.execute(
                "SELECT COALESCE(SUM(available_copies), 0) AS n FROM books"
            ).fetchone()["n"]
            pending = conn.execute(
                "SELECT COUNT(*) AS n FROM borrow_requests WHERE status = 'PENDING'"
            ).fetchone()["n"]
            pending_returns = conn.execute(
                "SELECT COUNT(*) AS n FROM return_requests WHERE status = 'PENDING'"
            ).fetchone()["n"]
            overdue = conn.execute(
                "SELECT COUNT(*) AS n FROM borrow_records WHERE status = 'BORROWED' AND due_date < ?", (today,)
            ).fetchone()["n"]
            restricted = conn.execute(
                "SELECT COUNT(*) AS n FROM users WHERE is_restricted = 1"
            ).fetchone()["n"]
        return {
            "available_books": available,
            "pending_borrow_requests": pending,
            "pending_return_requests": pending_returns,
            "overdue_books": overdue,
            "restricted_users": restricted,
        }

    # ------------------------- Alerts ------------------------- #
    def raise_alert(self, conn: sqlite3.Connection, kind: str, severity: str, message: str,
                    details: Optional[dict] = None) -> Alert:
        now = self.clock()
        conn.execute(
            "INSERT INTO alerts (kind, severity, message, details, created_at, expires_at) VALUES (?, ?, ?, ?, ?, ?)",
            (kind, severity, message, json.dumps(details or {}, default=str), now.isoformat(),
             (now + timedelta(days=ALERT_TTL_DAYS)).isoformat()),
        )
        logger.error(f"ALERT [{severity}] {message}")
        return Alert(kind, severity, message, now.isoformat(), details or {})

    def alert_inventory_violation(self, conn: sqlite3.Connection, book_id: str, available_copies: int,
                                  detail: str) -> Alert:
        return self.raise_alert(
            conn,
            "INVENTORY_VIOLATION",
            "HIGH",
            f"Inventory invariant violated for book {book_id}",
            {"book_id": book_id, "available_copies": available_copies, "detail": detail},
        )

    def check_failure_rate(self, operation: str, failures: int, total: int) -> Optional[Alert]:
        """Raise an alert when more than 10% of ``total`` attempts failed."""
        if total <= 0:
            return None
        rate = failures * 100.0 / total
        if rate <= FAILURE_RATE_ALERT:
            return None
        severity = "CRITICAL" if rate > FAILURE_RATE_CRITICAL else "HIGH"
        with transaction(self.db_file) as conn:
            return self.raise_alert(
                conn,
                "HIGH_FAILURE_RATE",
                severity,
                f"High failure rate detected for {operation}: {rate:.2f}%",
                {"operation": operation, "failures": failures, "total": total, "failure_rate": round(rate, 2)},
            )

    def recent_alerts(self, limit: int = 50) -> List[Alert]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM alerts WHERE expires_at > ? ORDER BY id DESC LIMIT ?",
                (self.clock().isoformat(), limit),
            ).fetchall()
        return [
            Alert(row["kind"], row["severity"], row["message"], row["created_at"], json.loads(row["details"] or "{}"))
            for row in rows
        ]

    # ------------------------- Reporting ------------------------- #
    def snapshot(self, alert_limit: int = 5) -> MetricsSnapshot:
        day = self.clock().date().isoformat()
        return MetricsSnapshot(
            day=day,
            totals=self.counters(TOTAL),
            today=self.counters(day),
            gauges=self.gauges(),
            alerts=self.recent_alerts(alert_limit),
        )

    def purge(self, retention_days: int = DAILY_RETENTION_DAYS) -> int:
        """Drop daily counter rows past retention and expired alerts; totals are kept."""
        now = self.clock()
        cutoff = (now.date() - timedelta(days=retention_days)).isoformat()
        with transaction(self.db_file) as conn:
            removed = conn.execute(
                "DELETE FROM metric_counters WHERE period != ? AND period < ?", (TOTAL, cutoff)
            ).rowcount
            removed += conn.execute("DELETE FROM alerts WHERE expires_at <= ?", (now.isoformat(),)).rowcount
        if removed:
            logger.info(f"Purged {removed} old metric rows and alerts")
        return removed

    def exposition(self) -> bytes:
        """Prometheus text format of the current snapshot."""
        registry = CollectorRegistry()
        registry.register(_SnapshotCollector(self))
        return generate_latest(registry)


class _SnapshotCollector:
    def __init__(self, metrics: LibraryMetrics) -> None:
        self.metrics = metrics

    def collect(self) -> Iterator:
        snapshot = self.metrics.snapshot(alert_limit=0)
        for name, value in snapshot.totals.items():
            yield CounterMetricFamily(f"library_{name}", f"Total {name.replace('_', ' ')}", value=value)
        for name, value in snapshot.gauges.items():
            yield GaugeMetricFamily(f"library_{name}", f"Current {name.replace('_', ' ')}", value=value)
