from datetime import date

from audit import AuditAction
from config import FeatureFlags
from database import read_connection, transaction
from notifications import EmailSender, NotificationOutbox


class FlakySender(EmailSender):
    def send_email(self, to, subject, body):
        raise ConnectionError("relay down")


def _clear_outbox(lib):
    with transaction(lib.db_file) as conn:
        conn.execute("DELETE FROM notification_outbox")


# ------------------------- Reminders ------------------------- #
def test_due_soon_reminder_day_before(lib, borrowed):
    _clear_outbox(lib)
    report = lib.process_due_reminders(today=date(2026, 3, 8))
    assert report.due_soon == 1
    assert report.overdue == 0
    [message] = lib.outbox.pending()
    assert message["recipient"] == "mia@library.test"
    assert "due tomorrow" in message["subject"]


def test_overdue_reminder_once_per_day(lib, borrowed):
    _clear_outbox(lib)
    first = lib.process_due_reminders(today=date(2026, 3, 11))
    rerun = lib.process_due_reminders(today=date(2026, 3, 11))
    next_day = lib.process_due_reminders(today=date(2026, 3, 12))

    assert first.overdue == 1
    assert rerun.overdue == 0
    assert rerun.already_sent == 1
    assert next_day.overdue == 1
    assert len(lib.outbox.pending()) == 2
    entry = lib.audit.entries(action=AuditAction.REMINDER_SENT)[0]
    assert entry.metadata["days_overdue"] == 3


def test_no_reminder_on_due_date(lib, borrowed):
    report = lib.process_due_reminders(today=date(2026, 3, 9))
    assert report.due_soon == report.overdue == 0


def test_reminders_skipped_without_email(lib, borrowed):
    report = lib.process_due_reminders(
        today=date(2026, 3, 11), flags=FeatureFlags(enable_email_notifications=False)
    )
    assert report.skipped


# ------------------------- Outbox ------------------------- #
def test_drain_delivers_pending_messages(lib, borrowed, sender):
    report = lib.drain_outbox()
    assert report.sent == 1
    assert sender.sent[0][0] == "mia@library.test"
    assert sender.sent[0][1] == "Borrow Request Approved"
    assert lib.outbox.pending() == []
    assert lib.drain_outbox().sent == 0


def test_failed_delivery_retries_then_gives_up(lib, borrowed):
    outbox = NotificationOutbox(lib.db_file, max_attempts=2)
    first = outbox.drain(FlakySender())
    assert first.retried == 1
    assert "relay down" in first.errors[0]
    assert len(outbox.pending()) == 1

    second = outbox.drain(FlakySender())
    assert second.failed == 1
    assert outbox.pending() == []


def test_outbox_timestamps_follow_clock(lib, borrowed, clock):
    clock.advance(days=1)
    lib.drain_outbox()
    with read_connection(lib.db_file) as conn:
        [row] = conn.execute("SELECT created_at, sent_at FROM notification_outbox").fetchall()
    assert row["created_at"].startswith("2026-03-02")
    assert row["sent_at"].startswith("2026-03-03")


# ------------------------- Inventory check ------------------------- #
def test_inventory_invariants_hold(lib, borrowed):
    report = lib.check_inventory_invariants()
    assert report.ok
    assert report.checked == 1


def test_inventory_drift_is_reported(lib, book):
    with transaction(lib.db_file) as conn:
        conn.execute("UPDATE books SET available_copies = 1 WHERE id = ?", (book.id,))
    report = lib.check_inventory_invariants()
    assert not report.ok
    assert book.id in report.violations[0]
    entry = lib.audit.entries(action=AuditAction.INVARIANT_VIOLATION)[0]
    assert entry.metadata["job"] == "check_inventory_invariants"


# ------------------------- Nightly ------------------------- #
def test_nightly_jobs(lib, borrowed, sender):
    results = lib.run_nightly_jobs(today=date(2026, 3, 17))
    assert results["skipped"] is False
    assert results["penalty_sweep"]["created"] == 1
    assert results["restrictions"]["evaluated"] == 1
    assert results["reminders"]["overdue"] == 1
    assert results["outbox"]["sent"] == 2
    assert results["inventory_check"]["ok"] is True
    assert lib.get_user(borrowed.user_id).is_restricted
    assert [subject for _, subject, _ in sender.sent][-1].startswith("Overdue")


def test_nightly_jobs_disabled(lib, borrowed):
    results = lib.run_nightly_jobs(today=date(2026, 3, 17), flags=FeatureFlags(enable_background_jobs=False))
    assert results == {"skipped": True}
    assert lib.list_fines(borrowed.user_id) == []
