from datetime import date
from decimal import Decimal

import pytest

from audit import AuditAction
from config import FeatureFlags
from database import read_connection
from models import FineStatus, FineType, PenaltyType
from penalties import calculate_penalty


@pytest.mark.parametrize("days", [-5, 0])
def test_no_fine_on_or_before_due_date(days):
    quote = calculate_penalty(days, Decimal("50.00"))
    assert not quote.has_fine
    assert quote.amount == Decimal("0.00")


@pytest.mark.parametrize(
    "days, amount, penalty_type",
    [
        (1, "10.00", PenaltyType.FLAT_FEE),
        (2, "10.50", PenaltyType.DAILY_FEE),
        (5, "12.00", PenaltyType.DAILY_FEE),
        (7, "13.00", PenaltyType.DAILY_FEE),
    ],
)
def test_late_return_schedule(days, amount, penalty_type):
    quote = calculate_penalty(days, Decimal("50.00"))
    assert quote.amount == Decimal(amount)
    assert quote.penalty_type == penalty_type
    assert quote.fine_type == FineType.LATE_RETURN
    assert not quote.is_book_lost


def test_eighth_day_means_lost_book():
    quote = calculate_penalty(8, Decimal("50.00"))
    assert quote.amount == Decimal("65.00")
    assert quote.penalty_type == PenaltyType.LOST_BOOK_FEE
    assert quote.fine_type == FineType.LOST_BOOK
    assert quote.is_book_lost


def test_lost_book_rounding_and_default_price():
    assert calculate_penalty(30, Decimal("19.99")).amount == Decimal("25.99")
    assert calculate_penalty(8, None).amount == Decimal("65.00")


def test_assess_record_creates_then_updates_single_fine(lib, borrowed):
    record_id = borrowed.borrow_record_id  # due 2026-03-09

    first = lib.assess_record(record_id, today=date(2026, 3, 10))
    assert first.outcome == "created"
    assert first.fine.amount == Decimal("10.00")
    assert first.fine.penalty_type == PenaltyType.FLAT_FEE

    second = lib.assess_record(record_id, today=date(2026, 3, 12))
    assert second.outcome == "updated"
    assert second.fine.id == first.fine.id
    assert second.fine.amount == Decimal("11.00")
    assert second.fine.days_overdue == 3

    again = lib.assess_record(record_id, today=date(2026, 3, 12))
    assert again.outcome == "unchanged"
    assert len(lib.list_fines(borrowed.user_id)) == 1

    assert len(lib.audit.entries(action=AuditAction.FINE_CALCULATED)) == 1
    updates = lib.audit.entries(action=AuditAction.FINE_UPDATED)
    assert updates[0].metadata["previous_amount"] == "10.00"


def test_before_due_date_no_fine(lib, borrowed):
    assessment = lib.assess_record(borrowed.borrow_record_id, today=date(2026, 3, 9))
    assert assessment.outcome == "no_fine"
    assert lib.list_fines(borrowed.user_id) == []


def test_paid_fine_is_never_recalculated(lib, borrowed):
    record_id = borrowed.borrow_record_id
    fine = lib.assess_record(record_id, today=date(2026, 3, 10)).fine
    tx = lib.create_payment(borrowed.user_id, [fine.id])
    lib.complete_payment(tx.external_ref)

    later = lib.assess_record(record_id, today=date(2026, 3, 14))
    assert later.outcome == "unchanged"
    assert later.fine.status == FineStatus.PAID
    assert later.fine.amount == Decimal("10.00")


def test_sweep_is_rerunnable(lib, borrowed, book, admin):
    other = lib.add_user("Omar Other", "omar@library.test")
    request = lib.create_borrow_request(other.id, book.id)
    lib.approve_borrow_request(request.id, admin.id)

    report = lib.run_penalty_sweep(today=date(2026, 3, 11))
    assert report.processed == 2
    assert report.created == 2
    assert report.errors == []

    rerun = lib.run_penalty_sweep(today=date(2026, 3, 11))
    assert rerun.processed == 2
    assert rerun.created == 0
    assert rerun.unchanged == 2

    later = lib.run_penalty_sweep(today=date(2026, 3, 13))
    assert later.updated == 2


def test_sweep_ignores_loans_not_yet_due(lib, borrowed):
    report = lib.run_penalty_sweep(today=date(2026, 3, 9))
    assert report.processed == 0


def test_sweep_disabled_by_flag(lib, borrowed):
    report = lib.run_penalty_sweep(today=date(2026, 3, 20), flags=FeatureFlags(enable_overdue=False))
    assert report.skipped
    assert lib.list_fines(borrowed.user_id) == []


def test_timestamps_follow_injected_clock(lib, member, borrowed, clock):
    clock.advance(days=15)  # 2026-03-17, eight days late
    fine = lib.assess_record(borrowed.borrow_record_id).fine
    assert fine.is_book_lost

    user = lib.get_user(member.id)
    assert user.last_fine_calculation.startswith("2026-03-17")
    assert user.restricted_at.startswith("2026-03-17")
    [restricted] = lib.audit.entries(action=AuditAction.USER_RESTRICTED)
    assert restricted.created_at.startswith("2026-03-17")
    with read_connection(lib.db_file) as conn:
        row = conn.execute("SELECT created_at, updated_at FROM fines WHERE id = ?", (fine.id,)).fetchone()
    assert row["created_at"].startswith("2026-03-17")
    assert row["updated_at"] == row["created_at"]
