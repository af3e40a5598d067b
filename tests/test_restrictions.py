from datetime import date
from decimal import Decimal

import pytest

from audit import AuditAction
from errors import NotEligible, NotFound
from models import FineStatus
from restrictions import RestrictionEngine


@pytest.fixture
def lost_fine(lib, borrowed):
    """A $65.00 lost-book fine: the loan due 2026-03-09 is eight days late."""
    return lib.assess_record(borrowed.borrow_record_id, today=date(2026, 3, 17)).fine


def test_lost_book_fine_restricts_account(lib, member, lost_fine):
    assert lost_fine.amount == Decimal("65.00")
    user = lib.get_user(member.id)
    assert user.is_restricted
    assert user.total_fines_owed == Decimal("65.00")
    assert "exceed" in user.restriction_reason

    eligibility = lib.can_borrow(member.id)
    assert not eligibility
    assert eligibility.reason.startswith("Account restricted")
    assert len(lib.audit.entries(action=AuditAction.USER_RESTRICTED)) == 1


def test_restricted_user_cannot_request(lib, member, lost_fine):
    other_book = lib.add_book("Refactoring", "Martin Fowler")
    with pytest.raises(NotEligible):
        lib.create_borrow_request(member.id, other_book.id)


def test_partial_payment_lifts_restriction_but_not_borrowing(lib, member, lost_fine):
    tx = lib.create_payment(member.id, [lost_fine.id], amount="20.00")
    lib.complete_payment(tx.external_ref)

    user = lib.get_user(member.id)
    assert not user.is_restricted
    assert user.total_fines_owed == Decimal("45.00")
    eligibility = lib.can_borrow(member.id)
    assert not eligibility
    assert eligibility.reason == "Outstanding fines of $45.00 must be paid before borrowing"
    assert len(lib.audit.entries(action=AuditAction.USER_UNRESTRICTED)) == 1

    status = lib.get_user_status(member.id)
    assert status.summary == eligibility.reason
    assert status.active_fines[0].status == FineStatus.PARTIAL_PAID


def test_fine_on_loan_blocks_its_return(lib, borrowed, lost_fine):
    eligibility = lib.can_return_book(borrowed.user_id, borrowed.borrow_record_id)
    assert not eligibility
    assert "$65.00" in eligibility.reason
    with pytest.raises(NotEligible):
        lib.create_return_request(borrowed.user_id, borrowed.borrow_record_id, "return")
    assert lib.get_user_status(borrowed.user_id).can_return_books is False


def test_waiver_restores_borrowing(lib, admin, member, lost_fine):
    lib.waive_fine(lost_fine.id, admin.id, "Book found on the shelf")
    assert lib.can_borrow(member.id)
    status = lib.get_user_status(member.id)
    assert status.summary == "Account in good standing"
    assert status.total_fines_owed == Decimal("0.00")


def test_evaluate_is_stable(lib, member, lost_fine):
    decision = lib.evaluate_restriction(member.id)
    assert decision.restricted
    assert decision.changed is False
    assert decision.balance == Decimal("65.00")


def test_small_fine_blocks_borrowing_without_restricting(lib, member, borrowed):
    lib.assess_record(borrowed.borrow_record_id, today=date(2026, 3, 10))
    user = lib.get_user(member.id)
    assert not user.is_restricted
    assert not lib.can_borrow(member.id)


def test_custom_threshold(lib, member, borrowed):
    lib.assess_record(borrowed.borrow_record_id, today=date(2026, 3, 10))
    strict = RestrictionEngine(lib.db_file, lib.audit, threshold=Decimal("5.00"))
    decision = strict.evaluate(member.id)
    assert decision.restricted and decision.changed


def test_status_summary_to_dict(lib, member):
    data = lib.get_user_status(member.id).to_dict()
    assert data["can_borrow"] is True
    assert data["total_fines_owed"] == "0.00"
    assert data["active_fines"] == []


def test_unknown_user(lib):
    with pytest.raises(NotFound):
        lib.can_borrow("ghost")
    with pytest.raises(NotFound):
        lib.evaluate_restriction("ghost")


@pytest.mark.parametrize("price, fine, restricted", [("46.15", "60.00", False), ("46.16", "60.01", True)])
def test_restriction_threshold_boundary(lib, admin, member, price, fine, restricted):
    lost_book = lib.add_book("Boundary Cases", "Ann Author", price=price)
    loan = lib.approve_borrow_request(lib.create_borrow_request(member.id, lost_book.id).id, admin.id)
    assessed = lib.assess_record(loan.borrow_record_id, today=date(2026, 3, 17)).fine
    assert assessed.amount == Decimal(fine)
    assert lib.get_user(member.id).is_restricted is restricted
    assert lib.evaluate_restriction(member.id).restricted is restricted


def test_paying_down_to_threshold_lifts_restriction(lib, member, lost_fine):
    tx = lib.create_payment(member.id, [lost_fine.id], amount="5.00")
    lib.complete_payment(tx.external_ref)
    user = lib.get_user(member.id)
    assert user.total_fines_owed == Decimal("60.00")
    assert not user.is_restricted


def test_overpaid_fine_does_not_hide_other_debt(lib, admin, member, book):
    pamphlet = lib.add_book("Pamphlet", "Ann Author", price="5.00")
    cheap_loan, other_loan = [
        lib.approve_borrow_request(lib.create_borrow_request(member.id, b.id).id, admin.id)
        for b in (pamphlet, book)
    ]
    late = lib.assess_record(cheap_loan.borrow_record_id, today=date(2026, 3, 16)).fine
    assert late.amount == Decimal("13.00")
    tx = lib.create_payment(member.id, [late.id], amount="12.00")
    lib.complete_payment(tx.external_ref)

    # declared lost: 130% of $5.00 is less than what was already paid
    lost = lib.assess_record(cheap_loan.borrow_record_id, today=date(2026, 3, 17)).fine
    assert lost.amount == Decimal("6.50")
    assert lost.status == FineStatus.PAID
    assert lost.outstanding == Decimal("0.00")
    assert "overpaid by $5.50" in lost.description
    [update] = lib.audit.entries(action=AuditAction.FINE_UPDATED)
    assert update.metadata["reason"] == "overpaid by $5.50"

    lib.assess_record(other_loan.borrow_record_id, today=date(2026, 3, 10))
    assert lib.get_user_status(member.id).total_fines_owed == Decimal("10.00")
    assert lib.get_user(member.id).total_fines_owed == Decimal("10.00")
    assert not lib.can_borrow(member.id)
