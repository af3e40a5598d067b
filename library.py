import logging
import sqlite3
import uuid
from datetime import date, datetime
from typing import Callable, List, Optional

import database
from audit import AuditLog
from config import FeatureFlags
from database import initialize_database, read_connection, transaction
from errors import NotFound, ValidationError
from idempotency import IdempotencyGuard
from inventory import InventoryLedger
from jobs import InvariantReport, JobRunner, ReminderReport
from lending import RequestStateMachine
from metrics import Alert, LibraryMetrics, MetricsSnapshot
from models import (
    Book,
    BorrowRecord,
    BorrowRequest,
    Fine,
    Money,
    PaymentTransaction,
    ReturnRequest,
    User,
    UserRole,
    UserStatus,
    utcnow,
)
from notifications import DrainReport, EmailSender, NotificationOutbox, default_sender
from payments import PaymentGateway, PaymentReconciler, PaymentResult
from penalties import Assessment, PenaltyCalculator, SweepReport
from restrictions import Eligibility, RestrictionDecision, RestrictionEngine, UserStatusSummary
from utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)


class Library:
    """Entry point to the lending ledger.

    Wires every component to one database file. Each operation accepts an
    optional ``flags`` snapshot; when omitted the flags are read from the
    environment once for that call.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sender: Optional[EmailSender] = None,
        gateway: Optional[PaymentGateway] = None,
    ) -> None:
        self.db_file = db_file or database.default_database_file()
        self.clock = clock or utcnow
        initialize_database(self.db_file)

        self.metrics = LibraryMetrics(self.db_file, self.clock)
        self.audit = AuditLog(self.db_file, clock=self.clock)
        self.inventory = InventoryLedger(self.db_file, self.audit, self.clock)
        self.guard = IdempotencyGuard(self.db_file, self.clock, self.metrics)
        self.restrictions = RestrictionEngine(self.db_file, self.audit, clock=self.clock)
        self.penalties = PenaltyCalculator(self.db_file, self.audit, self.restrictions, self.clock)
        self.outbox = NotificationOutbox(self.db_file, clock=self.clock, metrics=self.metrics)
        self.sender = sender or default_sender()
        self.lending = RequestStateMachine(
            self.db_file,
            audit=self.audit,
            inventory=self.inventory,
            restrictions=self.restrictions,
            penalties=self.penalties,
            guard=self.guard,
            outbox=self.outbox,
            metrics=self.metrics,
            clock=self.clock,
        )
        self.payments = PaymentReconciler(
            self.db_file,
            audit=self.audit,
            restrictions=self.restrictions,
            outbox=self.outbox,
            gateway=gateway,
            clock=self.clock,
        )
        self.jobs = JobRunner(
            self.db_file,
            audit=self.audit,
            penalties=self.penalties,
            restrictions=self.restrictions,
            guard=self.guard,
            outbox=self.outbox,
            metrics=self.metrics,
            clock=self.clock,
        )

    # ------------------------- Catalogue & users ------------------------- #
    def add_book(self, title: str, author: str, *, total_copies: int = 1, isbn: Optional[str] = None,
                 price: Optional[Money] = None, reserve_on_request: bool = False,
                 book_id: Optional[str] = None) -> Book:
        if not TextValidator.validate_title(title):
            raise ValidationError("Invalid title.")
        if not TextValidator.validate_author(author):
            raise ValidationError("Invalid author.")
        if isbn:
            isbn = ISBNValidator.normalize_isbn(isbn)
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValidationError("Invalid ISBN format.")
        return self.inventory.add_book(
            title, author, total_copies=total_copies, isbn=isbn, price=price,
            reserve_on_request=reserve_on_request, book_id=book_id,
        )

    def get_book(self, book_id: str) -> Book:
        return self.inventory.get_book(book_id)

    def list_books(self) -> List[Book]:
        return self.inventory.list_books()

    def add_user(self, full_name: str, email: str, *, role: UserRole = UserRole.USER,
                 status: UserStatus = UserStatus.APPROVED, user_id: Optional[str] = None) -> User:
        """Register a user. Account approval itself lives outside the ledger."""
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name is required.")
        if not TextValidator.validate_email(email):
            raise ValidationError("Invalid email address.")
        user_id = user_id or str(uuid.uuid4())
        try:
            with transaction(self.db_file) as conn:
                conn.execute(
                    "INSERT INTO users (id, full_name, email, status, role, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (user_id, full_name, email.strip().lower(), UserStatus(status).value, UserRole(role).value,
                     self.clock().isoformat()),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"User with email {email} already exists.") from e
        logger.info(f"Added user {user_id} ({role.value if isinstance(role, UserRole) else role})")
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> User:
        with read_connection(self.db_file) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        return User.from_row(row)

    # ------------------------- Borrowing ------------------------- #
    def create_borrow_request(self, user_id: str, book_id: str, idempotency_key: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        return self.lending.create_borrow_request(user_id, book_id, idempotency_key, flags)

    def approve_borrow_request(self, request_id: str, admin_id: str, notes: Optional[str] = None,
                               flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        return self.lending.approve_borrow_request(request_id, admin_id, notes, flags)

    def reject_borrow_request(self, request_id: str, admin_id: str, notes: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        return self.lending.reject_borrow_request(request_id, admin_id, notes, flags)

    def create_return_request(self, user_id: str, borrow_record_id: str, confirmation_text: Optional[str],
                              flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        return self.lending.create_return_request(user_id, borrow_record_id, confirmation_text, flags)

    def approve_return_request(self, request_id: str, admin_id: Optional[str] = None,
                               notes: Optional[str] = None, flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        return self.lending.approve_return_request(request_id, admin_id, notes, flags)

    def reject_return_request(self, request_id: str, admin_id: Optional[str] = None,
                              notes: Optional[str] = None, flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        return self.lending.reject_return_request(request_id, admin_id, notes, flags)

    def subscribe_availability(self, user_id: str, book_id: str, flags: Optional[FeatureFlags] = None) -> bool:
        return self.lending.subscribe_availability(user_id, book_id, flags)

    def get_borrow_request(self, request_id: str) -> BorrowRequest:
        return self.lending.get_borrow_request(request_id)

    def get_return_request(self, request_id: str) -> ReturnRequest:
        return self.lending.get_return_request(request_id)

    def get_borrow_record(self, record_id: str) -> BorrowRecord:
        return self.lending.get_borrow_record(record_id)

    def list_pending_borrow_requests(self) -> List[BorrowRequest]:
        return self.lending.list_pending_borrow_requests()

    def list_pending_return_requests(self) -> List[ReturnRequest]:
        return self.lending.list_pending_return_requests()

    def list_user_records(self, user_id: str, active_only: bool = False) -> List[BorrowRecord]:
        return self.lending.list_user_records(user_id, active_only)

    def get_user_borrow_status(self, user_id: str, book_id: str) -> Optional[str]:
        return self.lending.get_user_borrow_status(user_id, book_id)

    # ------------------------- Fines & restrictions ------------------------- #
    def assess_record(self, record_id: str, today: Optional[date] = None,
                      flags: Optional[FeatureFlags] = None) -> Assessment:
        return self.penalties.assess_record(record_id, today, flags)

    def run_penalty_sweep(self, today: Optional[date] = None, flags: Optional[FeatureFlags] = None) -> SweepReport:
        return self.jobs.run_penalty_sweep(today, flags)

    def evaluate_restriction(self, user_id: str, flags: Optional[FeatureFlags] = None) -> RestrictionDecision:
        return self.restrictions.evaluate(user_id, flags)

    def can_borrow(self, user_id: str) -> Eligibility:
        return self.restrictions.can_borrow(user_id)

    def can_return_book(self, user_id: str, borrow_record_id: str) -> Eligibility:
        return self.restrictions.can_return_book(user_id, borrow_record_id)

    def get_user_status(self, user_id: str) -> UserStatusSummary:
        return self.restrictions.get_status(user_id)

    def list_outstanding_fines(self, user_id: str) -> List[Fine]:
        return self.payments.list_outstanding_fines(user_id)

    def list_fines(self, user_id: str) -> List[Fine]:
        return self.payments.list_fines(user_id)

    # ------------------------- Payments ------------------------- #
    def create_payment(self, user_id: str, fine_ids: List[str], amount: Optional[Money] = None,
                       flags: Optional[FeatureFlags] = None) -> PaymentTransaction:
        return self.payments.create_payment(user_id, fine_ids, amount, flags)

    def complete_payment(self, payment_ref: Optional[str] = None, transaction_id: Optional[str] = None,
                         flags: Optional[FeatureFlags] = None) -> PaymentResult:
        return self.payments.complete_payment(payment_ref, transaction_id, flags)

    def handle_checkout_session_completed(self, session_id: str, payment_ref: Optional[str] = None,
                                          transaction_id: Optional[str] = None, payment_status: str = "paid",
                                          flags: Optional[FeatureFlags] = None) -> PaymentResult:
        return self.payments.handle_checkout_session_completed(
            session_id, payment_ref, transaction_id, payment_status, flags
        )

    def handle_failed_payment(self, payment_ref: Optional[str] = None, reason: Optional[str] = None,
                              cancelled: bool = False, transaction_id: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> PaymentResult:
        return self.payments.handle_failed_payment(payment_ref, reason, cancelled, transaction_id, flags)

    def waive_fine(self, fine_id: str, admin_id: str, reason: str, flags: Optional[FeatureFlags] = None) -> Fine:
        return self.payments.waive_fine(fine_id, admin_id, reason, flags)

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        return self.payments.get_transaction(transaction_id)

    # ------------------------- Jobs ------------------------- #
    def process_due_reminders(self, today: Optional[date] = None,
                              flags: Optional[FeatureFlags] = None) -> ReminderReport:
        return self.jobs.process_due_reminders(today, flags)

    def drain_outbox(self, limit: Optional[int] = None) -> DrainReport:
        return self.jobs.drain_outbox(self.sender, limit)

    def check_inventory_invariants(self, flags: Optional[FeatureFlags] = None) -> InvariantReport:
        return self.jobs.check_inventory_invariants(flags)

    def run_nightly_jobs(self, today: Optional[date] = None, flags: Optional[FeatureFlags] = None) -> dict:
        return self.jobs.run_nightly_jobs(self.sender, today, flags)

    # ------------------------- Metrics ------------------------- #
    def get_metrics(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def recent_alerts(self, limit: int = 50) -> List[Alert]:
        return self.metrics.recent_alerts(limit)

    def metrics_exposition(self) -> bytes:
        return self.metrics.exposition()
