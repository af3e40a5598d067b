"""Borrow and return request lifecycle.

Borrow request:  PENDING -> APPROVED | REJECTED,  APPROVED -> RETURN_PENDING -> RETURNED
Return request:  PENDING -> APPROVED | REJECTED

Every transition is a status-guarded UPDATE; when the guard matches no row
the request was already decided and AlreadyProcessed is raised.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from audit import AuditAction, AuditLog, BorrowRequestMeta, ReturnRequestMeta
from config import FeatureFlags, settings
from database import read_connection, transaction
from errors import (
    AlreadyProcessed,
    DuplicateActiveRequest,
    DuplicateRequest,
    InvalidTransition,
    NotEligible,
    NotFound,
    OutOfStock,
    Unauthorized,
    ValidationError,
)
from idempotency import IdempotencyGuard
from inventory import InventoryLedger
from metrics import (
    BORROW_REQUESTS_APPROVED,
    BORROW_REQUESTS_CREATED,
    BORROW_REQUESTS_REJECTED,
    NOTIFY_EMAILS_SENT,
    RETURN_REQUESTS_APPROVED,
    LibraryMetrics,
)
from models import (
    ActorType,
    BorrowRecord,
    BorrowRecordStatus,
    BorrowRequest,
    BorrowRequestStatus,
    ReturnRequest,
    User,
    utcnow,
)
from notifications import EmailTemplates, NotificationOutbox
from penalties import PenaltyCalculator
from restrictions import RestrictionEngine, require_admin
from utils.validators import ConfirmationValidator

logger = logging.getLogger(__name__)

ACTIVE_REQUEST_STATUSES = ("PENDING", "APPROVED", "RETURN_PENDING")

CREATE_BORROW = "create_borrow_request"
CREATE_RETURN = "create_return_request"


class RequestStateMachine:
    def __init__(
        self,
        db_file: Optional[str] = None,
        *,
        audit: Optional[AuditLog] = None,
        inventory: Optional[InventoryLedger] = None,
        restrictions: Optional[RestrictionEngine] = None,
        penalties: Optional[PenaltyCalculator] = None,
        guard: Optional[IdempotencyGuard] = None,
        outbox: Optional[NotificationOutbox] = None,
        metrics: Optional[LibraryMetrics] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_file = db_file
        self.clock = clock
        self.metrics = metrics or LibraryMetrics(db_file, clock)
        self.audit = audit or AuditLog(db_file, clock=clock)
        self.inventory = inventory or InventoryLedger(db_file, self.audit, clock)
        self.restrictions = restrictions or RestrictionEngine(db_file, self.audit, clock=clock)
        self.penalties = penalties or PenaltyCalculator(db_file, self.audit, self.restrictions, clock)
        self.guard = guard or IdempotencyGuard(db_file, clock, self.metrics)
        self.outbox = outbox or NotificationOutbox(db_file, clock=clock, metrics=self.metrics)

    # ------------------------- Borrow requests ------------------------- #
    def create_borrow_request(self, user_id: str, book_id: str, idempotency_key: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        """Submit a borrow request.

        With a caller token the request is keyed on it for 24 hours; without
        one, repeats of the same user/book pair within a few minutes replay
        the first request instead of failing as duplicates.
        """
        flags = flags or FeatureFlags.from_env()
        if idempotency_key is not None:
            key = self.guard.token_key(CREATE_BORROW, user_id, idempotency_key)
            ttl = settings.idempotency_ttl_seconds
        else:
            key = self._borrow_key(user_id, book_id)
            ttl = settings.derived_idempotency_ttl_seconds

        def submit(conn: sqlite3.Connection) -> dict:
            return self._insert_borrow_request(
                conn, user_id, book_id, key if idempotency_key is not None else None, flags
            ).to_dict()

        try:
            result = self.guard.run(key, CREATE_BORROW, submit, ttl, enabled=flags.enable_idempotency)
        except sqlite3.IntegrityError as e:
            # only reachable with the guard disabled: the token column is UNIQUE
            raise DuplicateRequest("A request with this idempotency key already exists.") from e
        if result.replayed:
            logger.info(f"Replayed borrow request for user {user_id} and book {book_id}")
        return BorrowRequest.from_dict(result.value)

    def _insert_borrow_request(self, conn: sqlite3.Connection, user_id: str, book_id: str,
                               token_key: Optional[str], flags: FeatureFlags) -> BorrowRequest:
        self._load_user(conn, user_id)
        eligibility = self.restrictions.can_borrow(user_id, conn)
        if not eligibility:
            logger.warning(f"Borrow request by {user_id} refused: {eligibility.reason}")
            raise NotEligible(eligibility.reason, details={"user_id": user_id})
        book = self.inventory.get_book(book_id, conn)

        duplicate = conn.execute(
            "SELECT id, status FROM borrow_requests WHERE user_id = ? AND book_id = ? AND status IN (?, ?, ?)",
            (user_id, book_id, *ACTIVE_REQUEST_STATUSES),
        ).fetchone()
        if duplicate is None:
            duplicate = conn.execute(
                "SELECT id, status FROM borrow_records WHERE user_id = ? AND book_id = ? AND status = 'BORROWED'",
                (user_id, book_id),
            ).fetchone()
        if duplicate is not None:
            raise DuplicateActiveRequest(
                f"User {user_id} already has an active request or loan for book {book_id}.",
                details={"existing_id": duplicate["id"], "status": duplicate["status"]},
            )

        reserve = book.reserve_on_request or flags.reserve_on_request
        if reserve:
            self.inventory.reserve_copy(conn, book_id)
        elif book.available_copies <= 0:
            raise OutOfStock(f"No copies of '{book.title}' are available.", details={"book_id": book_id})

        request_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO borrow_requests (id, user_id, book_id, status, requested_at, idempotency_key, copy_reserved)
            VALUES (?, ?, ?, 'PENDING', ?, ?, ?)
            """,
            (request_id, user_id, book_id, self.clock().isoformat(), token_key, int(reserve)),
        )
        self.audit.append(
            conn,
            AuditAction.BORROW_REQUEST_CREATED,
            ActorType.USER,
            actor_id=user_id,
            target_user_id=user_id,
            target_book_id=book_id,
            target_request_id=request_id,
            metadata=BorrowRequestMeta(idempotency_key=token_key, reserve_on_request=reserve),
            enabled=flags.enable_audit_logs,
        )
        self.metrics.increment(conn, BORROW_REQUESTS_CREATED)
        logger.info(f"Borrow request {request_id} created for user {user_id}, book {book_id}")
        return self._load_borrow_request(conn, request_id)

    def approve_borrow_request(self, request_id: str, admin_id: str, notes: Optional[str] = None,
                               flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            require_admin(conn, admin_id)
            request = self._load_borrow_request(conn, request_id)
            now = self.clock()
            due_date = (now.date() + timedelta(days=settings.loan_period_days)).isoformat()
            cursor = conn.execute(
                "UPDATE borrow_requests SET status = 'APPROVED', approved_at = ?, due_date = ?, admin_notes = ? "
                "WHERE id = ? AND status = 'PENDING'",
                (now.isoformat(), due_date, notes, request_id),
            )
            if cursor.rowcount == 0:
                raise AlreadyProcessed(
                    f"Borrow request {request_id} is already {request.status.value}.",
                    details={"status": request.status.value},
                )
            if not request.copy_reserved:
                self.inventory.reserve_copy(conn, request.book_id)

            record_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO borrow_records (id, user_id, book_id, borrow_date, due_date, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'BORROWED', ?)
                """,
                (record_id, request.user_id, request.book_id, now.isoformat(), due_date, now.isoformat()),
            )
            conn.execute(
                "UPDATE borrow_requests SET borrow_record_id = ?, copy_reserved = 1 WHERE id = ?",
                (record_id, request_id),
            )
            meta = BorrowRequestMeta(
                reserve_on_request=request.copy_reserved,
                due_date=due_date,
                borrow_record_id=record_id,
                admin_notes=notes,
            )
            for action in (AuditAction.BORROW_REQUEST_APPROVED, AuditAction.BOOK_BORROWED):
                self.audit.append(
                    conn,
                    action,
                    ActorType.ADMIN,
                    actor_id=admin_id,
                    target_user_id=request.user_id,
                    target_book_id=request.book_id,
                    target_request_id=request_id,
                    metadata=meta,
                    enabled=flags.enable_audit_logs,
                )
            self.metrics.increment(conn, BORROW_REQUESTS_APPROVED)
            self._notify_user(conn, request.user_id, request.book_id, flags,
                              lambda user, title: EmailTemplates.borrow_approved(user.full_name, title, due_date))
            approved = self._load_borrow_request(conn, request_id)
        logger.info(f"Borrow request {request_id} approved by {admin_id}, due {due_date}")
        return approved

    def reject_borrow_request(self, request_id: str, admin_id: str, notes: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> BorrowRequest:
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            require_admin(conn, admin_id)
            request = self._load_borrow_request(conn, request_id)
            cursor = conn.execute(
                "UPDATE borrow_requests SET status = 'REJECTED', rejected_at = ?, admin_notes = ?, copy_reserved = 0 "
                "WHERE id = ? AND status = 'PENDING'",
                (self.clock().isoformat(), notes, request_id),
            )
            if cursor.rowcount == 0:
                raise AlreadyProcessed(
                    f"Borrow request {request_id} is already {request.status.value}.",
                    details={"status": request.status.value},
                )
            released = False
            if request.copy_reserved:
                released = self.inventory.release_copy(conn, request.book_id)
            self.guard.forget(conn, self._borrow_key(request.user_id, request.book_id))
            self.audit.append(
                conn,
                AuditAction.BORROW_REQUEST_REJECTED,
                ActorType.ADMIN,
                actor_id=admin_id,
                target_user_id=request.user_id,
                target_book_id=request.book_id,
                target_request_id=request_id,
                metadata=BorrowRequestMeta(admin_notes=notes, copy_released=released),
                enabled=flags.enable_audit_logs,
            )
            self.metrics.increment(conn, BORROW_REQUESTS_REJECTED)
            self._notify_user(conn, request.user_id, request.book_id, flags,
                              lambda user, title: EmailTemplates.borrow_rejected(user.full_name, title, notes))
            rejected = self._load_borrow_request(conn, request_id)
        logger.info(f"Borrow request {request_id} rejected by {admin_id}")
        return rejected

    # ------------------------- Return requests ------------------------- #
    def create_return_request(self, user_id: str, borrow_record_id: str, confirmation_text: Optional[str],
                              flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        flags = flags or FeatureFlags.from_env()
        if ConfirmationValidator.is_blank(confirmation_text):
            raise ValidationError("Confirmation text is required to return a book.")
        key = self._return_key(user_id, borrow_record_id)

        def submit(conn: sqlite3.Connection) -> dict:
            return self._insert_return_request(conn, user_id, borrow_record_id, confirmation_text, flags).to_dict()

        result = self.guard.run(key, CREATE_RETURN, submit, settings.derived_idempotency_ttl_seconds,
                                enabled=flags.enable_idempotency)
        return ReturnRequest.from_dict(result.value)

    def _insert_return_request(self, conn: sqlite3.Connection, user_id: str, borrow_record_id: str,
                               confirmation_text: str, flags: FeatureFlags) -> ReturnRequest:
        record = self._load_borrow_record(conn, borrow_record_id)
        if record.user_id != user_id:
            raise Unauthorized(f"Borrow record {borrow_record_id} does not belong to user {user_id}.")
        if record.status != BorrowRecordStatus.BORROWED:
            raise InvalidTransition(f"Borrow record {borrow_record_id} is already {record.status.value}.")
        book = self.inventory.get_book(record.book_id, conn)
        if not ConfirmationValidator.matches(confirmation_text, book.title):
            raise ValidationError(
                "Confirmation text must be 'return', 'confirm' or part of the book title.",
                details={"book_title": book.title},
            )
        eligibility = self.restrictions.can_return_book(user_id, borrow_record_id, conn)
        if not eligibility:
            raise NotEligible(eligibility.reason, details={"borrow_record_id": borrow_record_id})

        pending = conn.execute(
            "SELECT id FROM return_requests WHERE borrow_record_id = ? AND status = 'PENDING'", (borrow_record_id,)
        ).fetchone()
        if pending is not None:
            raise DuplicateRequest(
                f"A return request for record {borrow_record_id} is already pending.",
                details={"existing_id": pending["id"]},
            )

        now = self.clock()
        window_start = now - timedelta(hours=settings.return_resubmission_window_hours)
        resubmission = conn.execute(
            "SELECT 1 FROM return_requests WHERE borrow_record_id = ? AND status = 'REJECTED' AND rejected_at >= ?",
            (borrow_record_id, window_start.isoformat()),
        ).fetchone() is not None

        request_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO return_requests (id, user_id, book_id, borrow_record_id, status, requested_at, is_resubmission)
            VALUES (?, ?, ?, ?, 'PENDING', ?, ?)
            """,
            (request_id, user_id, record.book_id, borrow_record_id, now.isoformat(), int(resubmission)),
        )
        conn.execute(
            "UPDATE borrow_requests SET status = 'RETURN_PENDING' WHERE borrow_record_id = ? AND status = 'APPROVED'",
            (borrow_record_id,),
        )
        self.audit.append(
            conn,
            AuditAction.RETURN_REQUEST_CREATED,
            ActorType.USER,
            actor_id=user_id,
            target_user_id=user_id,
            target_book_id=record.book_id,
            target_request_id=request_id,
            metadata=ReturnRequestMeta(borrow_record_id=borrow_record_id, is_resubmission=resubmission),
            enabled=flags.enable_audit_logs,
        )
        logger.info(f"Return request {request_id} created for record {borrow_record_id}"
                    f"{' (resubmission)' if resubmission else ''}")
        return self._load_return_request(conn, request_id)

    def approve_return_request(self, request_id: str, admin_id: Optional[str] = None, notes: Optional[str] = None,
                               flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            if admin_id is not None:
                require_admin(conn, admin_id)
            request = self._load_return_request(conn, request_id)
            now = self.clock()
            cursor = conn.execute(
                "UPDATE return_requests SET status = 'APPROVED', approved_at = ?, admin_notes = ? "
                "WHERE id = ? AND status = 'PENDING'",
                (now.isoformat(), notes, request_id),
            )
            if cursor.rowcount == 0:
                raise AlreadyProcessed(
                    f"Return request {request_id} is already {request.status.value}.",
                    details={"status": request.status.value},
                )

            today = now.date()
            if flags.enable_overdue:
                # settle the fine as of the return date before the loan closes
                self.penalties.assess_in(conn, request.borrow_record_id, today, flags)
            cursor = conn.execute(
                "UPDATE borrow_records SET status = 'RETURNED', return_date = ? WHERE id = ? AND status = 'BORROWED'",
                (today.isoformat(), request.borrow_record_id),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Borrow record {request.borrow_record_id} is not on loan.")
            conn.execute(
                "UPDATE borrow_requests SET status = 'RETURNED' WHERE borrow_record_id = ? AND status = 'RETURN_PENDING'",
                (request.borrow_record_id,),
            )
            self.inventory.release_copy(conn, request.book_id)
            self.guard.forget(conn, self._borrow_key(request.user_id, request.book_id))
            self.guard.forget(conn, self._return_key(request.user_id, request.borrow_record_id))

            meta = ReturnRequestMeta(
                borrow_record_id=request.borrow_record_id,
                is_resubmission=request.is_resubmission,
                return_date=today.isoformat(),
                admin_notes=notes,
            )
            for action in (AuditAction.RETURN_REQUEST_APPROVED, AuditAction.BOOK_RETURNED):
                self.audit.append(
                    conn,
                    action,
                    ActorType.ADMIN if admin_id else ActorType.SYSTEM,
                    actor_id=admin_id,
                    target_user_id=request.user_id,
                    target_book_id=request.book_id,
                    target_request_id=request_id,
                    metadata=meta,
                    enabled=flags.enable_audit_logs,
                )
            self.metrics.increment(conn, RETURN_REQUESTS_APPROVED)
            self._notify_user(conn, request.user_id, request.book_id, flags,
                              lambda user, title: EmailTemplates.return_approved(user.full_name, title))
            if flags.enable_notify:
                self._notify_waiting_user(conn, request.book_id, flags)
            approved = self._load_return_request(conn, request_id)
        logger.info(f"Return request {request_id} approved, record {request.borrow_record_id} closed")
        return approved

    def reject_return_request(self, request_id: str, admin_id: Optional[str] = None, notes: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> ReturnRequest:
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            if admin_id is not None:
                require_admin(conn, admin_id)
            request = self._load_return_request(conn, request_id)
            cursor = conn.execute(
                "UPDATE return_requests SET status = 'REJECTED', rejected_at = ?, admin_notes = ? "
                "WHERE id = ? AND status = 'PENDING'",
                (self.clock().isoformat(), notes, request_id),
            )
            if cursor.rowcount == 0:
                raise AlreadyProcessed(
                    f"Return request {request_id} is already {request.status.value}.",
                    details={"status": request.status.value},
                )
            conn.execute(
                "UPDATE borrow_requests SET status = 'APPROVED' WHERE borrow_record_id = ? AND status = 'RETURN_PENDING'",
                (request.borrow_record_id,),
            )
            self.guard.forget(conn, self._return_key(request.user_id, request.borrow_record_id))
            self.audit.append(
                conn,
                AuditAction.RETURN_REQUEST_REJECTED,
                ActorType.ADMIN if admin_id else ActorType.SYSTEM,
                actor_id=admin_id,
                target_user_id=request.user_id,
                target_book_id=request.book_id,
                target_request_id=request_id,
                metadata=ReturnRequestMeta(borrow_record_id=request.borrow_record_id, admin_notes=notes),
                enabled=flags.enable_audit_logs,
            )
            self._notify_user(conn, request.user_id, request.book_id, flags,
                              lambda user, title: EmailTemplates.return_rejected(user.full_name, title, notes))
            rejected = self._load_return_request(conn, request_id)
        logger.info(f"Return request {request_id} rejected")
        return rejected

    # ------------------------- Waiting list ------------------------- #
    def subscribe_availability(self, user_id: str, book_id: str, flags: Optional[FeatureFlags] = None) -> bool:
        """Put the user on the book's waiting list. Returns False if already waiting."""
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            self._load_user(conn, user_id)
            self.inventory.get_book(book_id, conn)
            cursor = conn.execute(
                "INSERT OR IGNORE INTO notification_preferences (user_id, book_id, notify_on_available, created_at) "
                "VALUES (?, ?, 1, ?)",
                (user_id, book_id, self.clock().isoformat()),
            )
            created = cursor.rowcount == 1
            if not created:
                cursor = conn.execute(
                    "UPDATE notification_preferences SET notify_on_available = 1, notified_at = NULL, created_at = ? "
                    "WHERE user_id = ? AND book_id = ? AND notify_on_available = 0",
                    (self.clock().isoformat(), user_id, book_id),
                )
                created = cursor.rowcount == 1
            if created:
                self.audit.append(
                    conn,
                    AuditAction.NOTIFICATION_SUBSCRIBED,
                    ActorType.USER,
                    actor_id=user_id,
                    target_user_id=user_id,
                    target_book_id=book_id,
                    enabled=flags.enable_audit_logs,
                )
        return created

    def _notify_waiting_user(self, conn: sqlite3.Connection, book_id: str, flags: FeatureFlags) -> None:
        waiting = conn.execute(
            """
            SELECT p.user_id, u.full_name, u.email, b.title
            FROM notification_preferences p
            JOIN users u ON u.id = p.user_id
            JOIN books b ON b.id = p.book_id
            WHERE p.book_id = ? AND p.notify_on_available = 1
            ORDER BY p.created_at
            LIMIT 1
            """,
            (book_id,),
        ).fetchone()
        if waiting is None:
            return
        if self.outbox.enqueue(
            conn,
            waiting["email"],
            EmailTemplates.book_available(waiting["full_name"], waiting["title"]),
            enabled=flags.enable_email_notifications,
        ) is not None:
            self.metrics.increment(conn, NOTIFY_EMAILS_SENT)
        conn.execute(
            "UPDATE notification_preferences SET notify_on_available = 0, notified_at = ? WHERE user_id = ? AND book_id = ?",
            (self.clock().isoformat(), waiting["user_id"], book_id),
        )
        logger.info(f"Waiting user {waiting['user_id']} notified that book {book_id} is available")

    # ------------------------- Queries ------------------------- #
    def get_borrow_request(self, request_id: str) -> BorrowRequest:
        with read_connection(self.db_file) as conn:
            return self._load_borrow_request(conn, request_id)

    def get_return_request(self, request_id: str) -> ReturnRequest:
        with read_connection(self.db_file) as conn:
            return self._load_return_request(conn, request_id)

    def get_borrow_record(self, record_id: str) -> BorrowRecord:
        with read_connection(self.db_file) as conn:
            return self._load_borrow_record(conn, record_id)

    def list_pending_borrow_requests(self) -> List[BorrowRequest]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM borrow_requests WHERE status = 'PENDING' ORDER BY requested_at"
            ).fetchall()
        return [BorrowRequest.from_row(row) for row in rows]

    def list_pending_return_requests(self) -> List[ReturnRequest]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM return_requests WHERE status = 'PENDING' ORDER BY requested_at"
            ).fetchall()
        return [ReturnRequest.from_row(row) for row in rows]

    def list_user_records(self, user_id: str, active_only: bool = False) -> List[BorrowRecord]:
        query = "SELECT * FROM borrow_records WHERE user_id = ?"
        if active_only:
            query += " AND status = 'BORROWED'"
        with read_connection(self.db_file) as conn:
            rows = conn.execute(query + " ORDER BY borrow_date", (user_id,)).fetchall()
        return [BorrowRecord.from_row(row) for row in rows]

    def get_user_borrow_status(self, user_id: str, book_id: str) -> Optional[str]:
        """Where the user stands with a book: PENDING, RETURN_PENDING, BORROWED or None."""
        with read_connection(self.db_file) as conn:
            for status in (BorrowRequestStatus.PENDING, BorrowRequestStatus.RETURN_PENDING):
                row = conn.execute(
                    "SELECT 1 FROM borrow_requests WHERE user_id = ? AND book_id = ? AND status = ?",
                    (user_id, book_id, status.value),
                ).fetchone()
                if row is not None:
                    return status.value
            row = conn.execute(
                "SELECT 1 FROM borrow_records WHERE user_id = ? AND book_id = ? AND status = 'BORROWED'",
                (user_id, book_id),
            ).fetchone()
        return BorrowRecordStatus.BORROWED.value if row is not None else None

    # ------------------------- Helpers ------------------------- #
    def _borrow_key(self, user_id: str, book_id: str) -> str:
        return self.guard.derive_key(CREATE_BORROW, {"user_id": user_id, "book_id": book_id})

    def _return_key(self, user_id: str, borrow_record_id: str) -> str:
        return self.guard.derive_key(CREATE_RETURN, {"user_id": user_id, "borrow_record_id": borrow_record_id})

    def _notify_user(self, conn, user_id, book_id, flags, render) -> None:
        if not flags.enable_email_notifications:
            return
        user = self._load_user(conn, user_id)
        book = self.inventory.get_book(book_id, conn)
        self.outbox.enqueue(conn, user.email, render(user, book.title))

    @staticmethod
    def _load_user(conn: sqlite3.Connection, user_id: str) -> User:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFound(f"User {user_id} not found.")
        return User.from_row(row)

    @staticmethod
    def _load_borrow_request(conn: sqlite3.Connection, request_id: str) -> BorrowRequest:
        row = conn.execute("SELECT * FROM borrow_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFound(f"Borrow request {request_id} not found.")
        return BorrowRequest.from_row(row)

    @staticmethod
    def _load_return_request(conn: sqlite3.Connection, request_id: str) -> ReturnRequest:
        row = conn.execute("SELECT * FROM return_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFound(f"Return request {request_id} not found.")
        return ReturnRequest.from_row(row)

    @staticmethod
    def _load_borrow_record(conn: sqlite3.Connection, record_id: str) -> BorrowRecord:
        row = conn.execute("SELECT * FROM borrow_records WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise NotFound(f"Borrow record {record_id} not found.")
        return BorrowRecord.from_row(row)
