"""Payment reconciliation for fines.

A payment moves PENDING -> PROCESSING when the gateway accepts it and then
to COMPLETED, FAILED or CANCELLED as gateway events arrive. Gateways deliver
events at least once and through two paths (checkout session and payment
intent); both converge on :meth:`PaymentReconciler.complete_payment`, which
applies a transaction's money exactly once.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from audit import AuditAction, AuditLog, FineMeta, PaymentMeta
from config import FeatureFlags, settings
from database import read_connection, transaction
from errors import AlreadyProcessed, ExternalServiceError, InvalidTransition, NotFound, ValidationError
from models import (
    OUTSTANDING_FINE_STATUSES,
    ActorType,
    Fine,
    FineStatus,
    Money,
    PaymentStatus,
    PaymentTransaction,
    from_cents,
    to_cents,
    utcnow,
)
from notifications import EmailTemplates, NotificationOutbox
from restrictions import RestrictionEngine, require_admin
from utils.validators import AmountValidator

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.FAILED.value)


class PaymentGateway:
    """Outbound payment provider."""

    def create_payment_intent(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class OfflinePaymentGateway(PaymentGateway):
    """Issues local references; completion arrives through the webhook or CLI."""

    def create_payment_intent(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> str:
        ref = f"pi_{uuid.uuid4().hex}"
        logger.info(f"Offline payment intent {ref} for {amount} {currency}")
        return ref


@dataclass
class PaymentResult:
    transaction: PaymentTransaction
    already_processed: bool = False
    applied: List[Tuple[str, Decimal]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "already_processed": self.already_processed,
            "applied": [{"fine_id": fine_id, "amount": str(amount)} for fine_id, amount in self.applied],
        }


class PaymentReconciler:
    """Sole writer of fine payment state and payment transactions."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        *,
        audit: Optional[AuditLog] = None,
        restrictions: Optional[RestrictionEngine] = None,
        outbox: Optional[NotificationOutbox] = None,
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_file = db_file
        self.audit = audit or AuditLog(db_file, clock=clock)
        self.restrictions = restrictions or RestrictionEngine(db_file, self.audit, clock=clock)
        self.outbox = outbox or NotificationOutbox(db_file, clock=clock)
        self.gateway = gateway or OfflinePaymentGateway()
        self.clock = clock

    # ------------------------- Initiation ------------------------- #
    def create_payment(self, user_id: str, fine_ids: List[str], amount: Optional[Money] = None,
                       flags: Optional[FeatureFlags] = None) -> PaymentTransaction:
        flags = flags or FeatureFlags.from_env()
        if not fine_ids:
            raise ValidationError("At least one fine is required.")
        fine_ids = list(dict.fromkeys(fine_ids))
        transaction_id = str(uuid.uuid4())

        with transaction(self.db_file) as conn:
            placeholders = ", ".join("?" for _ in fine_ids)
            rows = conn.execute(
                f"SELECT * FROM fines WHERE user_id = ? AND id IN ({placeholders})", (user_id, *fine_ids)
            ).fetchall()
            if len(rows) != len(fine_ids):
                raise ValidationError("Some fines do not exist or do not belong to this user.")
            fines = [Fine.from_row(row) for row in rows]
            unpaid = [fine for fine in fines if fine.status.value in OUTSTANDING_FINE_STATUSES and fine.outstanding > 0]
            if len(unpaid) != len(fines):
                raise ValidationError("Some fines are already paid or waived.")
            owed_cents = sum(to_cents(fine.outstanding) for fine in fines)

            if amount is None:
                total_cents = owed_cents
            else:
                parsed = AmountValidator.parse(amount)
                if parsed is None:
                    raise ValidationError("Payment amount must be a positive number.")
                total_cents = to_cents(parsed)
                if total_cents > owed_cents:
                    raise ValidationError(
                        f"Payment of ${from_cents(total_cents)} exceeds the ${from_cents(owed_cents)} owed."
                    )

            now = self.clock().isoformat()
            conn.execute(
                """
                INSERT INTO payment_transactions (id, user_id, fine_ids, total_cents, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'PENDING', ?, ?)
                """,
                (transaction_id, user_id, json.dumps(fine_ids), total_cents, now, now),
            )
            self._audit_payment(conn, AuditAction.PAYMENT_INITIATED, user_id, transaction_id, None, None,
                                total_cents, fine_ids, None, flags)

        # gateway call happens outside any transaction
        try:
            ref = self.gateway.create_payment_intent(
                from_cents(total_cents),
                settings.payment_currency,
                {"transaction_id": transaction_id, "user_id": user_id},
            )
        except Exception as e:
            logger.exception(f"Payment gateway rejected transaction {transaction_id}")
            with transaction(self.db_file) as conn:
                conn.execute(
                    "UPDATE payment_transactions SET status = 'FAILED', error_message = ?, updated_at = ? "
                    "WHERE id = ? AND status = 'PENDING'",
                    (str(e)[:500], self.clock().isoformat(), transaction_id),
                )
            raise ExternalServiceError(f"Payment gateway error: {e}") from e

        with transaction(self.db_file) as conn:
            conn.execute(
                "UPDATE payment_transactions SET external_ref = ?, status = 'PROCESSING', updated_at = ? "
                "WHERE id = ? AND status = 'PENDING'",
                (ref, self.clock().isoformat(), transaction_id),
            )
            created = self._load_transaction(conn, transaction_id=transaction_id)
        logger.info(f"Payment {transaction_id} of ${created.total_amount} started for user {user_id} ({ref})")
        return created

    # ------------------------- Completion ------------------------- #
    def complete_payment(self, payment_ref: Optional[str] = None, transaction_id: Optional[str] = None,
                         flags: Optional[FeatureFlags] = None) -> PaymentResult:
        """Apply a successful payment. Repeated deliveries are no-ops."""
        flags = flags or FeatureFlags.from_env()
        with transaction(self.db_file) as conn:
            tx = self._load_transaction(conn, payment_ref=payment_ref, transaction_id=transaction_id)
            return self._complete_in(conn, tx, payment_ref, None, flags)

    def handle_checkout_session_completed(self, session_id: str, payment_ref: Optional[str] = None,
                                          transaction_id: Optional[str] = None, payment_status: str = "paid",
                                          flags: Optional[FeatureFlags] = None) -> PaymentResult:
        flags = flags or FeatureFlags.from_env()
        if payment_status != "paid":
            raise ValidationError(f"Checkout session {session_id} is not paid (status {payment_status}).")
        with transaction(self.db_file) as conn:
            tx = self._load_transaction(conn, payment_ref=payment_ref, transaction_id=transaction_id)
            return self._complete_in(conn, tx, payment_ref, session_id, flags)

    def _complete_in(self, conn: sqlite3.Connection, tx: PaymentTransaction, payment_ref: Optional[str],
                     session_id: Optional[str], flags: FeatureFlags) -> PaymentResult:
        if session_id:
            conn.execute(
                "UPDATE payment_transactions SET checkout_session_id = ? WHERE id = ? AND checkout_session_id IS NULL",
                (session_id, tx.id),
            )
        if tx.status == PaymentStatus.COMPLETED:
            logger.info(f"Payment {tx.id} already completed, ignoring repeated event")
            return PaymentResult(self._load_transaction(conn, transaction_id=tx.id), already_processed=True)
        if tx.status.value not in OPEN_PAYMENT_STATUSES:
            raise InvalidTransition(f"Payment {tx.id} is {tx.status.value} and cannot be completed.")

        now = self.clock().isoformat()
        cursor = conn.execute(
            f"""
            UPDATE payment_transactions
            SET status = 'COMPLETED', completed_at = ?, updated_at = ?, error_message = NULL,
                external_ref = COALESCE(external_ref, ?)
            WHERE id = ? AND status IN ({", ".join("?" for _ in OPEN_PAYMENT_STATUSES)})
            """,
            (now, now, payment_ref, tx.id, *OPEN_PAYMENT_STATUSES),
        )
        if cursor.rowcount == 0:
            return PaymentResult(self._load_transaction(conn, transaction_id=tx.id), already_processed=True)

        remaining = to_cents(tx.total_amount)
        applied: List[Tuple[str, Decimal]] = []
        users = {tx.user_id}
        for fine_id in tx.fine_ids:
            if remaining <= 0:
                break
            row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
            if row is None or row["status"] not in OUTSTANDING_FINE_STATUSES:
                continue
            owed = row["amount_cents"] - row["paid_cents"]
            portion = min(owed, remaining)
            if portion <= 0:
                continue
            new_paid = row["paid_cents"] + portion
            status = FineStatus.PAID if new_paid >= row["amount_cents"] else FineStatus.PARTIAL_PAID
            cursor = conn.execute(
                "UPDATE fines SET paid_cents = ?, status = ?, paid_at = ?, updated_at = ? "
                "WHERE id = ? AND paid_cents = ? AND status IN (?, ?)",
                (new_paid, status.value, now if status == FineStatus.PAID else None, now, fine_id,
                 row["paid_cents"], *OUTSTANDING_FINE_STATUSES),
            )
            if cursor.rowcount == 0:
                continue
            conn.execute(
                """
                INSERT INTO fine_payments (id, fine_id, user_id, transaction_id, amount_cents, payment_reference, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), fine_id, row["user_id"], tx.id, portion, payment_ref or tx.external_ref, now),
            )
            self.audit.append(
                conn,
                AuditAction.FINE_PAID,
                ActorType.USER,
                actor_id=tx.user_id,
                target_user_id=row["user_id"],
                target_book_id=row["book_id"],
                metadata=FineMeta(
                    fine_id=fine_id,
                    borrow_record_id=row["borrow_record_id"],
                    amount=str(from_cents(portion)),
                    previous_amount=str(from_cents(row["paid_cents"])),
                    days_overdue=row["days_overdue"],
                    is_book_lost=bool(row["is_book_lost"]),
                    penalty_type=row["penalty_type"],
                    reason=f"payment {tx.id}",
                ),
                enabled=flags.enable_audit_logs,
            )
            users.add(row["user_id"])
            applied.append((fine_id, from_cents(portion)))
            remaining -= portion

        if remaining > 0:
            logger.warning(f"Payment {tx.id} left ${from_cents(remaining)} unapplied")
        for user_id in sorted(users):
            self.restrictions.evaluate_in(conn, user_id, flags)

        completed = self._load_transaction(conn, transaction_id=tx.id)
        self._audit_payment(conn, AuditAction.PAYMENT_COMPLETED, tx.user_id, tx.id, completed.external_ref,
                            completed.checkout_session_id, to_cents(tx.total_amount), tx.fine_ids, None, flags)
        if flags.enable_email_notifications:
            user = conn.execute("SELECT full_name, email FROM users WHERE id = ?", (tx.user_id,)).fetchone()
            if user is not None:
                self.outbox.enqueue(
                    conn, user["email"],
                    EmailTemplates.payment_receipt(user["full_name"], str(tx.total_amount), len(applied)),
                )
        logger.info(f"Payment {tx.id} completed: ${tx.total_amount} applied to {len(applied)} fine(s)")
        return PaymentResult(completed, applied=applied)

    # ------------------------- Failure ------------------------- #
    def handle_failed_payment(self, payment_ref: Optional[str] = None, reason: Optional[str] = None,
                              cancelled: bool = False, transaction_id: Optional[str] = None,
                              flags: Optional[FeatureFlags] = None) -> PaymentResult:
        """Mark a payment failed or cancelled; fines are left untouched."""
        flags = flags or FeatureFlags.from_env()
        status = PaymentStatus.CANCELLED if cancelled else PaymentStatus.FAILED
        with transaction(self.db_file) as conn:
            tx = self._load_transaction(conn, payment_ref=payment_ref, transaction_id=transaction_id)
            if tx.status == PaymentStatus.COMPLETED:
                logger.warning(f"Ignoring {status.value} event for completed payment {tx.id}")
                return PaymentResult(tx, already_processed=True)
            if tx.status == status:
                return PaymentResult(tx, already_processed=True)
            cursor = conn.execute(
                f"""
                UPDATE payment_transactions SET status = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND status IN ({", ".join("?" for _ in OPEN_PAYMENT_STATUSES)})
                """,
                (status.value, reason, self.clock().isoformat(), tx.id, *OPEN_PAYMENT_STATUSES),
            )
            if cursor.rowcount == 0:
                return PaymentResult(self._load_transaction(conn, transaction_id=tx.id), already_processed=True)
            self._audit_payment(conn, AuditAction.PAYMENT_FAILED, tx.user_id, tx.id, tx.external_ref,
                                tx.checkout_session_id, to_cents(tx.total_amount), tx.fine_ids, reason, flags)
            updated = self._load_transaction(conn, transaction_id=tx.id)
        logger.warning(f"Payment {tx.id} {status.value.lower()}: {reason}")
        return PaymentResult(updated)

    # ------------------------- Waivers ------------------------- #
    def waive_fine(self, fine_id: str, admin_id: str, reason: str,
                   flags: Optional[FeatureFlags] = None) -> Fine:
        flags = flags or FeatureFlags.from_env()
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to waive a fine.")
        with transaction(self.db_file) as conn:
            require_admin(conn, admin_id)
            row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
            if row is None:
                raise NotFound(f"Fine {fine_id} not found.")
            if row["status"] == FineStatus.WAIVED.value:
                raise AlreadyProcessed(f"Fine {fine_id} is already waived.")
            now = self.clock().isoformat()
            cursor = conn.execute(
                "UPDATE fines SET status = 'WAIVED', waived_at = ?, waived_by = ?, waiver_reason = ?, updated_at = ? "
                "WHERE id = ? AND status IN (?, ?)",
                (now, admin_id, reason.strip(), now, fine_id, *OUTSTANDING_FINE_STATUSES),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Fine {fine_id} is {row['status']} and cannot be waived.")
            self.restrictions.evaluate_in(conn, row["user_id"], flags)
            self.audit.append(
                conn,
                AuditAction.FINE_WAIVED,
                ActorType.ADMIN,
                actor_id=admin_id,
                target_user_id=row["user_id"],
                target_book_id=row["book_id"],
                metadata=FineMeta(
                    fine_id=fine_id,
                    borrow_record_id=row["borrow_record_id"],
                    amount=str(from_cents(row["amount_cents"])),
                    days_overdue=row["days_overdue"],
                    is_book_lost=bool(row["is_book_lost"]),
                    penalty_type=row["penalty_type"],
                    reason=reason.strip(),
                ),
                enabled=flags.enable_audit_logs,
            )
            waived = Fine.from_row(conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone())
        logger.info(f"Fine {fine_id} waived by {admin_id}: {reason}")
        return waived

    # ------------------------- Queries ------------------------- #
    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        with read_connection(self.db_file) as conn:
            return self._load_transaction(conn, transaction_id=transaction_id)

    def list_outstanding_fines(self, user_id: str) -> List[Fine]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM fines WHERE user_id = ? AND status IN (?, ?) ORDER BY created_at",
                (user_id, *OUTSTANDING_FINE_STATUSES),
            ).fetchall()
        return [Fine.from_row(row) for row in rows]

    def list_fines(self, user_id: str) -> List[Fine]:
        with read_connection(self.db_file) as conn:
            rows = conn.execute("SELECT * FROM fines WHERE user_id = ? ORDER BY created_at", (user_id,)).fetchall()
        return [Fine.from_row(row) for row in rows]

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _load_transaction(conn: sqlite3.Connection, payment_ref: Optional[str] = None,
                          transaction_id: Optional[str] = None) -> PaymentTransaction:
        row = None
        if transaction_id:
            row = conn.execute("SELECT * FROM payment_transactions WHERE id = ?", (transaction_id,)).fetchone()
        if row is None and payment_ref:
            row = conn.execute("SELECT * FROM payment_transactions WHERE external_ref = ?", (payment_ref,)).fetchone()
        if row is None:
            raise NotFound(f"Payment transaction {transaction_id or payment_ref} not found.")
        return PaymentTransaction.from_row(row)

    def _audit_payment(self, conn, action, user_id, transaction_id, external_ref, session_id,
                       total_cents, fine_ids, error, flags) -> None:
        self.audit.append(
            conn,
            action,
            ActorType.SYSTEM if action != AuditAction.PAYMENT_INITIATED else ActorType.USER,
            actor_id=user_id if action == AuditAction.PAYMENT_INITIATED else None,
            target_user_id=user_id,
            metadata=PaymentMeta(
                transaction_id=transaction_id,
                external_ref=external_ref,
                checkout_session_id=session_id,
                amount=str(from_cents(total_cents)),
                fine_ids=list(fine_ids),
                error=error,
            ),
            enabled=flags.enable_audit_logs,
        )
