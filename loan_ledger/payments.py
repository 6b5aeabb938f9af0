"""
Payment Record Store Module

Payment submission, review and correction. A payment has no effect on its
loan until it is confirmed; confirmation applies its amount to the loan
ledger exactly once, in the same atomic unit that marks it confirmed.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .concurrency import RetryPolicy, retry_on_conflict
from .currency import Number, to_decimal
from .exceptions import DependencyError, IllegalTransitionError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .models import PAYMENTS_TABLE, Payment, PaymentMethod, PaymentStatus, ZERO
from .reconciler import LedgerReconciler
from .storage import StorageInterface
from .uploads import ReceiptFile, UploadService


def parse_amount(amount: Number) -> Decimal:
    """Payment amounts must be positive Decimals"""
    try:
        value = to_decimal(amount)
    except ValueError as e:
        raise ValidationError(str(e), field="amount")
    if value <= ZERO:
        raise ValidationError(f"Payment amount must be positive, got {value}", field="amount")
    return value


def parse_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(str(method).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown payment method '{method}'; expected one of "
            f"{', '.join(m.value for m in PaymentMethod)}",
            field="method"
        )


def parse_status(status: Union[PaymentStatus, str]) -> PaymentStatus:
    if isinstance(status, PaymentStatus):
        return status
    try:
        return PaymentStatus(str(status).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown payment status '{status}'; expected one of "
            f"{', '.join(s.value for s in PaymentStatus)}",
            field="status"
        )


class PaymentStore:
    """
    Payment Record Store

    Status transitions:
        pending -> confirmed   applies the amount to the loan ledger
        pending -> rejected    no ledger effect
        confirmed -> confirmed no-op (retried requests are safe)
        rejected -> rejected   no-op
    Everything else raises IllegalTransitionError. Only pending payments can
    be deleted.
    """

    def __init__(
        self,
        storage: StorageInterface,
        reconciler: LedgerReconciler,
        upload_service: Optional[UploadService] = None,
        audit_trail: Optional[AuditTrail] = None,
        retry_policy: Optional[RetryPolicy] = None,
        upload_folder: str = "receipts",
        receipt_upload_required: bool = True
    ):
        self.storage = storage
        self.reconciler = reconciler
        self.upload_service = upload_service
        self.audit_trail = audit_trail
        self.retry_policy = retry_policy or RetryPolicy()
        self.upload_folder = upload_folder
        self.receipt_upload_required = receipt_upload_required
        self.logger = get_logger("loan_ledger.payments")

    def _audit(self, event_type: AuditEventType, payment: Payment,
               metadata: Dict[str, Any], user_id: Optional[str]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "payment", payment.id, metadata, user_id=user_id)

    def _load(self, payment_id: str) -> Payment:
        data = self.storage.load(PAYMENTS_TABLE, payment_id)
        if not data:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return Payment.from_dict(data)

    def _upload_receipt(self, receipt: Optional[ReceiptFile], loan_id: str) -> Tuple[Optional[str], bool]:
        """
        Upload a receipt before any write.

        Returns:
            (url, receipt_missing)

        Raises:
            DependencyError: If the upload failed and receipts are required
        """
        if receipt is None:
            return None, False

        try:
            if self.upload_service is None:
                raise DependencyError("No upload service is configured", operation="upload")
            return self.upload_service.upload(receipt, self.upload_folder), False
        except DependencyError as e:
            if self.receipt_upload_required:
                log_action(
                    self.logger, "error", "Receipt upload failed; payment not recorded",
                    action="upload_failed", resource=f"loan:{loan_id}",
                    extra={"filename": receipt.filename, "error": e.message}
                )
                raise
            log_action(
                self.logger, "warning", "Receipt upload failed; recording payment without receipt",
                action="upload_failed", resource=f"loan:{loan_id}",
                extra={"filename": receipt.filename, "error": e.message}
            )
            return None, True

    def create(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        owner_id: Optional[str] = None,
        notes: Optional[str] = None,
        receipt: Optional[ReceiptFile] = None
    ) -> Payment:
        """
        Submit a pending payment against a loan.

        Args:
            loan_id: Loan the payment belongs to
            amount: Positive amount paid
            payment_date: Date of payment (default today)
            method: Payment method
            owner_id: Owner recording the payment (default the loan's owner)
            notes: Free text
            receipt: Optional receipt image, uploaded before anything is written

        Returns:
            The new pending Payment

        Raises:
            ValidationError: On a non-positive amount or unknown method
            NotFoundError: If the loan does not exist
            IllegalTransitionError: If the loan is already completed
            DependencyError: If a required receipt upload failed
        """
        amount = parse_amount(amount)
        method = parse_method(method)
        payment_date = payment_date or date.today()

        loan = self.reconciler.load_loan(loan_id)
        if loan.is_completed:
            raise IllegalTransitionError(
                f"Loan {loan_id} is completed and no longer accepts payments", loan_id=loan_id
            )

        receipt_url, receipt_missing = self._upload_receipt(receipt, loan_id)

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=amount,
            payment_date=payment_date,
            method=method,
            status=PaymentStatus.PENDING,
            owner_id=owner_id or loan.owner_id,
            receipt_image=receipt_url,
            receipt_missing=receipt_missing,
            notes=notes,
        )

        with self.storage.atomic():
            # Loan may have been deleted while the receipt was uploading
            self.reconciler.load_loan(loan_id)
            payment.version = self.storage.compare_and_swap(
                PAYMENTS_TABLE, payment.id, payment.to_dict(), None
            )
            self._audit(AuditEventType.PAYMENT_CREATED, payment, {
                "loan_id": loan_id,
                "amount": amount,
                "method": method.value,
                "receipt_missing": receipt_missing,
            }, payment.owner_id)

        log_action(
            self.logger, "info", "Payment submitted",
            user_id=payment.owner_id, action="create_payment", resource=f"payment:{payment.id}",
            extra={"loan_id": loan_id, "amount": str(amount)}
        )
        return payment

    def get(self, payment_id: str) -> Payment:
        """Get a payment by ID, raising NotFoundError if missing"""
        return self._load(payment_id)

    def list_by_loan(
        self,
        loan_id: str,
        status: Optional[Union[PaymentStatus, str]] = None
    ) -> List[Payment]:
        """Payments of a loan, most recent payment date first"""
        filters: Dict[str, Any] = {"loan_id": loan_id}
        if status is not None:
            filters["status"] = parse_status(status)
        records = self.storage.query(
            PAYMENTS_TABLE, filters, order_by="payment_date", descending=True
        )
        return [Payment.from_dict(data) for data in records]

    def update_status(
        self,
        payment_id: str,
        status: Union[PaymentStatus, str],
        user_id: Optional[str] = None
    ) -> Payment:
        """
        Move a payment to a new status.

        Confirming reconciles the loan ledger and marks the payment confirmed in
        one atomic unit, retried as a whole on write conflicts. If the ledger
        step fails the payment stays pending.

        Raises:
            NotFoundError: Unknown payment or loan
            IllegalTransitionError: Transition not allowed, or the loan is completed
            ConflictError: Concurrent writers kept winning
        """
        status = parse_status(status)

        if status == PaymentStatus.CONFIRMED:
            return self._confirm(payment_id, user_id)
        if status == PaymentStatus.REJECTED:
            return self._reject(payment_id, user_id)

        payment = self._load(payment_id)
        if payment.status == PaymentStatus.PENDING:
            return payment
        raise IllegalTransitionError(
            f"Payment {payment_id} is {payment.status.value} and cannot return to pending",
            payment_id=payment_id, status=payment.status.value
        )

    def confirm(self, payment_id: str, user_id: Optional[str] = None) -> Payment:
        return self.update_status(payment_id, PaymentStatus.CONFIRMED, user_id)

    def reject(self, payment_id: str, user_id: Optional[str] = None) -> Payment:
        return self.update_status(payment_id, PaymentStatus.REJECTED, user_id)

    def _confirm(self, payment_id: str, user_id: Optional[str]) -> Payment:
        def attempt() -> Tuple[Payment, bool]:
            with self.storage.atomic():
                payment = self._load(payment_id)
                if payment.status == PaymentStatus.CONFIRMED:
                    return payment, False
                if payment.status == PaymentStatus.REJECTED:
                    raise IllegalTransitionError(
                        f"Payment {payment_id} was rejected and cannot be confirmed",
                        payment_id=payment_id
                    )

                expected_version = payment.version
                loan, update = self.reconciler.reconcile(
                    payment.loan_id, payment.amount, payment.payment_date,
                    payment_id=payment.id, user_id=user_id
                )

                now = datetime.now(timezone.utc)
                payment.status = PaymentStatus.CONFIRMED
                payment.confirmed_at = now
                payment.updated_at = now
                payment.version = self.storage.compare_and_swap(
                    PAYMENTS_TABLE, payment.id, payment.to_dict(), expected_version
                )
                self._audit(AuditEventType.PAYMENT_CONFIRMED, payment, {
                    "loan_id": payment.loan_id,
                    "amount": payment.amount,
                    "loan_paid_amount": update.paid_amount,
                    "loan_status": update.status.value,
                }, user_id)
                return payment, True

        payment, applied = retry_on_conflict(attempt, self.retry_policy, resource=f"payment:{payment_id}")

        if applied:
            log_action(
                self.logger, "info", "Payment confirmed",
                user_id=user_id, action="confirm_payment", resource=f"payment:{payment_id}",
                extra={"loan_id": payment.loan_id, "amount": str(payment.amount)}
            )
        else:
            self.logger.debug(f"Payment {payment_id} already confirmed; nothing to apply")
        return payment

    def _reject(self, payment_id: str, user_id: Optional[str]) -> Payment:
        def attempt() -> Tuple[Payment, bool]:
            with self.storage.atomic():
                payment = self._load(payment_id)
                if payment.status == PaymentStatus.REJECTED:
                    return payment, False
                if payment.status == PaymentStatus.CONFIRMED:
                    raise IllegalTransitionError(
                        f"Payment {payment_id} is confirmed; rejecting it would need a reversal",
                        payment_id=payment_id
                    )

                expected_version = payment.version
                payment.status = PaymentStatus.REJECTED
                payment.updated_at = datetime.now(timezone.utc)
                payment.version = self.storage.compare_and_swap(
                    PAYMENTS_TABLE, payment.id, payment.to_dict(), expected_version
                )
                self._audit(AuditEventType.PAYMENT_REJECTED, payment, {
                    "loan_id": payment.loan_id, "amount": payment.amount
                }, user_id)
                return payment, True

        payment, changed = retry_on_conflict(attempt, self.retry_policy, resource=f"payment:{payment_id}")
        if changed:
            log_action(
                self.logger, "info", "Payment rejected",
                user_id=user_id, action="reject_payment", resource=f"payment:{payment_id}",
                extra={"loan_id": payment.loan_id}
            )
        return payment

    def update(
        self,
        payment_id: str,
        amount: Optional[Number] = None,
        payment_date: Optional[date] = None,
        method: Optional[Union[PaymentMethod, str]] = None,
        notes: Optional[str] = None,
        receipt: Optional[ReceiptFile] = None,
        user_id: Optional[str] = None
    ) -> Payment:
        """
        Edit a payment's details. Status never changes here.

        Correcting the amount of a confirmed payment applies the signed
        difference (new - old) to the loan ledger in the same atomic unit.

        Raises:
            ValidationError: Bad amount or method
            NotFoundError: Unknown payment
            IllegalTransitionError: Amount correction against a completed loan
            DependencyError: Required receipt upload failed
        """
        new_amount = parse_amount(amount) if amount is not None else None
        new_method = parse_method(method) if method is not None else None

        current = self._load(payment_id)
        receipt_url, receipt_missing = self._upload_receipt(receipt, current.loan_id)

        def attempt() -> Tuple[Payment, Dict[str, Any]]:
            with self.storage.atomic():
                payment = self._load(payment_id)
                expected_version = payment.version
                changes: Dict[str, Any] = {}

                if new_amount is not None and new_amount != payment.amount:
                    changes["amount"] = {"old": payment.amount, "new": new_amount}
                    if payment.status == PaymentStatus.CONFIRMED:
                        self.reconciler.reconcile(
                            payment.loan_id, new_amount - payment.amount,
                            payment_date or payment.payment_date,
                            payment_id=payment.id, user_id=user_id
                        )
                    payment.amount = new_amount
                if payment_date is not None and payment_date != payment.payment_date:
                    changes["payment_date"] = {"old": payment.payment_date, "new": payment_date}
                    payment.payment_date = payment_date
                if new_method is not None and new_method != payment.method:
                    changes["method"] = {"old": payment.method.value, "new": new_method.value}
                    payment.method = new_method
                if notes is not None and notes != payment.notes:
                    changes["notes"] = True
                    payment.notes = notes
                if receipt is not None:
                    changes["receipt_image"] = receipt_url
                    payment.receipt_image = receipt_url or payment.receipt_image
                    payment.receipt_missing = receipt_missing

                if not changes:
                    return payment, changes

                payment.updated_at = datetime.now(timezone.utc)
                payment.version = self.storage.compare_and_swap(
                    PAYMENTS_TABLE, payment.id, payment.to_dict(), expected_version
                )
                self._audit(AuditEventType.PAYMENT_UPDATED, payment, {
                    "loan_id": payment.loan_id,
                    "status": payment.status.value,
                    "changes": changes,
                }, user_id)
                return payment, changes

        payment, changes = retry_on_conflict(attempt, self.retry_policy, resource=f"payment:{payment_id}")
        if changes:
            log_action(
                self.logger, "info", "Payment updated",
                user_id=user_id, action="update_payment", resource=f"payment:{payment_id}",
                extra={"fields": sorted(changes), "status": payment.status.value}
            )
        return payment

    def record_payment(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        owner_id: Optional[str] = None,
        notes: Optional[str] = None,
        receipt: Optional[ReceiptFile] = None
    ) -> Payment:
        """
        Submit and confirm a payment in one call.

        If confirmation fails the payment remains pending and the error is raised.
        """
        payment = self.create(
            loan_id, amount, payment_date=payment_date, method=method,
            owner_id=owner_id, notes=notes, receipt=receipt
        )
        return self.confirm(payment.id, user_id=owner_id)

    def delete(self, payment_id: str, user_id: Optional[str] = None) -> None:
        """
        Delete a pending payment. The loan ledger is not touched.

        Raises:
            NotFoundError: Unknown payment
            IllegalTransitionError: Payment is confirmed or rejected
        """
        with self.storage.atomic():
            payment = self._load(payment_id)
            if payment.status != PaymentStatus.PENDING:
                raise IllegalTransitionError(
                    f"Payment {payment_id} is {payment.status.value} and not deletable",
                    payment_id=payment_id, status=payment.status.value
                )
            self.storage.delete(PAYMENTS_TABLE, payment_id)
            self._audit(AuditEventType.PAYMENT_DELETED, payment, {
                "loan_id": payment.loan_id, "amount": payment.amount
            }, user_id)

        log_action(
            self.logger, "info", "Payment deleted",
            user_id=user_id, action="delete_payment", resource=f"payment:{payment_id}",
            extra={"loan_id": payment.loan_id}
        )
