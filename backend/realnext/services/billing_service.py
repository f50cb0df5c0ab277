"""
Billing document service: invoices, payments and refunds.

Invoice numbers:
- Format INV-YYYYMM-NNNNN, sequential within the calendar month of issue.
- Allocated from the invoice_sequences row for the month with a single
  UPDATE ... SET last_value = last_value + 1; the row lock it takes is held
  until commit, so concurrent issuers in the same month are serialized.
- The counter is seeded from the highest number already issued that month; a
  number that is somehow taken is skipped. Allocation gives up with
  InvoiceNumberConflictError after a bounded number of attempts.

Payments:
- record_payment applies a gateway result: success marks the invoice paid
  (paid_at), failure marks it failed (failure_reason). Unverified
  signatures are recorded as failures.
- Subscription invoices drive the lifecycle: paid -> renew, failed ->
  past_due.
- Refunds accumulate refund_amount / refunded_at; the captured amount is
  never modified.

CRITICAL: All operations are tenant-scoped via tenant_id.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from realnext.api.schemas.billing import LineItem
from realnext.config.billing_settings import get_billing_settings
from realnext.database.upsert import insert_if_absent
from realnext.models.base import ensure_utc, utcnow
from realnext.models.billing_event import ActorType, BillingEventType
from realnext.models.invoice import Invoice, InvoiceSequence, InvoiceStatus, format_invoice_number
from realnext.models.payment import Payment, PaymentStatus
from realnext.models.plan import Plan
from realnext.models.subscription import Subscription
from realnext.repositories.billing_repository import (
    BillingAuditRepository,
    InvoiceRepository,
    PaymentRepository,
    SubscriptionRepository,
)
from realnext.services.subscription_service import (
    InvalidTransitionError,
    SubscriptionNotFoundError,
    SubscriptionService,
)

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")

SIGNATURE_FAILURE_REASON = "Payment signature verification failed"


class InvoiceKind:
    """What an invoice bills for (stored in Invoice.extra_metadata["kind"])."""
    SUBSCRIPTION = "subscription"
    PRORATION = "proration"
    ONE_OFF = "one_off"


@dataclass
class GatewayPaymentResult:
    """
    Outcome reported by the payment gateway adapter.

    Identifiers are opaque. `verified` is the adapter's signature check and
    is trusted as given.
    """
    verified: bool
    success: bool
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    failure_reason: Optional[str] = None


class BillingServiceError(Exception):
    """Base exception for billing service errors."""
    pass


class InvoiceNotFoundError(BillingServiceError):
    """Invoice does not exist for this tenant."""
    pass


class PaymentNotFoundError(BillingServiceError):
    """Payment does not exist for this tenant."""
    pass


class InvoiceValidationError(BillingServiceError):
    """Invoice amounts or line items are inconsistent."""
    pass


class InvoiceStateError(BillingServiceError):
    """Operation not allowed in the invoice's current status."""
    pass


class InvoiceNumberConflictError(BillingServiceError):
    """No free invoice number could be allocated within the retry budget."""
    pass


class RefundError(BillingServiceError):
    """Refund request is invalid for the payment."""
    pass


class BillingService:
    """
    Tenant-scoped invoices, payments and refunds.

    Args:
        db_session: Database session
        tenant_id: Tenant being billed
        clock: Optional callable returning "now" (tests)
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self._clock = clock or utcnow
        self.settings = get_billing_settings()
        self.invoices = InvoiceRepository(db_session)
        self.payments = PaymentRepository(db_session)
        self.audit = BillingAuditRepository(db_session)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("billing.commit_failed", extra={
                "tenant_id": self.tenant_id, "operation": operation,
            })
            raise

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    @staticmethod
    def validate_invoice_totals(amount, tax_amount, total_amount) -> None:
        """
        Check amount + tax == total, all non-negative.

        Raises:
            InvoiceValidationError
        """
        amount = Decimal(str(amount))
        tax_amount = Decimal(str(tax_amount))
        total_amount = Decimal(str(total_amount))
        if amount < 0 or tax_amount < 0 or total_amount < 0:
            raise InvoiceValidationError("Invoice amounts must not be negative")
        if (amount + tax_amount).quantize(_CENTS) != total_amount.quantize(_CENTS):
            raise InvoiceValidationError(
                f"amount ({amount}) + tax ({tax_amount}) != total ({total_amount})"
            )

    @staticmethod
    def _parse_line_items(line_items: Iterable[Union[LineItem, dict]]) -> List[LineItem]:
        try:
            parsed = [
                item if isinstance(item, LineItem) else LineItem.model_validate(item)
                for item in line_items
            ]
        except PydanticValidationError as e:
            raise InvoiceValidationError(f"Invalid line item: {e}") from e
        if not parsed:
            raise InvoiceValidationError("An invoice needs at least one line item")
        return parsed

    def _next_invoice_number(self, now: datetime) -> str:
        """
        Increment the month's counter and format the number.

        The counter row is seeded from existing invoice numbers only the
        first time a month is seen.
        """
        period_key = now.strftime("%Y%m")

        if self._bump_sequence(period_key) == 0:
            prefix = f"{self.settings.invoice_prefix}-{period_key}-"
            insert_if_absent(
                self.db,
                InvoiceSequence,
                {
                    "period_key": period_key,
                    "last_value": self.invoices.highest_suffix_with_prefix(prefix),
                },
                index_elements=["period_key"],
            )
            self._bump_sequence(period_key)

        value = (
            self.db.query(InvoiceSequence.last_value)
            .filter(InvoiceSequence.period_key == period_key)
            .scalar()
        )
        return format_invoice_number(
            period_key, int(value),
            padding=self.settings.invoice_padding,
            prefix=self.settings.invoice_prefix,
        )

    def _bump_sequence(self, period_key: str) -> int:
        result = self.db.execute(
            update(InvoiceSequence)
            .where(InvoiceSequence.period_key == period_key)
            .values(last_value=InvoiceSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def generate_invoice(
        self,
        line_items: Iterable[Union[LineItem, dict]],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        amount,
        tax_amount,
        total_amount,
        subscription_id: Optional[str] = None,
        kind: str = InvoiceKind.ONE_OFF,
        partner_id: Optional[str] = None,
        currency: Optional[str] = None,
        due_date: Optional[datetime] = None,
    ) -> Invoice:
        """
        Issue a numbered invoice.

        total_amount is computed by the caller; amount + tax_amount must
        equal it.

        Raises:
            InvoiceValidationError: inconsistent totals or line items
            InvoiceNumberConflictError: no number could be allocated
        """
        items = self._parse_line_items(line_items)
        self.validate_invoice_totals(amount, tax_amount, total_amount)
        if period_start and period_end and ensure_utc(period_end) < ensure_utc(period_start):
            raise InvoiceValidationError("period_end must not precede period_start")

        now = self._now()
        attempts = self.settings.invoice_max_attempts

        for attempt in range(1, attempts + 1):
            number = self._next_invoice_number(now)
            if self.invoices.number_exists(number):
                logger.warning("billing.invoice_number_taken", extra={
                    "invoice_number": number, "attempt": attempt,
                })
                continue

            invoice = Invoice(
                tenant_id=self.tenant_id,
                invoice_number=number,
                subscription_id=subscription_id,
                partner_id=partner_id,
                amount=Decimal(str(amount)),
                tax_amount=Decimal(str(tax_amount)),
                total_amount=Decimal(str(total_amount)),
                currency=currency or self.settings.currency,
                status=InvoiceStatus.PENDING.value,
                billing_period_start=period_start,
                billing_period_end=period_end,
                due_date=due_date or now + timedelta(days=self.settings.invoice_due_days),
                line_items=[item.to_json() for item in items],
                extra_metadata={"kind": kind},
            )
            try:
                with self.db.begin_nested():
                    self.db.add(invoice)
            except IntegrityError:
                logger.warning("billing.invoice_number_conflict", extra={
                    "invoice_number": number, "attempt": attempt,
                })
                continue

            self.audit.log_event(
                tenant_id=self.tenant_id,
                event_type=BillingEventType.INVOICE_ISSUED,
                subscription_id=subscription_id,
                invoice_id=invoice.id,
                amount=invoice.total_amount,
                currency=invoice.currency,
                metadata={"invoice_number": number, "kind": kind},
                occurred_at=now,
            )
            self._commit("generate_invoice")
            logger.info("billing.invoice_issued", extra={
                "tenant_id": self.tenant_id,
                "invoice_id": invoice.id,
                "invoice_number": number,
                "total_amount": str(invoice.total_amount),
            })
            return invoice

        self.db.rollback()
        logger.error("billing.invoice_number_exhausted", extra={
            "tenant_id": self.tenant_id, "attempts": attempts,
        })
        raise InvoiceNumberConflictError(
            f"Could not allocate an invoice number after {attempts} attempts"
        )

    def generate_subscription_invoice(self, subscription_id: Optional[str] = None) -> Invoice:
        """
        Invoice the next billing period of a subscription at its plan price.

        Uses the pending downgrade's plan when one is scheduled.
        """
        repo = SubscriptionRepository(self.db)
        subscription = (
            repo.get_by_id(subscription_id, self.tenant_id)
            if subscription_id
            else repo.get_current_for_tenant(self.tenant_id)
        )
        if subscription is None:
            raise SubscriptionNotFoundError(f"Tenant {self.tenant_id} has no subscription")

        plan_id = subscription.scheduled_plan_id or subscription.plan_id
        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        price = plan.price_for_cycle(subscription.billing_cycle)
        tax = (price * self.settings.tax_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)

        start = ensure_utc(subscription.current_period_end)
        end = SubscriptionService.calculate_period_end(start, subscription.billing_cycle)
        return self.generate_invoice(
            line_items=[LineItem(
                description=f"{plan.name} plan ({subscription.billing_cycle})",
                amount=price,
                quantity=1,
            )],
            period_start=start,
            period_end=end,
            amount=price,
            tax_amount=tax,
            total_amount=price + tax,
            subscription_id=subscription.id,
            kind=InvoiceKind.SUBSCRIPTION,
            partner_id=subscription.partner_id,
            currency=plan.currency,
        )

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get_by_id(invoice_id, self.tenant_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    def cancel_invoice(self, invoice_id: str, reason: Optional[str] = None) -> Invoice:
        """Void an unpaid invoice."""
        invoice = self.get_invoice(invoice_id)
        if invoice.status not in (InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value):
            raise InvoiceStateError(f"Cannot cancel a {invoice.status} invoice")
        invoice.status = InvoiceStatus.CANCELLED.value
        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.INVOICE_CANCELLED,
            invoice_id=invoice.id,
            description=reason,
            occurred_at=self._now(),
        )
        self._commit("cancel_invoice")
        return invoice

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def start_payment(
        self,
        invoice_id: str,
        gateway_order_id: str,
        payment_method: Optional[str] = None,
    ) -> Payment:
        """Record a pending payment once the gateway order exists."""
        invoice = self.get_invoice(invoice_id)
        if invoice.status not in (InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value):
            raise InvoiceStateError(f"Cannot pay a {invoice.status} invoice")
        payment = Payment(
            tenant_id=self.tenant_id,
            invoice_id=invoice.id,
            amount=invoice.total_amount,
            currency=invoice.currency,
            status=PaymentStatus.PENDING.value,
            payment_method=payment_method,
            gateway_order_id=gateway_order_id,
        )
        self.db.add(payment)
        self._commit("start_payment")
        return payment

    def record_payment(self, invoice_id: str, result: GatewayPaymentResult) -> Payment:
        """
        Apply a gateway payment result to an invoice.

        Idempotent on gateway_payment_id: a result already recorded returns
        the existing payment unchanged.
        """
        invoice = self.get_invoice(invoice_id)

        if result.gateway_payment_id:
            existing = self.payments.get_by_gateway_payment_id(result.gateway_payment_id)
            if existing is not None and existing.tenant_id == self.tenant_id:
                if existing.status != PaymentStatus.PENDING.value:
                    logger.info("billing.payment_already_recorded", extra={
                        "payment_id": existing.id,
                        "gateway_payment_id": result.gateway_payment_id,
                    })
                    return existing

        if invoice.status not in (InvoiceStatus.PENDING.value, InvoiceStatus.FAILED.value):
            raise InvoiceStateError(f"Cannot record a payment on a {invoice.status} invoice")

        succeeded = bool(result.verified and result.success)
        if not result.verified:
            failure_reason = SIGNATURE_FAILURE_REASON
        elif not result.success:
            failure_reason = result.failure_reason or "Payment failed"
        else:
            failure_reason = None

        payment = self._pending_payment_for(invoice, result.gateway_order_id)
        if payment is None:
            payment = Payment(tenant_id=self.tenant_id, invoice_id=invoice.id)
            self.db.add(payment)

        now = self._now()
        payment.amount = result.amount if result.amount is not None else invoice.total_amount
        payment.currency = result.currency or invoice.currency
        payment.payment_method = result.payment_method or payment.payment_method
        payment.gateway_order_id = result.gateway_order_id or payment.gateway_order_id
        payment.gateway_payment_id = result.gateway_payment_id
        payment.gateway_signature = result.gateway_signature
        payment.status = PaymentStatus.COMPLETED.value if succeeded else PaymentStatus.FAILED.value
        payment.failure_reason = failure_reason

        if succeeded:
            invoice.status = InvoiceStatus.PAID.value
            invoice.paid_at = now
            invoice.payment_method = payment.payment_method
            invoice.failure_reason = None
        else:
            invoice.status = InvoiceStatus.FAILED.value
            invoice.failure_reason = failure_reason
        self.db.flush()

        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.PAYMENT_SUCCEEDED if succeeded else BillingEventType.PAYMENT_FAILED,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
            payment_id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            actor_type=ActorType.GATEWAY,
            description=failure_reason,
            metadata={"verified": result.verified},
            occurred_at=now,
        )
        if not result.verified:
            logger.warning("billing.payment_signature_invalid", extra={
                "tenant_id": self.tenant_id,
                "invoice_id": invoice.id,
                "gateway_payment_id": result.gateway_payment_id,
            })

        self._apply_to_subscription(invoice, succeeded, payment.payment_method, failure_reason)
        self._commit("record_payment")
        return payment

    def _pending_payment_for(self, invoice: Invoice, gateway_order_id: Optional[str]) -> Optional[Payment]:
        for payment in self.payments.list_for_invoice(invoice.id, self.tenant_id):
            if payment.status != PaymentStatus.PENDING.value:
                continue
            if gateway_order_id is None or payment.gateway_order_id == gateway_order_id:
                return payment
        return None

    def _apply_to_subscription(
        self,
        invoice: Invoice,
        succeeded: bool,
        payment_method: Optional[str],
        failure_reason: Optional[str],
    ) -> None:
        kind = (invoice.extra_metadata or {}).get("kind")
        if not invoice.subscription_id or kind != InvoiceKind.SUBSCRIPTION:
            return

        subscriptions = SubscriptionService(self.db, self.tenant_id, clock=self._clock)
        current = subscriptions.repo.get_current_for_tenant(self.tenant_id)
        if current is None or current.id != invoice.subscription_id:
            logger.warning("billing.invoice_for_stale_subscription", extra={
                "tenant_id": self.tenant_id,
                "invoice_id": invoice.id,
                "subscription_id": invoice.subscription_id,
            })
            return

        try:
            if succeeded:
                subscriptions.renew(
                    payment_method=payment_method,
                    period_start=invoice.billing_period_start,
                )
            else:
                subscriptions.mark_past_due(
                    reason=failure_reason,
                    period_start=invoice.billing_period_start,
                )
        except (InvalidTransitionError, SubscriptionNotFoundError) as e:
            logger.warning("billing.subscription_not_updated", extra={
                "tenant_id": self.tenant_id,
                "invoice_id": invoice.id,
                "error": str(e),
            })

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund_payment(
        self,
        payment_id: str,
        amount=None,
        gateway_refund_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Refund all or part of a completed payment.

        Idempotent on gateway_refund_id. A full refund marks the payment
        and its invoice refunded.

        Raises:
            PaymentNotFoundError, RefundError
        """
        payment = self.payments.get_by_id(payment_id, self.tenant_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")

        if gateway_refund_id and payment.gateway_refund_id == gateway_refund_id:
            logger.info("billing.refund_already_recorded", extra={
                "payment_id": payment.id, "gateway_refund_id": gateway_refund_id,
            })
            return payment

        if payment.status != PaymentStatus.COMPLETED.value:
            raise RefundError(f"Cannot refund a {payment.status} payment")

        refundable = payment.refundable_amount
        refund = refundable if amount is None else Decimal(str(amount)).quantize(_CENTS)
        if refund <= 0:
            raise RefundError("Refund amount must be positive")
        if refund > refundable:
            raise RefundError(f"Refund {refund} exceeds refundable amount {refundable}")

        now = self._now()
        payment.refund_amount = Decimal(payment.refund_amount or 0) + refund
        payment.refunded_at = now
        if gateway_refund_id:
            payment.gateway_refund_id = gateway_refund_id

        if payment.refundable_amount <= 0:
            payment.status = PaymentStatus.REFUNDED.value
            invoice = self.invoices.get_by_id(payment.invoice_id, self.tenant_id)
            if invoice is not None:
                invoice.status = InvoiceStatus.REFUNDED.value

        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.PAYMENT_REFUNDED,
            invoice_id=payment.invoice_id,
            payment_id=payment.id,
            amount=refund,
            currency=payment.currency,
            description=reason,
            metadata={"gateway_refund_id": gateway_refund_id, "full": payment.status == PaymentStatus.REFUNDED.value},
            occurred_at=now,
        )
        self._commit("refund_payment")
        return payment
