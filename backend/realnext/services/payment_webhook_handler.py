"""
Payment gateway webhook handler.

Turns gateway callbacks into BillingService calls:
- payment.captured / order.paid -> successful payment
- payment.failed                -> failed payment
- refund.processed              -> refund

Callbacks are retried by the gateway, so every event is idempotent:
a payment or refund id already applied is skipped. Signature checking
happens before this handler; its outcome arrives as `verified`.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from realnext.api.schemas.billing import GatewayPaymentEntity, GatewayWebhookEvent
from realnext.models.invoice import Invoice
from realnext.models.payment import PaymentStatus
from realnext.repositories.billing_repository import PaymentRepository
from realnext.services.billing_service import (
    BillingServiceError,
    BillingService,
    GatewayPaymentResult,
)

logger = logging.getLogger(__name__)


class GatewayEvent:
    PAYMENT_CAPTURED = "payment.captured"
    ORDER_PAID = "order.paid"
    PAYMENT_FAILED = "payment.failed"
    REFUND_PROCESSED = "refund.processed"


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


class PaymentWebhookHandler:
    """
    Handler for payment gateway webhooks.

    Webhooks are not tenant-authenticated; the tenant is derived from the
    pending payment for the gateway order, or from the order notes.
    """

    def __init__(self, db_session: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_session
        self._clock = clock
        self.payments = PaymentRepository(db_session)

    def handle_event(self, raw_payload: Dict[str, Any], verified: bool = True) -> WebhookProcessingResult:
        """
        Process one webhook delivery.

        Args:
            raw_payload: Decoded JSON body
            verified: Result of the signature check on the body

        Returns:
            WebhookProcessingResult
        """
        try:
            event = GatewayWebhookEvent.from_payload(raw_payload)
        except PydanticValidationError as e:
            logger.warning("webhook.invalid_payload", extra={"error": str(e)})
            return WebhookProcessingResult(
                processed=False, message="Invalid payload",
                skipped_reason="invalid_payload", error=str(e),
            )

        logger.info("webhook.received", extra={"event": event.event, "verified": verified})

        try:
            if event.event in (GatewayEvent.PAYMENT_CAPTURED, GatewayEvent.ORDER_PAID):
                return self._handle_payment(event, success=True, verified=verified)
            if event.event == GatewayEvent.PAYMENT_FAILED:
                return self._handle_payment(event, success=False, verified=verified)
            if event.event == GatewayEvent.REFUND_PROCESSED:
                return self._handle_refund(event, verified=verified)
        except BillingServiceError as e:
            logger.error("webhook.processing_failed", extra={
                "event": event.event, "error": str(e),
            })
            return WebhookProcessingResult(
                processed=False, message="Processing failed", error=str(e),
            )

        return WebhookProcessingResult(
            processed=False,
            message=f"Event {event.event} not handled",
            skipped_reason="unhandled_event",
        )

    def _locate_invoice(self, entity: GatewayPaymentEntity) -> Optional[Tuple[str, str]]:
        """Return (tenant_id, invoice_id) for a gateway payment."""
        if entity.order_id:
            pending = self.payments.get_by_gateway_order_id(entity.order_id)
            if pending is not None:
                return pending.tenant_id, pending.invoice_id

        invoice_id = entity.notes.get("invoice_id")
        tenant_id = entity.notes.get("tenant_id")
        if invoice_id and tenant_id:
            invoice = (
                self.db.query(Invoice)
                .filter(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
                .first()
            )
            if invoice is not None:
                return invoice.tenant_id, invoice.id
        return None

    def _handle_payment(self, event: GatewayWebhookEvent, success: bool,
                        verified: bool) -> WebhookProcessingResult:
        entity = event.payment
        if entity is None:
            return WebhookProcessingResult(
                processed=False, message="No payment entity", skipped_reason="missing_entity",
            )

        existing = self.payments.get_by_gateway_payment_id(entity.id)
        if existing is not None and existing.status != PaymentStatus.PENDING.value:
            logger.info("webhook.duplicate_payment", extra={"gateway_payment_id": entity.id})
            return WebhookProcessingResult(
                processed=False,
                message="Payment already recorded",
                invoice_id=existing.invoice_id,
                payment_id=existing.id,
                skipped_reason="duplicate",
            )

        located = self._locate_invoice(entity)
        if located is None:
            logger.warning("webhook.invoice_not_found", extra={
                "gateway_payment_id": entity.id, "order_id": entity.order_id,
            })
            return WebhookProcessingResult(
                processed=False, message="Invoice not found", skipped_reason="invoice_not_found",
            )
        tenant_id, invoice_id = located

        result = GatewayPaymentResult(
            verified=verified,
            success=success,
            amount=entity.amount_decimal,
            currency=entity.currency,
            payment_method=entity.method,
            gateway_order_id=entity.order_id,
            gateway_payment_id=entity.id,
            failure_reason=entity.error_description or entity.error_code,
        )
        payment = BillingService(self.db, tenant_id, clock=self._clock).record_payment(invoice_id, result)
        return WebhookProcessingResult(
            processed=True,
            message=f"Payment {payment.status}",
            invoice_id=invoice_id,
            payment_id=payment.id,
        )

    def _handle_refund(self, event: GatewayWebhookEvent, verified: bool) -> WebhookProcessingResult:
        refund = event.refund
        if refund is None:
            return WebhookProcessingResult(
                processed=False, message="No refund entity", skipped_reason="missing_entity",
            )
        if not verified:
            logger.warning("webhook.unverified_refund", extra={"gateway_refund_id": refund.id})
            return WebhookProcessingResult(
                processed=False, message="Signature verification failed",
                skipped_reason="unverified",
            )

        payment = self.payments.get_by_gateway_payment_id(refund.payment_id)
        if payment is None:
            return WebhookProcessingResult(
                processed=False, message="Payment not found", skipped_reason="payment_not_found",
            )
        if payment.gateway_refund_id == refund.id:
            return WebhookProcessingResult(
                processed=False,
                message="Refund already recorded",
                invoice_id=payment.invoice_id,
                payment_id=payment.id,
                skipped_reason="duplicate",
            )

        BillingService(self.db, payment.tenant_id, clock=self._clock).refund_payment(
            payment.id,
            amount=refund.amount_decimal,
            gateway_refund_id=refund.id,
            reason="Gateway refund",
        )
        return WebhookProcessingResult(
            processed=True,
            message="Refund recorded",
            invoice_id=payment.invoice_id,
            payment_id=payment.id,
        )
