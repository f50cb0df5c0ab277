"""
Repositories for subscriptions, invoices, payments and the billing audit log.

Every tenant-scoped read takes tenant_id and filters on it.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from realnext.models.billing_event import BillingEvent, ActorType
from realnext.models.invoice import Invoice
from realnext.models.payment import Payment
from realnext.models.subscription import Subscription, TERMINAL_STATUSES
from realnext.models.tenant import Tenant

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Repository for subscription reads and writes."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, subscription_id: str, tenant_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id, Subscription.tenant_id == tenant_id)
            .first()
        )

    def get_current_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        """
        Authoritative subscription for a tenant.

        Follows Tenant.current_subscription_id. Tenants that predate the
        pointer fall back to the most recent non-terminal subscription.
        """
        tenant = (
            self.db.query(Tenant)
            .filter(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
            .first()
        )
        if tenant is None:
            return None
        if tenant.current_subscription_id:
            return self.get_by_id(tenant.current_subscription_id, tenant_id)
        return self.get_latest_open_for_tenant(tenant_id)

    def get_latest_open_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.tenant_id == tenant_id,
                Subscription.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(Subscription.created_at.desc(), Subscription.current_period_start.desc())
            .first()
        )

    def set_current(self, tenant_id: str, subscription: Subscription) -> None:
        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tenant is None:
            raise ValueError(f"Tenant {tenant_id} not found")
        tenant.current_subscription_id = subscription.id


class InvoiceRepository:
    """Repository for invoices, always tenant-scoped."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, invoice_id: str, tenant_id: str) -> Optional[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
            .first()
        )

    def number_exists(self, invoice_number: str) -> bool:
        """Global uniqueness check; numbers are unique across tenants."""
        return (
            self.db.query(Invoice.id)
            .filter(Invoice.invoice_number == invoice_number)
            .first()
        ) is not None

    def highest_suffix_with_prefix(self, prefix: str) -> int:
        """Largest numeric suffix issued under a month prefix (sequence seeding)."""
        highest = 0
        for (number,) in self.db.query(Invoice.invoice_number).filter(
            Invoice.invoice_number.like(f"{prefix}%")
        ):
            suffix = number[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest


class PaymentRepository:
    """Repository for payments."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, payment_id: str, tenant_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.tenant_id == tenant_id)
            .first()
        )

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        """Cross-tenant lookup for gateway callbacks; the row carries its tenant."""
        return (
            self.db.query(Payment)
            .filter(Payment.gateway_payment_id == gateway_payment_id)
            .first()
        )

    def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.gateway_order_id == gateway_order_id)
            .order_by(Payment.created_at.desc())
            .first()
        )

    def list_for_invoice(self, invoice_id: str, tenant_id: str) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.invoice_id == invoice_id, Payment.tenant_id == tenant_id)
            .order_by(Payment.created_at)
            .all()
        )


class BillingAuditRepository:
    """
    Repository for billing audit log operations.

    Append-only - no update or delete operations.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def log_event(
        self,
        tenant_id: str,
        event_type: str,
        subscription_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        from_plan_id: Optional[str] = None,
        to_plan_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        occurred_at: Optional[datetime] = None,
    ) -> BillingEvent:
        """
        Append a billing event to the audit log.

        Returns:
            Created BillingEvent (flushed, not committed)
        """
        event = BillingEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            payment_id=payment_id,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            from_status=from_status,
            to_status=to_status,
            amount=amount,
            currency=currency,
            actor_type=actor_type,
            actor_id=actor_id,
            description=description,
            extra_metadata=metadata,
        )
        if occurred_at is not None:
            event.occurred_at = occurred_at
        self.db.add(event)
        self.db.flush()

        logger.info("Billing event logged", extra={
            "event_id": event.id,
            "tenant_id": tenant_id,
            "event_type": event_type,
        })
        return event

