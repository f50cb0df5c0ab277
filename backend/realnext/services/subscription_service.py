"""
Subscription lifecycle service.

Owns every status write on a tenant's subscription:

    trial -> active -> past_due -> suspended
    trial | active -> cancelled
    any non-expired status -> expired (lazily, once the period has ended)

plus the recovery edges past_due -> active (payment recovered),
suspended -> active (operator reinstatement) and active -> active
(renewal). cancelled and expired accept no other transition; a lapsed
tenant reactivates by starting a new subscription.

Every transition appends a BillingEvent.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from realnext.config.billing_settings import get_billing_settings
from realnext.entitlements.policy import effective_status, is_entitled
from realnext.models.base import ensure_utc, utcnow
from realnext.models.billing_event import ActorType, BillingEventType
from realnext.models.plan import Plan
from realnext.models.subscription import BillingCycle, Subscription, SubscriptionStatus, TERMINAL_STATUSES
from realnext.models.tenant import Tenant, TenantStatus
from realnext.repositories.billing_repository import BillingAuditRepository, SubscriptionRepository

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors."""
    pass


class PlanNotFoundError(SubscriptionServiceError):
    """Plan does not exist or is not active."""
    pass


class SubscriptionNotFoundError(SubscriptionServiceError):
    """Tenant has no current subscription."""
    pass


class SubscriptionConflictError(SubscriptionServiceError):
    """Tenant already has a live subscription."""
    pass


class InvalidTransitionError(SubscriptionServiceError):
    """Requested status change is not in the transition table."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition subscription from {from_status} to {to_status}")


@dataclass
class ProrationResult:
    """Charge for switching plans mid-period."""
    amount: Decimal
    days_remaining: int
    credit: Decimal
    charge: Decimal


@dataclass
class PlanChangeResult:
    """Outcome of change_plan."""
    subscription: Subscription
    applied_immediately: bool
    is_upgrade: bool
    proration: Optional[ProrationResult] = None
    invoice_id: Optional[str] = None


S = SubscriptionStatus


class SubscriptionService:
    """
    Tenant-scoped subscription lifecycle operations.

    Args:
        db_session: Database session
        tenant_id: Tenant whose subscription is managed
        clock: Optional callable returning "now" (tests)
    """

    VALID_TRANSITIONS: Dict[str, List[str]] = {
        S.TRIAL.value: [S.ACTIVE.value, S.SUSPENDED.value, S.CANCELLED.value, S.EXPIRED.value],
        S.ACTIVE.value: [
            S.ACTIVE.value,  # Renewal
            S.PAST_DUE.value,
            S.SUSPENDED.value,
            S.CANCELLED.value,
            S.EXPIRED.value,
        ],
        S.PAST_DUE.value: [
            S.ACTIVE.value,  # Payment recovered
            S.SUSPENDED.value,
            S.EXPIRED.value,
        ],
        S.SUSPENDED.value: [
            S.ACTIVE.value,  # Operator reinstatement
            S.EXPIRED.value,
        ],
        S.CANCELLED.value: [S.EXPIRED.value],
        S.EXPIRED.value: [],
    }

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
        self.repo = SubscriptionRepository(db_session)
        self.audit = BillingAuditRepository(db_session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("subscription.commit_failed", extra={
                "tenant_id": self.tenant_id, "operation": operation,
            })
            raise

    def _get_plan(self, plan_id: str) -> Plan:
        plan = self.db.query(Plan).filter(Plan.id == plan_id, Plan.is_active.is_(True)).first()
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found or inactive")
        return plan

    def _get_default_plan(self) -> Plan:
        code = self.settings.default_plan_code
        plan = self.db.query(Plan).filter(Plan.code == code, Plan.is_active.is_(True)).first()
        if plan is None:
            raise PlanNotFoundError(f"Default plan '{code}' not found or inactive")
        return plan

    def _require_current(self, refresh: bool = True) -> Subscription:
        subscription = self.get_current_subscription(refresh=refresh)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Tenant {self.tenant_id} has no subscription")
        return subscription

    def _require_current_for_period(self, period_start: Optional[datetime], new_status: str) -> Subscription:
        """
        Subscription a gateway payment applies to.

        A payment for the period starting at current_period_end settles that
        renewal even when it arrives after the period has ended. Any other
        payment is judged against the lazily expired status, which is not
        written back here.
        """
        subscription = self._require_current(refresh=False)
        period_end = subscription.current_period_end
        if period_start is not None and period_end is not None:
            if ensure_utc(period_start) == ensure_utc(period_end):
                return subscription
        if effective_status(subscription, self._now()) == S.EXPIRED.value:
            raise InvalidTransitionError(S.EXPIRED.value, new_status)
        return subscription

    def _is_valid_transition(self, current_status: str, new_status: str) -> bool:
        return new_status in self.VALID_TRANSITIONS.get(current_status, [])

    def _transition(
        self,
        subscription: Subscription,
        new_status: str,
        event_type: str,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        current = subscription.status
        if not self._is_valid_transition(current, new_status):
            logger.warning("subscription.invalid_transition", extra={
                "tenant_id": self.tenant_id,
                "subscription_id": subscription.id,
                "from_status": current,
                "to_status": new_status,
            })
            raise InvalidTransitionError(current, new_status)

        subscription.status = new_status
        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=event_type,
            subscription_id=subscription.id,
            from_status=current,
            to_status=new_status,
            actor_type=actor_type,
            actor_id=actor_id,
            description=description,
            metadata=metadata,
            occurred_at=self._now(),
        )
        logger.info("subscription.transition", extra={
            "tenant_id": self.tenant_id,
            "subscription_id": subscription.id,
            "from_status": current,
            "to_status": new_status,
        })

    @staticmethod
    def calculate_period_end(start: datetime, billing_cycle: str) -> datetime:
        """End of a billing period; month ends clamp (Jan 31 -> Feb 28/29)."""
        if billing_cycle == BillingCycle.YEARLY.value:
            return start + relativedelta(years=1)
        return start + relativedelta(months=1)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_subscription(self, refresh: bool = True) -> Optional[Subscription]:
        """
        Tenant's authoritative subscription.

        With refresh=True a subscription whose period has ended is written
        back as expired before being returned.
        """
        subscription = self.repo.get_current_for_tenant(self.tenant_id)
        if subscription is not None and refresh:
            self.refresh_status(subscription)
        return subscription

    def refresh_status(self, subscription: Subscription) -> Subscription:
        """Persist lazy expiry. No-op unless the period has ended."""
        now = self._now()
        if subscription.status == S.EXPIRED.value:
            return subscription
        if effective_status(subscription, now) != S.EXPIRED.value:
            return subscription

        self._transition(
            subscription,
            S.EXPIRED.value,
            BillingEventType.SUBSCRIPTION_EXPIRED,
            description="Billing period ended",
            metadata={"cancel_at_period_end": bool(subscription.cancel_at_period_end)},
        )
        self._commit("refresh_status")
        return subscription

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_subscription(
        self,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        partner_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        with_trial: bool = True,
    ) -> Subscription:
        """
        Start a subscription for the tenant.

        Starts in trial when the plan has trial days (and with_trial),
        otherwise active. The tenant's current pointer moves to it.

        Raises:
            SubscriptionConflictError: tenant already has a live subscription
            PlanNotFoundError: plan missing or inactive
        """
        existing = self.get_current_subscription()
        if existing is not None and existing.status not in TERMINAL_STATUSES:
            raise SubscriptionConflictError(
                f"Tenant {self.tenant_id} already has a {existing.status} subscription"
            )

        plan = self._get_plan(plan_id) if plan_id else self._get_default_plan()
        cycle = BillingCycle(billing_cycle or self.settings.default_billing_cycle).value
        now = self._now()

        trial_days = int(plan.trial_days or 0) if with_trial else 0
        if trial_days > 0:
            trial_ends_at = now + timedelta(days=trial_days)
            status = S.TRIAL.value
            period_end = trial_ends_at
        else:
            trial_ends_at = None
            status = S.ACTIVE.value
            period_end = self.calculate_period_end(now, cycle)

        subscription = Subscription(
            tenant_id=self.tenant_id,
            plan_id=plan.id,
            partner_id=partner_id,
            status=status,
            billing_cycle=cycle,
            current_period_start=now,
            current_period_end=period_end,
            trial_ends_at=trial_ends_at,
            payment_method=payment_method,
        )
        self.db.add(subscription)
        self.db.flush()
        self.repo.set_current(self.tenant_id, subscription)

        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.SUBSCRIPTION_CREATED,
            subscription_id=subscription.id,
            to_plan_id=plan.id,
            to_status=status,
            occurred_at=now,
        )
        if status == S.TRIAL.value:
            self.audit.log_event(
                tenant_id=self.tenant_id,
                event_type=BillingEventType.TRIAL_STARTED,
                subscription_id=subscription.id,
                metadata={"trial_days": trial_days},
                occurred_at=now,
            )
        self._commit("create_subscription")

        logger.info("subscription.created", extra={
            "tenant_id": self.tenant_id,
            "subscription_id": subscription.id,
            "plan_code": plan.code,
            "status": status,
        })
        return subscription

    def reactivate(
        self,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Subscription:
        """
        Start a new paid subscription after the previous one lapsed.

        Terminal subscriptions never change status; a new row becomes current.
        """
        previous = self.get_current_subscription()
        if previous is not None and previous.status not in TERMINAL_STATUSES:
            raise SubscriptionConflictError(
                f"Subscription {previous.id} is {previous.status}; nothing to reactivate"
            )

        subscription = self.create_subscription(
            plan_id=plan_id or (previous.plan_id if previous else None),
            billing_cycle=billing_cycle or (previous.billing_cycle if previous else None),
            partner_id=previous.partner_id if previous else None,
            payment_method=payment_method,
            with_trial=False,
        )
        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.SUBSCRIPTION_REACTIVATED,
            subscription_id=subscription.id,
            metadata={"previous_subscription_id": previous.id if previous else None},
            occurred_at=self._now(),
        )
        self._commit("reactivate")
        return subscription

    # ------------------------------------------------------------------
    # Payment-driven transitions
    # ------------------------------------------------------------------

    def activate(self, payment_method: Optional[str] = None, actor_id: Optional[str] = None) -> Subscription:
        """Convert a trial to a paid active subscription starting now."""
        return self._activate(self._require_current(), payment_method, actor_id)

    def _activate(
        self,
        subscription: Subscription,
        payment_method: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        if subscription.status != S.TRIAL.value:
            raise InvalidTransitionError(subscription.status, S.ACTIVE.value)

        now = self._now()
        self._transition(
            subscription,
            S.ACTIVE.value,
            BillingEventType.TRIAL_CONVERTED,
            actor_type=ActorType.USER if actor_id else ActorType.SYSTEM,
            actor_id=actor_id,
        )
        subscription.current_period_start = now
        subscription.current_period_end = self.calculate_period_end(now, subscription.billing_cycle)
        if payment_method:
            subscription.payment_method = payment_method
        self._commit("activate")
        return subscription

    def renew(
        self,
        payment_method: Optional[str] = None,
        period_start: Optional[datetime] = None,
    ) -> Subscription:
        """
        Apply a successful recurring payment.

        trial converts to active from now; active and past_due roll into
        the next period starting at the old period end. A scheduled
        downgrade takes effect here.

        period_start is the billed period's start. When it equals
        current_period_end the renewal applies even after that instant.
        """
        subscription = self._require_current_for_period(period_start, S.ACTIVE.value)
        if subscription.status == S.TRIAL.value:
            return self._activate(subscription, payment_method=payment_method)
        if subscription.cancel_at_period_end:
            raise InvalidTransitionError(subscription.status, S.ACTIVE.value)

        from_status = subscription.status
        event_type = (
            BillingEventType.SUBSCRIPTION_ACTIVATED
            if from_status == S.PAST_DUE.value
            else BillingEventType.SUBSCRIPTION_RENEWED
        )
        self._transition(subscription, S.ACTIVE.value, event_type, actor_type=ActorType.GATEWAY)

        start = ensure_utc(subscription.current_period_end)
        subscription.current_period_start = start
        subscription.current_period_end = self.calculate_period_end(start, subscription.billing_cycle)
        if payment_method:
            subscription.payment_method = payment_method

        if subscription.scheduled_plan_id:
            old_plan_id = subscription.plan_id
            subscription.plan_id = subscription.scheduled_plan_id
            subscription.scheduled_plan_id = None
            self.audit.log_event(
                tenant_id=self.tenant_id,
                event_type=BillingEventType.SUBSCRIPTION_DOWNGRADED,
                subscription_id=subscription.id,
                from_plan_id=old_plan_id,
                to_plan_id=subscription.plan_id,
                occurred_at=self._now(),
            )
        self._commit("renew")
        return subscription

    def mark_past_due(
        self,
        reason: Optional[str] = None,
        period_start: Optional[datetime] = None,
    ) -> Subscription:
        """Record a failed renewal payment (period_start as for renew)."""
        subscription = self._require_current_for_period(period_start, S.PAST_DUE.value)
        self._transition(
            subscription,
            S.PAST_DUE.value,
            BillingEventType.SUBSCRIPTION_PAST_DUE,
            actor_type=ActorType.GATEWAY,
            description=reason,
        )
        self._commit("mark_past_due")
        return subscription

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def suspend(self, reason: Optional[str] = None, actor_id: Optional[str] = None) -> Subscription:
        """Block tenant access (administrative). The tenant is suspended too."""
        subscription = self._require_current()
        self._transition(
            subscription,
            S.SUSPENDED.value,
            BillingEventType.SUBSCRIPTION_SUSPENDED,
            actor_type=ActorType.OPERATOR,
            actor_id=actor_id,
            description=reason,
        )
        tenant = self.db.query(Tenant).filter(Tenant.id == self.tenant_id).first()
        if tenant is not None:
            tenant.status = TenantStatus.SUSPENDED.value
        self._commit("suspend")
        return subscription

    def reinstate(self, actor_id: Optional[str] = None) -> Subscription:
        """Lift an operator suspension."""
        subscription = self._require_current()
        self._transition(
            subscription,
            S.ACTIVE.value,
            BillingEventType.SUBSCRIPTION_REINSTATED,
            actor_type=ActorType.OPERATOR,
            actor_id=actor_id,
        )
        tenant = self.db.query(Tenant).filter(Tenant.id == self.tenant_id).first()
        if tenant is not None and tenant.status == TenantStatus.SUSPENDED.value:
            tenant.status = TenantStatus.ACTIVE.value
        self._commit("reinstate")
        return subscription

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(
        self,
        reason: Optional[str] = None,
        at_period_end: bool = False,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel the subscription.

        at_period_end=True keeps the current status and lets the period
        lapse into expired; otherwise the status becomes cancelled now.
        """
        subscription = self._require_current()
        actor_type = ActorType.USER if actor_id else ActorType.SYSTEM

        if at_period_end:
            if subscription.status not in (S.TRIAL.value, S.ACTIVE.value):
                raise InvalidTransitionError(subscription.status, S.CANCELLED.value)
            subscription.cancel_at_period_end = True
            subscription.cancel_reason = reason
            self.audit.log_event(
                tenant_id=self.tenant_id,
                event_type=BillingEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
                subscription_id=subscription.id,
                actor_type=actor_type,
                actor_id=actor_id,
                description=reason,
                occurred_at=self._now(),
            )
            self._commit("cancel_at_period_end")
            return subscription

        self._transition(
            subscription,
            S.CANCELLED.value,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            actor_type=actor_type,
            actor_id=actor_id,
            description=reason,
        )
        subscription.cancelled_at = self._now()
        subscription.cancel_reason = reason
        self._commit("cancel")
        return subscription

    def resume(self) -> Subscription:
        """Withdraw a pending cancel-at-period-end request."""
        subscription = self._require_current()
        if not subscription.cancel_at_period_end:
            return subscription
        subscription.cancel_at_period_end = False
        subscription.cancel_reason = None
        self._commit("resume")
        return subscription

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def calculate_proration(self, subscription: Subscription, new_plan: Plan) -> ProrationResult:
        """
        Prorated charge for the rest of the current period.

        daily rate = monthly price / days_per_month; remaining days round up.
        """
        now = self._now()
        seconds_left = (ensure_utc(subscription.current_period_end) - now).total_seconds()
        days_remaining = max(0, math.ceil(seconds_left / 86400))

        days_per_month = Decimal(self.settings.proration_days_per_month)
        old_plan = self._get_plan_any(subscription.plan_id)
        old_daily = Decimal(old_plan.price_monthly or 0) / days_per_month
        new_daily = Decimal(new_plan.price_monthly or 0) / days_per_month

        credit = (old_daily * days_remaining).quantize(_CENTS, rounding=ROUND_HALF_UP)
        charge = (new_daily * days_remaining).quantize(_CENTS, rounding=ROUND_HALF_UP)
        return ProrationResult(
            amount=(charge - credit).quantize(_CENTS, rounding=ROUND_HALF_UP),
            days_remaining=days_remaining,
            credit=credit,
            charge=charge,
        )

    def _get_plan_any(self, plan_id: str) -> Plan:
        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    def change_plan(self, new_plan_id: str, actor_id: Optional[str] = None) -> PlanChangeResult:
        """
        Move to another plan.

        Upgrades apply immediately; paid subscriptions are billed a
        proration invoice. Downgrades (and same-price moves) wait for the
        next renewal. Trials switch immediately without charge.
        """
        subscription = self._require_current()
        if not is_entitled(subscription, self._now()):
            raise SubscriptionServiceError(
                f"Plan changes require a trial or active subscription, got {subscription.status}"
            )

        new_plan = self._get_plan(new_plan_id)
        if new_plan.id == subscription.plan_id:
            return PlanChangeResult(subscription=subscription, applied_immediately=False, is_upgrade=False)

        old_plan = self._get_plan_any(subscription.plan_id)
        is_upgrade = Decimal(new_plan.price_monthly or 0) > Decimal(old_plan.price_monthly or 0)
        actor_type = ActorType.USER if actor_id else ActorType.SYSTEM

        if subscription.status == S.TRIAL.value or is_upgrade:
            proration = None
            invoice_id = None
            if subscription.status == S.ACTIVE.value:
                proration = self.calculate_proration(subscription, new_plan)
                if proration.amount > 0:
                    invoice_id = self._issue_proration_invoice(subscription, new_plan, proration)
                subscription.proration_date = self._now()

            subscription.plan_id = new_plan.id
            subscription.scheduled_plan_id = None
            self.audit.log_event(
                tenant_id=self.tenant_id,
                event_type=BillingEventType.SUBSCRIPTION_UPGRADED,
                subscription_id=subscription.id,
                invoice_id=invoice_id,
                from_plan_id=old_plan.id,
                to_plan_id=new_plan.id,
                amount=proration.amount if proration else None,
                actor_type=actor_type,
                actor_id=actor_id,
                occurred_at=self._now(),
            )
            self._commit("change_plan")
            return PlanChangeResult(
                subscription=subscription,
                applied_immediately=True,
                is_upgrade=is_upgrade,
                proration=proration,
                invoice_id=invoice_id,
            )

        subscription.scheduled_plan_id = new_plan.id
        self.audit.log_event(
            tenant_id=self.tenant_id,
            event_type=BillingEventType.SUBSCRIPTION_DOWNGRADE_SCHEDULED,
            subscription_id=subscription.id,
            from_plan_id=old_plan.id,
            to_plan_id=new_plan.id,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata={"effective_at": ensure_utc(subscription.current_period_end).isoformat()},
            occurred_at=self._now(),
        )
        self._commit("change_plan")
        return PlanChangeResult(subscription=subscription, applied_immediately=False, is_upgrade=False)

    def _issue_proration_invoice(self, subscription: Subscription, new_plan: Plan,
                                 proration: ProrationResult) -> str:
        # billing_service imports this module for payment reconciliation
        from realnext.services.billing_service import BillingService, InvoiceKind, LineItem

        tax = (proration.amount * self.settings.tax_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)
        invoice = BillingService(self.db, self.tenant_id, clock=self._clock).generate_invoice(
            line_items=[
                LineItem(
                    description=f"{self.settings.proration_description} ({new_plan.name})",
                    amount=proration.amount,
                    quantity=1,
                )
            ],
            period_start=self._now(),
            period_end=ensure_utc(subscription.current_period_end),
            amount=proration.amount,
            tax_amount=tax,
            total_amount=proration.amount + tax,
            subscription_id=subscription.id,
            kind=InvoiceKind.PRORATION,
            partner_id=subscription.partner_id,
        )
        return invoice.id
