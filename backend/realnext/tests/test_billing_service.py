"""
Tests for invoices, payments and refunds.

Tests cover:
- Invoice totals and line-item validation
- Sequential, padded, per-month invoice numbers
- Sequence seeding from existing invoices and skipping taken numbers
- Payment recording: success, failure, unverified signature, idempotency
- Subscription invoices drive renew / past_due
- Partial and full refunds
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from realnext.models.base import ensure_utc
from realnext.models.billing_event import BillingEvent, BillingEventType
from realnext.models.invoice import Invoice
from realnext.repositories.billing_repository import InvoiceRepository
from realnext.services.billing_service import (
    BillingService,
    GatewayPaymentResult,
    InvoiceKind,
    InvoiceNotFoundError,
    InvoiceNumberConflictError,
    InvoiceStateError,
    InvoiceValidationError,
    LineItem,
    RefundError,
    SIGNATURE_FAILURE_REASON,
)


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def service(db_session, tenant, clock):
    return BillingService(db_session, tenant.id, clock=clock)


def _issue(service, amount="100.00", tax="18.00", period_start=None, period_end=None, **kwargs):
    amount = Decimal(amount)
    tax = Decimal(tax)
    return service.generate_invoice(
        line_items=[LineItem(description="Seats", amount=amount, quantity=1)],
        period_start=period_start,
        period_end=period_end,
        amount=amount,
        tax_amount=tax,
        total_amount=amount + tax,
        **kwargs,
    )


def _paid(payment_id="pay_1", order_id="order_1", amount="118.00"):
    return GatewayPaymentResult(
        verified=True,
        success=True,
        amount=Decimal(amount),
        currency="INR",
        payment_method="upi",
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        gateway_signature="sig",
    )


class TestConstruction:

    def test_requires_tenant(self, db_session):
        with pytest.raises(ValueError):
            BillingService(db_session, None)


class TestInvoiceValidation:

    def test_totals_must_add_up(self, service):
        with pytest.raises(InvoiceValidationError):
            service.generate_invoice(
                line_items=[{"description": "Seats", "amount": "100.00"}],
                period_start=None,
                period_end=None,
                amount=Decimal("100.00"),
                tax_amount=Decimal("18.00"),
                total_amount=Decimal("120.00"),
            )

    def test_negative_amounts_rejected(self):
        with pytest.raises(InvoiceValidationError):
            BillingService.validate_invoice_totals(Decimal("-1"), Decimal("0"), Decimal("-1"))

    def test_line_items_required(self, service):
        with pytest.raises(InvoiceValidationError):
            service.generate_invoice(
                line_items=[], period_start=None, period_end=None,
                amount=0, tax_amount=0, total_amount=0,
            )

    def test_invalid_line_item(self, service):
        with pytest.raises(InvoiceValidationError):
            service.generate_invoice(
                line_items=[{"description": "", "amount": "1.00"}],
                period_start=None, period_end=None,
                amount=1, tax_amount=0, total_amount=1,
            )

    def test_inverted_period(self, service, clock):
        with pytest.raises(InvoiceValidationError):
            _issue(service, period_start=clock.now, period_end=clock.now - timedelta(days=1))


class TestInvoiceNumbers:

    def test_sequential_and_padded(self, service):
        numbers = [_issue(service).invoice_number for _ in range(3)]
        assert numbers == ["INV-202603-00001", "INV-202603-00002", "INV-202603-00003"]

    def test_numbers_distinct_across_tenants(self, db_session, make_tenant, clock):
        services = [BillingService(db_session, make_tenant().id, clock=clock) for _ in range(4)]

        numbers = [_issue(s).invoice_number for s in services for _ in range(5)]

        assert len(set(numbers)) == 20
        assert all(len(n.rsplit("-", 1)[1]) == 5 for n in numbers)

    def test_month_rollover_restarts_sequence(self, service, clock):
        _issue(service)
        _issue(service)
        clock.advance(days=20)

        assert _issue(service).invoice_number == "INV-202604-00001"

    def test_seeded_from_existing_invoices(self, db_session, service, tenant):
        db_session.add(Invoice(
            tenant_id=tenant.id,
            invoice_number="INV-202603-00007",
            amount=Decimal("1"),
            tax_amount=Decimal("0"),
            total_amount=Decimal("1"),
            currency="INR",
            status="paid",
        ))
        db_session.flush()

        assert _issue(service).invoice_number == "INV-202603-00008"

    def test_sequence_seeded_once_per_month(self, service, clock):
        with patch.object(InvoiceRepository, "highest_suffix_with_prefix", return_value=0) as seed:
            numbers = [_issue(service).invoice_number for _ in range(3)]
            clock.advance(days=20)
            _issue(service)

        assert numbers[-1] == "INV-202603-00003"
        assert [c.args[-1] for c in seed.call_args_list] == ["INV-202603-", "INV-202604-"]

    def test_taken_number_is_skipped(self, service):
        with patch.object(InvoiceRepository, "number_exists", side_effect=[True, False]):
            invoice = _issue(service)
        assert invoice.invoice_number == "INV-202603-00002"

    def test_gives_up_after_max_attempts(self, db_session, service):
        with patch.object(InvoiceRepository, "number_exists", return_value=True):
            with pytest.raises(InvoiceNumberConflictError):
                _issue(service)
        assert db_session.query(Invoice).count() == 0

    def test_invoice_fields(self, db_session, service, clock):
        invoice = _issue(service, kind=InvoiceKind.ONE_OFF)

        assert invoice.status == "pending"
        assert invoice.currency == "INR"
        assert ensure_utc(invoice.due_date) == clock.now + timedelta(days=7)
        assert invoice.line_items == [{"description": "Seats", "amount": "100.00", "quantity": 1}]
        event = db_session.query(BillingEvent).filter(BillingEvent.invoice_id == invoice.id).one()
        assert event.event_type == BillingEventType.INVOICE_ISSUED


class TestPayments:

    def test_successful_payment(self, db_session, service, clock):
        invoice = _issue(service)

        payment = service.record_payment(invoice.id, _paid())

        assert payment.status == "completed"
        assert invoice.status == "paid"
        assert ensure_utc(invoice.paid_at) == clock.now
        assert invoice.payment_method == "upi"

    def test_pending_payment_is_completed(self, service):
        invoice = _issue(service)
        pending = service.start_payment(invoice.id, gateway_order_id="order_1", payment_method="card")

        payment = service.record_payment(invoice.id, _paid(order_id="order_1"))

        assert payment.id == pending.id
        assert payment.gateway_payment_id == "pay_1"

    def test_failed_payment(self, service):
        invoice = _issue(service)
        result = GatewayPaymentResult(
            verified=True, success=False, gateway_payment_id="pay_2", failure_reason="Card declined",
        )

        payment = service.record_payment(invoice.id, result)

        assert payment.status == "failed"
        assert invoice.status == "failed"
        assert invoice.failure_reason == "Card declined"

    @pytest.mark.security
    def test_unverified_signature_is_failure(self, service):
        invoice = _issue(service)
        result = _paid()
        result.verified = False

        payment = service.record_payment(invoice.id, result)

        assert payment.status == "failed"
        assert invoice.status == "failed"
        assert invoice.failure_reason == SIGNATURE_FAILURE_REASON

    def test_failed_invoice_can_be_retried(self, service):
        invoice = _issue(service)
        service.record_payment(invoice.id, GatewayPaymentResult(verified=True, success=False, gateway_payment_id="pay_x"))

        service.record_payment(invoice.id, _paid(payment_id="pay_y"))

        assert invoice.status == "paid"

    def test_duplicate_payment_is_idempotent(self, db_session, service):
        invoice = _issue(service)
        first = service.record_payment(invoice.id, _paid())

        second = service.record_payment(invoice.id, _paid())

        assert second.id == first.id
        events = db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.PAYMENT_SUCCEEDED
        ).count()
        assert events == 1

    def test_paid_invoice_rejects_new_payment(self, service):
        invoice = _issue(service)
        service.record_payment(invoice.id, _paid())
        with pytest.raises(InvoiceStateError):
            service.record_payment(invoice.id, _paid(payment_id="pay_other"))

    @pytest.mark.security
    def test_other_tenants_invoice_not_found(self, db_session, service, make_tenant, clock):
        invoice = _issue(service)
        other = BillingService(db_session, make_tenant().id, clock=clock)
        with pytest.raises(InvoiceNotFoundError):
            other.record_payment(invoice.id, _paid())


class TestSubscriptionInvoices:

    def test_paid_renewal_rolls_period(self, service, tenant, make_plan, make_subscription):
        plan = make_plan(price_monthly="1000.00")
        subscription = make_subscription(tenant, plan, status="active")
        old_end = ensure_utc(subscription.current_period_end)

        invoice = service.generate_subscription_invoice()
        assert invoice.amount == Decimal("1000.00")
        assert invoice.tax_amount == Decimal("180.00")
        assert ensure_utc(invoice.billing_period_start) == old_end

        service.record_payment(invoice.id, _paid(amount="1180.00"))

        assert subscription.status == "active"
        assert ensure_utc(subscription.current_period_start) == old_end

    def test_failed_renewal_marks_past_due(self, service, tenant, make_plan, make_subscription):
        subscription = make_subscription(tenant, make_plan(), status="active")
        invoice = service.generate_subscription_invoice()

        service.record_payment(invoice.id, GatewayPaymentResult(verified=True, success=False, gateway_payment_id="p"))

        assert subscription.status == "past_due"

    def test_paid_renewal_after_period_end(self, db_session, service, tenant, make_plan,
                                           make_subscription, clock):
        subscription = make_subscription(tenant, make_plan(), status="active")
        old_end = ensure_utc(subscription.current_period_end)
        invoice = service.generate_subscription_invoice()
        clock.set(old_end + timedelta(minutes=1))

        service.record_payment(invoice.id, _paid())

        assert subscription.status == "active"
        assert ensure_utc(subscription.current_period_start) == old_end
        assert ensure_utc(subscription.current_period_end) > clock.now
        expired = db_session.query(BillingEvent).filter(
            BillingEvent.event_type == BillingEventType.SUBSCRIPTION_EXPIRED
        ).count()
        assert expired == 0

    def test_failed_renewal_after_period_end(self, service, tenant, make_plan, make_subscription, clock):
        subscription = make_subscription(tenant, make_plan(), status="active")
        invoice = service.generate_subscription_invoice()
        clock.set(ensure_utc(subscription.current_period_end) + timedelta(minutes=1))

        service.record_payment(invoice.id, GatewayPaymentResult(verified=True, success=False, gateway_payment_id="p"))

        assert subscription.status == "past_due"
        assert invoice.status == "failed"

    def test_late_payment_for_old_period_does_not_revive(self, service, tenant, make_plan,
                                                         make_subscription, clock):
        subscription = make_subscription(tenant, make_plan(), status="active")
        invoice = service.generate_subscription_invoice()
        # period moved on without this invoice being settled
        subscription.current_period_end = ensure_utc(subscription.current_period_end) + timedelta(days=30)
        clock.set(ensure_utc(subscription.current_period_end) + timedelta(days=1))

        service.record_payment(invoice.id, _paid())

        assert invoice.status == "paid"
        assert subscription.status == "active"
        assert ensure_utc(subscription.current_period_end) < clock.now

    def test_one_off_invoice_leaves_subscription_alone(self, service, tenant, make_plan, make_subscription):
        subscription = make_subscription(tenant, make_plan(), status="active")
        invoice = _issue(service, subscription_id=subscription.id)

        service.record_payment(invoice.id, GatewayPaymentResult(verified=True, success=False, gateway_payment_id="p"))

        assert subscription.status == "active"


class TestRefunds:

    def test_partial_then_full_refund(self, service, clock):
        invoice = _issue(service)
        payment = service.record_payment(invoice.id, _paid())

        service.refund_payment(payment.id, amount=Decimal("18.00"), gateway_refund_id="rfnd_1")
        assert payment.status == "completed"
        assert payment.refund_amount == Decimal("18.00")
        assert payment.amount == Decimal("118.00")
        assert ensure_utc(payment.refunded_at) == clock.now

        service.refund_payment(payment.id, gateway_refund_id="rfnd_2")
        assert payment.status == "refunded"
        assert payment.refund_amount == Decimal("118.00")
        assert invoice.status == "refunded"

    def test_refund_is_idempotent(self, service):
        invoice = _issue(service)
        payment = service.record_payment(invoice.id, _paid())

        service.refund_payment(payment.id, amount=Decimal("10.00"), gateway_refund_id="rfnd_1")
        service.refund_payment(payment.id, amount=Decimal("10.00"), gateway_refund_id="rfnd_1")

        assert payment.refund_amount == Decimal("10.00")

    def test_over_refund_rejected(self, service):
        invoice = _issue(service)
        payment = service.record_payment(invoice.id, _paid())
        with pytest.raises(RefundError):
            service.refund_payment(payment.id, amount=Decimal("500.00"))

    def test_failed_payment_not_refundable(self, service):
        invoice = _issue(service)
        payment = service.record_payment(
            invoice.id, GatewayPaymentResult(verified=True, success=False, gateway_payment_id="p"),
        )
        with pytest.raises(RefundError):
            service.refund_payment(payment.id)


class TestCancelInvoice:

    def test_cancel_pending(self, service):
        invoice = _issue(service)
        service.cancel_invoice(invoice.id, reason="duplicate")
        assert invoice.status == "cancelled"

    def test_cannot_cancel_paid(self, service):
        invoice = _issue(service)
        service.record_payment(invoice.id, _paid())
        with pytest.raises(InvoiceStateError):
            service.cancel_invoice(invoice.id)
