"""
Database models for identity, RBAC, subscriptions, usage and billing.

Tenant-scoped models inherit from TenantScopedMixin.
Importing this package registers every table on realnext.db_base.Base.
"""

from realnext.models.base import TimestampMixin, TenantScopedMixin, SoftDeleteMixin
from realnext.models.user import User, UserStatus
from realnext.models.partner import Partner, PartnerStatus
from realnext.models.tenant import Tenant, TenantStatus, TenantEnvironment
from realnext.models.role import Role, PermissionDefinition
from realnext.models.tenant_user import TenantUser
from realnext.models.partner_user import PartnerUser
from realnext.models.plan import Plan, Feature, PlanFeature
from realnext.models.subscription import Subscription, SubscriptionStatus, BillingCycle
from realnext.models.usage import SubscriptionUsage
from realnext.models.invoice import Invoice, InvoiceStatus, InvoiceSequence
from realnext.models.payment import Payment, PaymentStatus
from realnext.models.billing_event import BillingEvent, BillingEventType, ActorType

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "SoftDeleteMixin",
    "User",
    "UserStatus",
    "Partner",
    "PartnerStatus",
    "Tenant",
    "TenantStatus",
    "TenantEnvironment",
    "Role",
    "PermissionDefinition",
    "TenantUser",
    "PartnerUser",
    "Plan",
    "Feature",
    "PlanFeature",
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "SubscriptionUsage",
    "Invoice",
    "InvoiceStatus",
    "InvoiceSequence",
    "Payment",
    "PaymentStatus",
    "BillingEvent",
    "BillingEventType",
    "ActorType",
]
