"""
Repositories for the authorization and billing core.

All tenant-scoped queries filter by tenant_id.
"""

from realnext.repositories.identity_repository import IdentityRepository
from realnext.repositories.billing_repository import (
    SubscriptionRepository,
    InvoiceRepository,
    PaymentRepository,
    BillingAuditRepository,
)

__all__ = [
    "IdentityRepository",
    "SubscriptionRepository",
    "InvoiceRepository",
    "PaymentRepository",
    "BillingAuditRepository",
]
