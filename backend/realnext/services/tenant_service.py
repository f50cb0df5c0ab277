"""
Tenant and partner provisioning.

Creating a tenant is one unit of work: the tenant row, the owner's
membership, tenant copies of the system roles and a trial subscription
on the requested (or default) plan. Membership changes keep one row per
(user, tenant); removal is a soft delete and re-adding restores the row.
"""

import logging
import re
import time
from typing import Callable, Optional, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from realnext.constants.permissions import LegacyRole
from realnext.models.partner import Partner, PartnerStatus
from realnext.models.role import Role, seed_tenant_roles
from realnext.models.tenant import Tenant, TenantEnvironment, TenantStatus
from realnext.models.tenant_user import TenantUser
from realnext.models.user import User
from realnext.repositories.identity_repository import IdentityRepository
from realnext.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class TenantServiceError(Exception):
    """Base exception for tenant service errors."""
    pass


class TenantNotFoundError(TenantServiceError):
    pass


class UserNotFoundError(TenantServiceError):
    pass


class MembershipNotFoundError(TenantServiceError):
    pass


class RoleNotAssignableError(TenantServiceError):
    """Role belongs to another tenant or does not exist."""
    pass


def slugify(value: str) -> str:
    slug = _SLUG_STRIP.sub("-", (value or "").lower()).strip("-")
    return slug or "tenant"


def generate_unique_slug(db_session: Session, model: Type, name: str, max_length: int = 100) -> str:
    """
    Slug for `name` that is not yet used in `model.slug`.

    Collisions get a numeric suffix: acme, acme-2, acme-3, ...
    Soft-deleted rows still hold their slug.
    """
    base = slugify(name)[:max_length]
    taken = {
        slug for (slug,) in db_session.query(model.slug).filter(model.slug.like(f"{base}%")).all()
    }
    if base not in taken:
        return base
    suffix = 2
    while True:
        tail = f"-{suffix}"
        candidate = f"{base[:max_length - len(tail)]}{tail}"
        if candidate not in taken:
            return candidate
        suffix += 1


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_referral_code(slug: str, timestamp_ms: Optional[int] = None) -> str:
    """REF-<first 6 of slug, upper>-<base36 millisecond timestamp, upper>."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    head = slug.replace("-", "")[:6].upper()
    return f"REF-{head}-{_to_base36(timestamp_ms).upper()}"


class TenantService:
    """
    Provisioning for tenants, partners and memberships.

    Not tenant-scoped itself: it creates tenants. Membership methods take
    the tenant explicitly.
    """

    def __init__(self, db_session: Session, clock: Optional[Callable] = None):
        self.db = db_session
        self._clock = clock
        self.identity = IdentityRepository(db_session)

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("tenant.commit_failed", extra={"operation": operation})
            raise

    def _get_tenant(self, tenant_id: str) -> Tenant:
        tenant = (
            self.db.query(Tenant)
            .filter(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
            .first()
        )
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def _get_user(self, user_id: str) -> User:
        user = self.identity.find_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    # ------------------------------------------------------------------
    # Partners
    # ------------------------------------------------------------------

    def create_partner(self, name: str, email: str, commission_rate=None,
                       settings: Optional[dict] = None) -> Partner:
        """Create a white-label partner with a generated slug and referral code."""
        if not name or not email:
            raise TenantServiceError("name and email are required")

        slug = generate_unique_slug(self.db, Partner, name)
        partner = Partner(
            name=name,
            slug=slug,
            email=email,
            referral_code=generate_referral_code(slug),
            status=PartnerStatus.ACTIVE.value,
            settings=settings,
        )
        if commission_rate is not None:
            partner.commission_rate = commission_rate
        self.db.add(partner)
        self._commit("create_partner")
        logger.info("partner.created", extra={"partner_id": partner.id, "slug": slug})
        return partner

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        email: Optional[str],
        owner_user_id: str,
        plan_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        is_demo: bool = False,
    ) -> Tenant:
        """
        Create a tenant with its owner, roles and trial subscription.

        Args:
            name: Display name; the slug is derived from it
            email: Contact email
            owner_user_id: User who becomes the owner member
            plan_id: Plan for the trial (default plan when omitted)
            partner_id: Reselling partner, if any

        Returns:
            The committed Tenant, pointing at its subscription
        """
        if not name:
            raise TenantServiceError("name is required")
        self._get_user(owner_user_id)

        try:
            tenant = Tenant(
                name=name,
                slug=generate_unique_slug(self.db, Tenant, name),
                email=email,
                partner_id=partner_id,
                status=TenantStatus.ACTIVE.value,
                environment=(TenantEnvironment.DEMO if is_demo else TenantEnvironment.PRODUCTION).value,
                is_demo=is_demo,
            )
            self.db.add(tenant)
            self.db.flush()

            self.db.add(TenantUser.create_owner(tenant.id, owner_user_id))
            seed_tenant_roles(self.db, tenant.id)
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("tenant.create_failed", extra={"name": name})
            raise

        # commits the tenant, membership and roles together with the subscription
        try:
            SubscriptionService(self.db, tenant.id, clock=self._clock).create_subscription(
                plan_id=plan_id, partner_id=partner_id,
            )
        except Exception:
            self.db.rollback()
            raise

        logger.info("tenant.created", extra={
            "tenant_id": tenant.id,
            "slug": tenant.slug,
            "owner_user_id": owner_user_id,
            "partner_id": partner_id,
        })
        return tenant

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role: str = LegacyRole.USER.value,
        role_id: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> TenantUser:
        """
        Add a user to a tenant, restoring a previously removed membership.

        Raises:
            TenantServiceError: user is already an active member
        """
        self._get_tenant(tenant_id)
        self._get_user(user_id)
        if role_id:
            self._assignable_role(tenant_id, role_id)

        membership = self.identity.find_membership_including_deleted(user_id, tenant_id)
        if membership is not None:
            if not membership.is_deleted:
                raise TenantServiceError(f"User {user_id} is already a member of {tenant_id}")
            membership.restore(role=LegacyRole(role).value)
            membership.role_id = role_id
            membership.is_owner = False
            membership.invited_by = invited_by
        else:
            membership = TenantUser.create_member(
                tenant_id, user_id, role=role, role_id=role_id, invited_by=invited_by,
            )
            self.db.add(membership)

        self._commit("add_member")
        logger.info("tenant.member_added", extra={
            "tenant_id": tenant_id, "user_id": user_id, "role": role, "role_id": role_id,
        })
        return membership

    def remove_member(self, tenant_id: str, user_id: str) -> TenantUser:
        """Soft-delete a membership; the user loses access immediately."""
        membership = self.identity.find_membership(user_id, tenant_id)
        if membership is None:
            raise MembershipNotFoundError(f"User {user_id} is not a member of {tenant_id}")
        membership.soft_delete()
        self._commit("remove_member")
        logger.info("tenant.member_removed", extra={"tenant_id": tenant_id, "user_id": user_id})
        return membership

    def _assignable_role(self, tenant_id: str, role_id: str) -> Role:
        role = self.identity.find_role_by_id(role_id)
        if role is None or (role.tenant_id is not None and role.tenant_id != tenant_id):
            raise RoleNotAssignableError(f"Role {role_id} cannot be assigned in tenant {tenant_id}")
        return role

    def assign_role(self, tenant_id: str, user_id: str, role_id: Optional[str]) -> TenantUser:
        """
        Set or clear a member's custom role.

        Clearing (role_id=None) falls back to the member's legacy role.
        """
        membership = self.identity.find_membership(user_id, tenant_id)
        if membership is None:
            raise MembershipNotFoundError(f"User {user_id} is not a member of {tenant_id}")
        if role_id is not None:
            self._assignable_role(tenant_id, role_id)
        membership.role_id = role_id
        self._commit("assign_role")
        logger.info("tenant.role_assigned", extra={
            "tenant_id": tenant_id, "user_id": user_id, "role_id": role_id,
        })
        return membership
