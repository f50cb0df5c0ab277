"""
Role and permission catalog models.

Two kinds of roles share one table:
- tenant_id IS NULL => system role shared by every tenant, cannot be deleted
- tenant_id IS NOT NULL => custom role owned by that tenant

System roles are addressed by their machine `code` (see
realnext.constants.permissions.LEGACY_ROLE_SYSTEM_ROLE_CODES). `name` is
display text only.

Seeding helpers keep the catalog and system roles idempotent so they can
run at every deploy.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import Column, String, Boolean, Text, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy import JSON
from sqlalchemy.orm import Session

from realnext.constants.permissions import (
    Permission,
    SYSTEM_ROLE_TEMPLATES,
    permission_display_name,
)
from realnext.db_base import Base
from realnext.models.base import TimestampMixin, generate_uuid

logger = logging.getLogger(__name__)


class Role(Base, TimestampMixin):
    """
    Named permission set.

    `permissions` is an unordered list of permission code strings.
    """

    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Owning tenant. NULL for system roles."
    )

    code = Column(
        String(100),
        nullable=True,
        comment="Machine key for system roles (admin, manager, user)"
    )

    name = Column(String(100), nullable=False, comment="Display name, unique per tenant scope")

    description = Column(Text, nullable=True)

    permissions = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Permission code strings granted by this role"
    )

    is_system = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for seeded roles; prevents deletion"
    )

    is_default = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Assigned to new members when no role is chosen"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
        UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),
        Index("ix_roles_code", "code"),
        # NULL tenant_id never conflicts in the constraints above
        Index(
            "uq_roles_system_code", "code", unique=True,
            postgresql_where=text("tenant_id IS NULL"),
            sqlite_where=text("tenant_id IS NULL"),
        ),
        Index(
            "uq_roles_system_name", "name", unique=True,
            postgresql_where=text("tenant_id IS NULL"),
            sqlite_where=text("tenant_id IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        scope = f"tenant={self.tenant_id}" if self.tenant_id else "system"
        return f"<Role(id={self.id}, name={self.name}, {scope})>"

    @property
    def permission_codes(self) -> frozenset:
        return frozenset(self.permissions or [])

    def has_permission(self, code: str) -> bool:
        return code in self.permission_codes


class PermissionDefinition(Base, TimestampMixin):
    """Static catalog entry. Authorization only needs the code string."""

    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_system = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<PermissionDefinition(code={self.code})>"


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def seed_permission_catalog(session: Session) -> List[PermissionDefinition]:
    """Insert missing catalog rows. Existing codes are left untouched."""
    existing = {
        code for (code,) in session.query(PermissionDefinition.code).all()
    }
    created = []
    for permission in Permission:
        if permission.value in existing:
            continue
        entry = PermissionDefinition(
            code=permission.value,
            name=permission_display_name(permission),
            category=permission.category,
        )
        session.add(entry)
        created.append(entry)
    session.flush()
    return created


def seed_system_roles(session: Session) -> List[Role]:
    """
    Create or refresh the shared system roles (tenant_id IS NULL).

    Idempotent: existing rows get their permission set synced to the
    template, nothing is duplicated.
    """
    roles = []
    for code, template in SYSTEM_ROLE_TEMPLATES.items():
        role = (
            session.query(Role)
            .filter(Role.tenant_id.is_(None), Role.code == code)
            .first()
        )
        permissions = sorted(template["permissions"])
        if role is None:
            role = Role(
                tenant_id=None,
                code=code,
                name=template["name"],
                description=template["description"],
                permissions=permissions,
                is_system=True,
                is_default=template["is_default"],
            )
            session.add(role)
            logger.info("Seeded system role", extra={"role_code": code})
        else:
            role.permissions = permissions
        roles.append(role)
    session.flush()
    return roles


def seed_tenant_roles(
    session: Session,
    tenant_id: str,
    codes: Optional[Iterable[str]] = None,
) -> List[Role]:
    """
    Copy system role templates into editable tenant roles.

    Tenants customise the copies; the shared system roles stay pristine.
    """
    if not tenant_id:
        raise ValueError("tenant_id is required")

    wanted = list(codes) if codes is not None else list(SYSTEM_ROLE_TEMPLATES)
    existing = {
        code for (code,) in session.query(Role.code).filter(Role.tenant_id == tenant_id).all()
    }
    roles = []
    for code in wanted:
        if code in existing:
            continue
        template = SYSTEM_ROLE_TEMPLATES[code]
        role = Role(
            tenant_id=tenant_id,
            code=code,
            name=template["name"],
            description=template["description"],
            permissions=sorted(template["permissions"]),
            is_system=False,
            is_default=template["is_default"],
        )
        session.add(role)
        roles.append(role)
    session.flush()
    return roles
