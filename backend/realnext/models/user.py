"""
User model - global identity across tenants.

A user can belong to many tenants via TenantUser memberships.
Super admins bypass every tenant-scoped check.
"""

import enum

from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, generate_uuid


class UserStatus(str, enum.Enum):
    """User account status."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


class User(Base, TimestampMixin):
    """
    Global identity record.

    Only ACTIVE users resolve to a principal; suspended or pending users
    are treated as having no membership anywhere.
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Login email, unique across the platform"
    )

    password_hash = Column(
        String(255),
        nullable=True,
        comment="Credential hash; verification lives in the auth layer"
    )

    name = Column(
        String(255),
        nullable=True,
        comment="Display name"
    )

    is_super_admin = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Platform operator; bypasses all tenant-scoped checks"
    )

    status = Column(
        Enum(*[s.value for s in UserStatus], name="user_status"),
        nullable=False,
        default=UserStatus.ACTIVE.value,
        comment="Account status"
    )

    last_login_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last successful login"
    )

    __table_args__ = (
        Index("ix_users_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, super_admin={self.is_super_admin})>"

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value
