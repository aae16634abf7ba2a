"""
Module, Permission, Role, and Group models for RBAC.

The relationship graph is User <-> Group <-> Role <-> Permission -> Module.
Every many-to-many edge is an explicit association table keyed by id. The
ORM relationships declared here are read-only views used to render the
"include related" response shape; the entity store writes the association
tables directly.
"""
from typing import Any, Dict
from sqlalchemy import (
    JSON, Column, DateTime, Enum, ForeignKey, String, Table, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, UlidPrimaryKeyMixin, utcnow
from app.features.permissions.capabilities import Action


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=utcnow),
)

# Group-Role relationship
group_roles = Table(
    "group_roles",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=utcnow),
)

# User-Group membership
user_groups = Table(
    "user_groups",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("joined_at", DateTime(timezone=True), nullable=False, default=utcnow),
)


# ============================================================================
# Core Models
# ============================================================================

class Module(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    A logical resource domain subject to access control (e.g. "Users").

    Deleting a module deletes the permissions it owns.
    """
    __tablename__ = "modules"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        viewonly=True,
        order_by="Permission.created_at",
    )

    def __repr__(self) -> str:
        return f"<Module(id={self.id}, name={self.name!r})>"


class Permission(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    One action on one module. (module_id, action) is unique.

    Examples:
    - module="Users", action="create"
    - module="Roles", action="read"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("module_id", "action", name="uq_permissions_module_action"),
    )

    module_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[Action] = mapped_column(
        Enum(Action, native_enum=False, length=10, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    module: Mapped["Module"] = relationship("Module", viewonly=True)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, module_id={self.module_id}, action={self.action.value})>"


class Role(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    A named bundle of permissions.

    There is no built-in superuser: an administrator is a role that holds
    every permission explicitly.
    """
    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        viewonly=True,
    )

    groups: Mapped[list["Group"]] = relationship(
        "Group",
        secondary=group_roles,
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r})>"


class Group(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    A named bundle of users and roles.

    Groups are the join point between who (users) and what they can do (roles).
    """
    __tablename__ = "groups"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=group_roles,
        viewonly=True,
    )

    users: Mapped[list["User"]] = relationship(  # type: ignore # noqa: F821
        "User",
        secondary=user_groups,
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name!r})>"


class AuditLog(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    Audit log for committed mutations.

    Written inside the same transaction as the mutation it records.
    """
    __tablename__ = "audit_logs"

    # Actor; null for system tasks such as seeding
    user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
