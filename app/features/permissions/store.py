"""
Entity store for modules, permissions, roles, groups and users.

Wraps an ``AsyncSession`` with validated CRUD, idempotent relationship
primitives and the graph queries used by the resolver and the mutation
gateway. Every statement is bounded by the store timeout; driver failures and
timeouts surface as ``Unavailable``.

The store never commits. Transactions belong to the mutation gateway.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Type, TypeVar

from sqlalchemy import Table, and_, delete, func, insert, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core import config
from app.core.database.base import Base
from app.core.errors import Conflict, NotFound, Unavailable, ValidationError
from app.features.permissions.capabilities import Action, Capability
from app.features.permissions.models import (
    AuditLog,
    Group,
    Module,
    Permission,
    Role,
    group_roles,
    role_permissions,
    user_groups,
)
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

M = TypeVar("M", bound=Base)


class Relation(str, Enum):
    """Many-to-many edges of the permission graph."""
    ROLE_PERMISSION = "role_permission"
    GROUP_ROLE = "group_role"
    USER_GROUP = "user_group"


@dataclass(frozen=True)
class _Edge:
    table: Table
    left_column: str
    right_column: str
    left_model: Type[Base]
    right_model: Type[Base]


_EDGES: Dict[Relation, _Edge] = {
    Relation.ROLE_PERMISSION: _Edge(role_permissions, "role_id", "permission_id", Role, Permission),
    Relation.GROUP_ROLE: _Edge(group_roles, "group_id", "role_id", Group, Role),
    Relation.USER_GROUP: _Edge(user_groups, "user_id", "group_id", User, Group),
}

# Columns callers may set, per entity type
_FIELDS: Dict[Type[Base], Tuple[str, ...]] = {
    Module: ("name", "description"),
    Permission: ("module_id", "action"),
    Role: ("name", "description"),
    Group: ("name", "description"),
    User: ("username", "credential_ref"),
}

# Non-empty, unique columns
_UNIQUE: Dict[Type[Base], Tuple[str, ...]] = {
    Module: ("name",),
    Role: ("name",),
    Group: ("name",),
    User: ("username", "credential_ref"),
}

_REQUIRED: Dict[Type[Base], Tuple[str, ...]] = {
    Module: ("name",),
    Permission: ("module_id", "action"),
    Role: ("name",),
    Group: ("name",),
    User: ("username",),
}

# Column searched by ``list(..., search=...)``
_SEARCH: Dict[Type[Base], str] = {
    Module: "name",
    Role: "name",
    Group: "name",
    User: "username",
}


def _related_options(model: Type[Base]) -> list:
    """Eager-load options producing the "include related" response shape."""
    if model is Module:
        return [selectinload(Module.permissions)]
    if model is Permission:
        return [selectinload(Permission.module), selectinload(Permission.roles)]
    if model is Role:
        return [
            selectinload(Role.permissions).selectinload(Permission.module),
            selectinload(Role.groups),
        ]
    if model is Group:
        return [selectinload(Group.users), selectinload(Group.roles)]
    if model is User:
        return [selectinload(User.groups)]
    return []


def _label(model: Type[Base]) -> str:
    return model.__name__


class EntityStore:
    """CRUD and graph queries over one session."""

    def __init__(self, session: AsyncSession, timeout: float = config.STORE_TIMEOUT_SECONDS):
        self.session = session
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Bounded I/O
    # ------------------------------------------------------------------

    async def _bounded(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except IntegrityError as exc:
            # Lost a race against a concurrent insert of the same unique value
            raise ValidationError("Constraint violated", {"constraint": str(exc.orig)}) from exc
        except asyncio.TimeoutError as exc:
            log.warning("Store call exceeded %.1fs", self.timeout)
            raise Unavailable("Store timed out") from exc
        except DBAPIError as exc:
            log.warning("Store unavailable: %s", exc)
            raise Unavailable("Store unavailable") from exc

    async def execute(self, statement):
        return await self._bounded(self.session.execute(statement))

    async def flush(self) -> None:
        await self._bounded(self.session.flush())

    async def commit(self) -> None:
        await self._bounded(self.session.commit())

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError:
            log.warning("Rollback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _clean(self, model: Type[Base], fields: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        allowed = _FIELDS[model]
        unknown = sorted(set(fields) - set(allowed))
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {_label(model)}: {', '.join(unknown)}",
                {name: "unknown field" for name in unknown},
            )

        data = dict(fields)
        errors: Dict[str, str] = {}
        for name, value in data.items():
            if isinstance(value, str):
                value = value.strip()
                # Blank optional columns are stored as NULL
                data[name] = None if value == "" and name not in _REQUIRED[model] else value
        for name in _REQUIRED[model]:
            if name not in data:
                if not partial:
                    errors[name] = "field required"
                continue
            if data[name] is None or data[name] == "":
                errors[name] = "must not be empty"
        if "action" in data and data["action"] is not None and not isinstance(data["action"], Action):
            try:
                data["action"] = Action(data["action"])
            except ValueError:
                errors["action"] = f"must be one of {', '.join(a.value for a in Action)}"
        if errors:
            raise ValidationError(f"Invalid {_label(model)}", errors)
        return data

    async def _check_unique(self, model: Type[Base], data: Dict[str, Any], exclude_id: Optional[str] = None) -> None:
        errors: Dict[str, str] = {}
        for name in _UNIQUE.get(model, ()):
            value = data.get(name)
            if value is None:
                continue
            stmt = select(model.id).where(getattr(model, name) == value)
            if exclude_id is not None:
                stmt = stmt.where(model.id != exclude_id)
            if (await self.execute(stmt)).first() is not None:
                errors[name] = f"{_label(model)} with {name} {value!r} already exists"
        if errors:
            raise ValidationError(f"Duplicate {_label(model)}", errors)

    async def _check_permission_pair(self, module_id: str, action: Action, exclude_id: Optional[str] = None) -> None:
        if not await self.exists(Module, module_id):
            raise NotFound(f"Module {module_id} not found", {"module_id": "does not exist"})
        stmt = select(Permission.id).where(
            and_(Permission.module_id == module_id, Permission.action == action)
        )
        if exclude_id is not None:
            stmt = stmt.where(Permission.id != exclude_id)
        if (await self.execute(stmt)).first() is not None:
            raise ValidationError(
                "Duplicate Permission",
                {"action": f"module already has a '{action.value}' permission"},
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def exists(self, model: Type[Base], entity_id: str) -> bool:
        result = await self.execute(select(model.id).where(model.id == entity_id))
        return result.first() is not None

    async def get(self, model: Type[M], entity_id: str) -> M:
        stmt = (
            select(model)
            .where(model.id == entity_id)
            .options(*_related_options(model))
            .execution_options(populate_existing=True)
        )
        entity = (await self.execute(stmt)).scalars().first()
        if entity is None:
            raise NotFound(f"{_label(model)} not found")
        return entity

    def _filtered(self, stmt, model: Type[Base], search: Optional[str], filters: Dict[str, Any]):
        for name, value in filters.items():
            if value is None:
                continue
            column = getattr(model, name, None)
            if column is None or name not in model.__table__.columns:
                raise ValidationError(f"Cannot filter {_label(model)} by {name}", {name: "unknown filter"})
            stmt = stmt.where(column == value)
        if search:
            column = getattr(model, _SEARCH.get(model, ""), None)
            if column is None:
                raise ValidationError(f"{_label(model)} does not support search", {"search": "unsupported"})
            stmt = stmt.where(func.lower(column).contains(search.lower()))
        return stmt

    async def list(
        self,
        model: Type[M],
        *,
        skip: int = 0,
        limit: Optional[int] = None,
        search: Optional[str] = None,
        newest_first: bool = False,
        **filters: Any,
    ) -> List[M]:
        """List entities in creation order (or newest first)."""
        stmt = self._filtered(select(model), model, search, filters)
        if newest_first:
            stmt = stmt.order_by(model.created_at.desc(), model.id.desc())
        else:
            stmt = stmt.order_by(model.created_at, model.id)
        stmt = stmt.options(*_related_options(model)).execution_options(populate_existing=True)
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await self.execute(stmt)).scalars().all())

    async def count(self, model: Type[Base], *, search: Optional[str] = None, **filters: Any) -> int:
        stmt = self._filtered(select(func.count()).select_from(model), model, search, filters)
        return (await self.execute(stmt)).scalar_one()

    async def validate(self, model: Type[Base], fields: Dict[str, Any], entity_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Clean and check ``fields`` for a create (no ``entity_id``) or an update.

        Returns the normalized column values; raises ValidationError or NotFound.
        """
        data = self._clean(model, fields, partial=entity_id is not None)
        if model is Permission and ("module_id" in data or "action" in data):
            if entity_id is not None:
                current = await self.get(Permission, entity_id)
                module_id = data.get("module_id", current.module_id)
                action = data.get("action", current.action)
            else:
                module_id, action = data["module_id"], data["action"]
            await self._check_permission_pair(module_id, action, exclude_id=entity_id)
        await self._check_unique(model, data, exclude_id=entity_id)
        return data

    async def insert(self, model: Type[M], data: Dict[str, Any]) -> M:
        """Insert already-validated values and return the loaded entity."""
        entity = model(**data)
        self.session.add(entity)
        await self.flush()
        log.debug("Created %r", entity)
        return await self.get(model, entity.id)

    async def apply_patch(self, model: Type[M], entity_id: str, data: Dict[str, Any]) -> M:
        """Write already-validated values onto an entity."""
        entity = await self.get(model, entity_id)
        for name, value in data.items():
            setattr(entity, name, value)
        await self.flush()
        return await self.get(model, entity_id)

    async def create(self, model: Type[M], fields: Dict[str, Any]) -> M:
        return await self.insert(model, await self.validate(model, fields))

    async def update(self, model: Type[M], entity_id: str, patch: Dict[str, Any]) -> M:
        await self.get(model, entity_id)
        return await self.apply_patch(model, entity_id, await self.validate(model, patch, entity_id))

    async def referents(self, model: Type[Base], entity_id: str) -> Dict[str, int]:
        """Count rows that still point at an entity, keyed by what they are."""
        checks: List[Tuple[str, Any]] = []
        if model is Module:
            checks.append(("permissions", select(func.count()).where(Permission.module_id == entity_id)))
        for edge in _EDGES.values():
            if edge.left_model is model:
                column, other = edge.left_column, edge.right_model
            elif edge.right_model is model:
                column, other = edge.right_column, edge.left_model
            else:
                continue
            name = other.__tablename__
            checks.append((name, select(func.count()).select_from(edge.table).where(edge.table.c[column] == entity_id)))

        counts: Dict[str, int] = {}
        for name, stmt in checks:
            value = (await self.execute(stmt)).scalar_one()
            if value:
                counts[name] = value
        return counts

    async def ensure_unreferenced(self, model: Type[Base], entity_id: str) -> None:
        referents = await self.referents(model, entity_id)
        if referents:
            summary = ", ".join(f"{count} {name}" for name, count in sorted(referents.items()))
            raise Conflict(f"{_label(model)} is still referenced by {summary}", referents)

    async def delete(self, model: Type[Base], entity_id: str) -> None:
        """Delete one entity; ``Conflict`` while anything still references it."""
        if not await self.exists(model, entity_id):
            raise NotFound(f"{_label(model)} not found")
        await self.ensure_unreferenced(model, entity_id)
        await self.execute(delete(model).where(model.id == entity_id))
        log.debug("Deleted %s %s", _label(model), entity_id)

    async def detach(self, model: Type[Base], entity_id: str) -> int:
        """Remove every association row touching an entity."""
        removed = 0
        for edge in _EDGES.values():
            for column, side in ((edge.left_column, edge.left_model), (edge.right_column, edge.right_model)):
                if side is model:
                    result = await self.execute(delete(edge.table).where(edge.table.c[column] == entity_id))
                    removed += result.rowcount or 0
        return removed

    async def delete_module_permissions(self, module_id: str) -> List[str]:
        """Detach and delete every permission a module owns."""
        permission_ids = list(
            (await self.execute(select(Permission.id).where(Permission.module_id == module_id))).scalars()
        )
        if permission_ids:
            await self.execute(delete(role_permissions).where(role_permissions.c.permission_id.in_(permission_ids)))
            await self.execute(delete(Permission).where(Permission.id.in_(permission_ids)))
        return permission_ids

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def _edge_ends(self, relation: Relation, left_id: str, right_id: str) -> _Edge:
        edge = _EDGES[relation]
        if not await self.exists(edge.left_model, left_id):
            raise NotFound(f"{_label(edge.left_model)} not found")
        if not await self.exists(edge.right_model, right_id):
            raise NotFound(f"{_label(edge.right_model)} not found")
        return edge

    async def assign(self, relation: Relation, left_id: str, right_id: str) -> bool:
        """Add an edge. Returns False when it was already present."""
        edge = await self._edge_ends(relation, left_id, right_id)
        where = and_(edge.table.c[edge.left_column] == left_id, edge.table.c[edge.right_column] == right_id)
        if (await self.execute(select(edge.table).where(where))).first() is not None:
            return False
        await self.execute(insert(edge.table).values({edge.left_column: left_id, edge.right_column: right_id}))
        return True

    async def unassign(self, relation: Relation, left_id: str, right_id: str) -> bool:
        """Remove an edge. Returns False when it was not present."""
        edge = await self._edge_ends(relation, left_id, right_id)
        where = and_(edge.table.c[edge.left_column] == left_id, edge.table.c[edge.right_column] == right_id)
        result = await self.execute(delete(edge.table).where(where))
        return bool(result.rowcount)

    async def assign_role_permission(self, role_id: str, permission_id: str) -> bool:
        return await self.assign(Relation.ROLE_PERMISSION, role_id, permission_id)

    async def unassign_role_permission(self, role_id: str, permission_id: str) -> bool:
        return await self.unassign(Relation.ROLE_PERMISSION, role_id, permission_id)

    async def assign_group_role(self, group_id: str, role_id: str) -> bool:
        return await self.assign(Relation.GROUP_ROLE, group_id, role_id)

    async def unassign_group_role(self, group_id: str, role_id: str) -> bool:
        return await self.unassign(Relation.GROUP_ROLE, group_id, role_id)

    async def assign_user_group(self, user_id: str, group_id: str) -> bool:
        return await self.assign(Relation.USER_GROUP, user_id, group_id)

    async def unassign_user_group(self, user_id: str, group_id: str) -> bool:
        return await self.unassign(Relation.USER_GROUP, user_id, group_id)

    # ------------------------------------------------------------------
    # Graph traversal primitives
    # ------------------------------------------------------------------

    async def group_ids_for_user(self, user_id: str) -> List[str]:
        stmt = (
            select(user_groups.c.group_id)
            .where(user_groups.c.user_id == user_id)
            .order_by(user_groups.c.joined_at, user_groups.c.group_id)
        )
        return list((await self.execute(stmt)).scalars())

    async def group_role_edges(self, group_ids: Iterable[str]) -> List[Tuple[str, str]]:
        group_ids = list(group_ids)
        if not group_ids:
            return []
        stmt = (
            select(group_roles.c.group_id, group_roles.c.role_id)
            .where(group_roles.c.group_id.in_(group_ids))
            .order_by(group_roles.c.assigned_at, group_roles.c.role_id)
        )
        return [(row.group_id, row.role_id) for row in await self.execute(stmt)]

    async def role_permission_edges(self, role_ids: Iterable[str]) -> List[Tuple[str, str]]:
        role_ids = list(role_ids)
        if not role_ids:
            return []
        stmt = (
            select(role_permissions.c.role_id, role_permissions.c.permission_id)
            .where(role_permissions.c.role_id.in_(role_ids))
            .order_by(role_permissions.c.assigned_at, role_permissions.c.permission_id)
        )
        return [(row.role_id, row.permission_id) for row in await self.execute(stmt)]

    async def capabilities(self, permission_ids: Iterable[str]) -> Dict[str, Capability]:
        """Map permission ids to (module name, action) through the owning module."""
        permission_ids = list(permission_ids)
        if not permission_ids:
            return {}
        stmt = (
            select(Permission.id, Module.name, Permission.action)
            .join(Module, Module.id == Permission.module_id)
            .where(Permission.id.in_(permission_ids))
        )
        return {row.id: Capability(row.name, row.action) for row in await self.execute(stmt)}

    async def names(self, model: Type[Base], ids: Iterable[str]) -> Dict[str, str]:
        ids = list(ids)
        if not ids:
            return {}
        column = getattr(model, _SEARCH[model])
        result = await self.execute(select(model.id, column).where(model.id.in_(ids)))
        return {row[0]: row[1] for row in result}

    async def find_user(self, *, credential_ref: Optional[str] = None, username: Optional[str] = None) -> Optional[User]:
        """Look up a user by identity-store subject, falling back to username."""
        if credential_ref:
            stmt = select(User).where(User.credential_ref == credential_ref)
            user = (await self.execute(stmt)).scalars().first()
            if user is not None:
                return user
        if username:
            stmt = select(User).where(User.username == username)
            return (await self.execute(stmt)).scalars().first()
        return None

    # ------------------------------------------------------------------
    # Affected-user queries
    # ------------------------------------------------------------------

    async def users_for_group(self, group_id: str) -> Set[str]:
        stmt = select(user_groups.c.user_id).where(user_groups.c.group_id == group_id)
        return set((await self.execute(stmt)).scalars())

    async def users_for_role(self, role_id: str) -> Set[str]:
        stmt = (
            select(user_groups.c.user_id)
            .join(group_roles, group_roles.c.group_id == user_groups.c.group_id)
            .where(group_roles.c.role_id == role_id)
            .distinct()
        )
        return set((await self.execute(stmt)).scalars())

    async def users_for_permission(self, permission_id: str) -> Set[str]:
        stmt = (
            select(user_groups.c.user_id)
            .join(group_roles, group_roles.c.group_id == user_groups.c.group_id)
            .join(role_permissions, role_permissions.c.role_id == group_roles.c.role_id)
            .where(role_permissions.c.permission_id == permission_id)
            .distinct()
        )
        return set((await self.execute(stmt)).scalars())

    async def users_for_module(self, module_id: str) -> Set[str]:
        stmt = (
            select(user_groups.c.user_id)
            .join(group_roles, group_roles.c.group_id == user_groups.c.group_id)
            .join(role_permissions, role_permissions.c.role_id == group_roles.c.role_id)
            .join(Permission, Permission.id == role_permissions.c.permission_id)
            .where(Permission.module_id == module_id)
            .distinct()
        )
        return set((await self.execute(stmt)).scalars())

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def record_audit(
        self,
        *,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        audit_log = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        )
        self.session.add(audit_log)
        return audit_log
