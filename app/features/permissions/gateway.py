"""
Mutation gateway: every write to the permission graph goes through here.

Mutations are serialized by one lock and each runs as a single transaction:

    PENDING -> VALIDATING -> APPLYING -> INVALIDATING -> COMMITTED
    PENDING -> VALIDATING -> REJECTED

The users whose effective permissions may change are collected while the
transaction is open, the transaction commits, and their cached sets are
dropped before the call returns. A failed mutation rolls back and still
drops whatever it had already collected. Once submitted a mutation runs to
completion even if the caller goes away.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Type, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.base import Base
from app.features.permissions.models import Group, Module, Permission, Role
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import EntityStore, Relation
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

M = TypeVar("M", bound=Base)
R = TypeVar("R")


class MutationState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    APPLYING = "applying"
    INVALIDATING = "invalidating"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass
class Mutation:
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    state: MutationState = MutationState.PENDING
    affected_users: Set[str] = field(default_factory=set)
    changed: bool = True
    error: Optional[str] = None

    def advance(self, state: MutationState) -> None:
        log.debug("%s %s %s: %s -> %s", self.action, self.resource_type, self.resource_id, self.state.value, state.value)
        self.state = state


def _resource_type(model: Type[Base]) -> str:
    return model.__tablename__.rstrip("s")


class MutationGateway:
    def __init__(
        self,
        authorization: AuthorizationService,
        session_factory: Callable[[], AsyncSession],
        *,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
        history: int = 100,
    ):
        self.authorization = authorization
        self._session_factory = session_factory
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self.recent: Deque[Mutation] = deque(maxlen=history)

    async def _submit(self, mutation: Mutation, work: Callable[[EntityStore, Mutation], Awaitable[R]]) -> R:
        task = asyncio.ensure_future(self._run(mutation, work))
        return await asyncio.shield(task)

    async def _run(self, mutation: Mutation, work: Callable[[EntityStore, Mutation], Awaitable[R]]) -> R:
        async with self._lock:
            async with self._session_factory() as session:
                store = EntityStore(session, self._timeout)
                mutation.advance(MutationState.VALIDATING)
                try:
                    result = await work(store, mutation)
                    if mutation.changed:
                        store.record_audit(
                            user_id=mutation.actor_id,
                            action=mutation.action,
                            resource_type=mutation.resource_type,
                            resource_id=mutation.resource_id,
                            details=mutation.details or None,
                        )
                    await store.commit()
                except Exception as exc:
                    await store.rollback()
                    # The commit outcome may be unknown; never keep a set that could be stale
                    self.authorization.invalidate(mutation.affected_users)
                    mutation.error = str(exc)
                    mutation.advance(MutationState.REJECTED)
                    self.recent.append(mutation)
                    log.info("Rejected %s %s %s: %s", mutation.action, mutation.resource_type, mutation.resource_id, exc)
                    raise

                mutation.advance(MutationState.INVALIDATING)
                self.authorization.invalidate(mutation.affected_users)
                mutation.advance(MutationState.COMMITTED)
                self.recent.append(mutation)
                log.info(
                    "Committed %s %s %s (%d user(s) invalidated)",
                    mutation.action, mutation.resource_type, mutation.resource_id, len(mutation.affected_users),
                )
                return result

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def create(self, model: Type[M], fields: Dict[str, Any], *, actor_id: Optional[str] = None) -> M:
        mutation = Mutation("create", _resource_type(model), actor_id=actor_id, details=_jsonable(fields))

        async def work(store: EntityStore, m: Mutation) -> M:
            data = await store.validate(model, fields)
            m.advance(MutationState.APPLYING)
            entity = await store.insert(model, data)
            m.resource_id = entity.id
            return entity

        return await self._submit(mutation, work)

    async def update(
        self, model: Type[M], entity_id: str, patch: Dict[str, Any], *, actor_id: Optional[str] = None
    ) -> M:
        mutation = Mutation("update", _resource_type(model), entity_id, actor_id, _jsonable(patch))

        async def work(store: EntityStore, m: Mutation) -> M:
            await store.get(model, entity_id)
            data = await store.validate(model, patch, entity_id)
            # Module names and permission pairs are part of every holder's capabilities
            if model is Module and "name" in patch:
                m.affected_users |= await store.users_for_module(entity_id)
            elif model is Permission:
                m.affected_users |= await store.users_for_permission(entity_id)
            m.advance(MutationState.APPLYING)
            return await store.apply_patch(model, entity_id, data)

        return await self._submit(mutation, work)

    async def delete(
        self, model: Type[Base], entity_id: str, *, cascade: bool = True, actor_id: Optional[str] = None
    ) -> None:
        """
        Delete an entity.

        By default association rows are detached first and a module's
        permissions are deleted along with it. With ``cascade=False`` the
        delete is rejected with Conflict while anything references the entity.
        """
        mutation = Mutation("delete", _resource_type(model), entity_id, actor_id, {"cascade": cascade})

        async def work(store: EntityStore, m: Mutation) -> None:
            entity = await store.get(model, entity_id)
            m.details["name"] = getattr(entity, "name", None) or getattr(entity, "username", None)
            m.affected_users |= await self._holders(store, model, entity_id)
            if not cascade:
                await store.ensure_unreferenced(model, entity_id)
            m.advance(MutationState.APPLYING)
            if cascade:
                if model is Module:
                    m.details["deleted_permissions"] = await store.delete_module_permissions(entity_id)
                await store.detach(model, entity_id)
            await store.delete(model, entity_id)

        await self._submit(mutation, work)

    @staticmethod
    async def _holders(store: EntityStore, model: Type[Base], entity_id: str) -> Set[str]:
        if model is Module:
            return await store.users_for_module(entity_id)
        if model is Permission:
            return await store.users_for_permission(entity_id)
        if model is Role:
            return await store.users_for_role(entity_id)
        if model is Group:
            return await store.users_for_group(entity_id)
        if model is User:
            return {entity_id}
        return set()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    @staticmethod
    async def _edge_holders(store: EntityStore, relation: Relation, left_id: str) -> Set[str]:
        if relation is Relation.ROLE_PERMISSION:
            return await store.users_for_role(left_id)
        if relation is Relation.GROUP_ROLE:
            return await store.users_for_group(left_id)
        return {left_id}

    async def assign(
        self, relation: Relation, left_id: str, right_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        """Add an edge; assigning an existing edge is a successful no-op."""
        mutation = Mutation(f"assign_{relation.value}", relation.value.split("_")[0], left_id, actor_id, {"target_id": right_id})

        async def work(store: EntityStore, m: Mutation) -> bool:
            m.advance(MutationState.APPLYING)
            m.changed = await store.assign(relation, left_id, right_id)
            if m.changed:
                m.affected_users |= await self._edge_holders(store, relation, left_id)
            return m.changed

        return await self._submit(mutation, work)

    async def unassign(
        self, relation: Relation, left_id: str, right_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        """Remove an edge; removing a missing edge is a successful no-op."""
        mutation = Mutation(f"unassign_{relation.value}", relation.value.split("_")[0], left_id, actor_id, {"target_id": right_id})

        async def work(store: EntityStore, m: Mutation) -> bool:
            m.affected_users |= await self._edge_holders(store, relation, left_id)
            m.advance(MutationState.APPLYING)
            m.changed = await store.unassign(relation, left_id, right_id)
            return m.changed

        return await self._submit(mutation, work)


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: getattr(value, "value", value) for key, value in fields.items()}
