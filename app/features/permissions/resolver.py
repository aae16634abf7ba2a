"""
Effective permission resolution.

A user's effective permission set is every (module, action) pair reachable
through User -> Groups -> Roles -> Permissions -> Module. The walk issues one
query per layer and expands each group and role once, even when a role is
reachable through several groups. There is no wildcard or superuser: a pair
that is not reachable is denied.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, NamedTuple, Set, Tuple

from app.core.errors import NotFound
from app.features.permissions.capabilities import Capability
from app.features.permissions.models import Group, Role
from app.features.permissions.store import EntityStore
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


class GrantPath(NamedTuple):
    """One route by which a user holds a capability."""
    group: str
    role: str


@dataclass
class _Walk:
    group_ids: List[str] = field(default_factory=list)
    roles_by_group: Dict[str, List[str]] = field(default_factory=dict)
    permissions_by_role: Dict[str, List[str]] = field(default_factory=dict)
    capabilities: Dict[str, Capability] = field(default_factory=dict)


class PermissionResolver:
    """Computes effective permission sets from the current graph state."""

    def __init__(self, store: EntityStore):
        self.store = store

    async def _walk(self, user_id: str) -> _Walk:
        if not await self.store.exists(User, user_id):
            raise NotFound(f"User {user_id} not found")

        walk = _Walk()
        seen_groups: Set[str] = set()
        for group_id in await self.store.group_ids_for_user(user_id):
            if group_id not in seen_groups:
                seen_groups.add(group_id)
                walk.group_ids.append(group_id)

        seen_roles: Set[str] = set()
        role_ids: List[str] = []
        for group_id, role_id in await self.store.group_role_edges(walk.group_ids):
            walk.roles_by_group.setdefault(group_id, []).append(role_id)
            if role_id not in seen_roles:
                seen_roles.add(role_id)
                role_ids.append(role_id)

        permission_ids: Set[str] = set()
        for role_id, permission_id in await self.store.role_permission_edges(role_ids):
            walk.permissions_by_role.setdefault(role_id, []).append(permission_id)
            permission_ids.add(permission_id)

        walk.capabilities = await self.store.capabilities(permission_ids)
        log.debug(
            "Resolved user %s: %d groups, %d roles, %d permissions",
            user_id, len(walk.group_ids), len(role_ids), len(permission_ids),
        )
        return walk

    async def resolve(self, user_id: str) -> FrozenSet[Capability]:
        """Effective permission set; raises NotFound for an unknown user."""
        walk = await self._walk(user_id)
        return frozenset(walk.capabilities.values())

    async def explain(self, user_id: str, capability: Capability) -> List[GrantPath]:
        """Every (group, role) path granting ``capability``, in membership order."""
        walk = await self._walk(user_id)
        granting = {pid for pid, cap in walk.capabilities.items() if cap == capability}
        if not granting:
            return []

        hits: List[Tuple[str, str]] = []
        for group_id in walk.group_ids:
            for role_id in walk.roles_by_group.get(group_id, []):
                if granting.intersection(walk.permissions_by_role.get(role_id, [])):
                    hits.append((group_id, role_id))

        group_names = await self.store.names(Group, {g for g, _ in hits})
        role_names = await self.store.names(Role, {r for _, r in hits})
        return [GrantPath(group_names.get(g, g), role_names.get(r, r)) for g, r in hits]
