"""
Authorization service: the single decision point for "can this user do this?".

Effective permission sets are cached per user as immutable entries tagged
with an epoch. Invalidation bumps the epoch and drops the entry; it never
edits a cached set in place. Concurrent cache misses for one user share a
single resolution, and a resolution that started before an invalidation is
returned to its own waiters but never stored.

``can`` and ``simulate`` fail closed: unknown users, unknown actions and
store failures all produce a denial, never an exception.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, NamedTuple, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.errors import NotFound
from app.features.permissions.capabilities import Action, Capability
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.store import EntityStore
from app.utils import get_logger


log = get_logger(__name__)

# (global generation, per-user epoch)
Epoch = Tuple[int, int]


class CacheEntry(NamedTuple):
    permissions: FrozenSet[Capability]
    epoch: Epoch
    loaded_at: float


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str


@dataclass(frozen=True)
class _InFlight:
    epoch: Epoch
    task: "asyncio.Task[FrozenSet[Capability]]"


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters may all have been cancelled; mark the error as retrieved
    if not task.cancelled():
        task.exception()


class AuthorizationService:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        ttl: float = config.AUTHZ_CACHE_TTL_SECONDS,
        max_entries: int = config.AUTHZ_CACHE_MAX_ENTRIES,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self._ttl = ttl
        self._max_entries = max_entries
        self._timeout = timeout

        self._entries: Dict[str, CacheEntry] = {}
        self._epochs: Dict[str, int] = {}
        self._generation = 0
        self._inflight: Dict[str, _InFlight] = {}

        self.resolutions = 0

    # ------------------------------------------------------------------
    # Cache bookkeeping
    # ------------------------------------------------------------------

    def _epoch(self, user_id: str) -> Epoch:
        return (self._generation, self._epochs.get(user_id, 0))

    def _fresh(self, entry: CacheEntry, epoch: Epoch) -> bool:
        if entry.epoch != epoch:
            return False
        return self._ttl <= 0 or time.monotonic() - entry.loaded_at < self._ttl

    def _remember(self, user_id: str, entry: CacheEntry) -> None:
        if user_id not in self._entries and len(self._entries) >= self._max_entries:
            # Evict the oldest insertion
            self._entries.pop(next(iter(self._entries)), None)
        self._entries[user_id] = entry

    def cached(self, user_id: str) -> Optional[FrozenSet[Capability]]:
        """The cached set for a user if it is still valid."""
        entry = self._entries.get(user_id)
        if entry is not None and self._fresh(entry, self._epoch(user_id)):
            return entry.permissions
        return None

    def invalidate(self, user_ids: Iterable[str]) -> None:
        """Drop cached sets; the next read for each user recomputes."""
        count = 0
        for user_id in user_ids:
            self._epochs[user_id] = self._epochs.get(user_id, 0) + 1
            self._entries.pop(user_id, None)
            self._inflight.pop(user_id, None)
            count += 1
        if count:
            log.debug("Invalidated cached permissions for %d user(s)", count)
        if len(self._epochs) > self._max_entries:
            # Per-user epochs only reset together with a generation bump
            self.invalidate_all()

    def invalidate_all(self) -> None:
        self._generation += 1
        self._entries = {}
        self._epochs = {}
        self._inflight = {}
        log.debug("Invalidated all cached permissions")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _compute(self, user_id: str) -> FrozenSet[Capability]:
        self.resolutions += 1
        async with self._session_factory() as session:
            resolver = PermissionResolver(EntityStore(session, self._timeout))
            return await resolver.resolve(user_id)

    async def _load(self, user_id: str, epoch: Epoch) -> FrozenSet[Capability]:
        try:
            permissions = await self._compute(user_id)
        finally:
            current = self._inflight.get(user_id)
            if current is not None and current.task is asyncio.current_task():
                del self._inflight[user_id]
        if self._epoch(user_id) == epoch:
            self._remember(user_id, CacheEntry(permissions, epoch, time.monotonic()))
        else:
            log.debug("Discarding resolution for user %s started before invalidation", user_id)
        return permissions

    async def resolve(self, user_id: str) -> FrozenSet[Capability]:
        """
        Effective permission set for a user, from cache when valid.

        Raises NotFound for an unknown user; store failures propagate.
        """
        epoch = self._epoch(user_id)
        entry = self._entries.get(user_id)
        if entry is not None and self._fresh(entry, epoch):
            return entry.permissions

        inflight = self._inflight.get(user_id)
        if inflight is None or inflight.epoch != epoch:
            task = asyncio.ensure_future(self._load(user_id, epoch))
            task.add_done_callback(_consume_exception)
            inflight = _InFlight(epoch, task)
            self._inflight[user_id] = inflight
        # Shielded so one cancelled caller does not cancel the shared work
        return await asyncio.shield(inflight.task)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def can(self, user_id: Optional[str], module: str, action: Action | str) -> bool:
        """True only if ``(module, action)`` is in the user's effective set."""
        if not user_id:
            return False
        try:
            capability = Capability(module, Action(action))
        except ValueError:
            log.debug("Denied unknown action %r on %s", action, module)
            return False

        try:
            permissions = await self.resolve(user_id)
        except NotFound:
            log.debug("Denied %s for unknown user %s", capability, user_id)
            return False
        except Exception:
            log.warning("Authorization check for user %s failed; denying %s", user_id, capability, exc_info=True)
            return False

        allowed = capability in permissions
        log.debug("User %s %s %s", user_id, "granted" if allowed else "denied", capability)
        return allowed

    async def simulate(self, user_id: Optional[str], module: str, action: Action | str) -> Decision:
        """
        Same decision as ``can`` with the reason behind it.

        Re-walks the graph in explain mode without touching the cache.
        """
        try:
            capability = Capability(module, Action(action))
        except ValueError:
            return Decision(False, f"unknown action {action!r}")
        if not user_id:
            return Decision(False, "principal is not a registered user")

        try:
            async with self._session_factory() as session:
                resolver = PermissionResolver(EntityStore(session, self._timeout))
                paths = await resolver.explain(user_id, capability)
        except NotFound:
            return Decision(False, f"user {user_id} does not exist")
        except Exception:
            log.warning("Simulation for user %s failed; denying %s", user_id, capability, exc_info=True)
            return Decision(False, "authorization check failed; denied by default")

        if not paths:
            return Decision(False, f"no role grants {capability}")
        reason = "; ".join(f"granted via Role {path.role} through Group {path.group}" for path in paths)
        return Decision(True, reason)
