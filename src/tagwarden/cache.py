"""Cache invalidation gateway.

The engine holds no read caches itself. After every successful mutation
it synchronously tells the gateway which tenant-scoped state changed so
downstream read caches can be dropped before the call returns.

Two implementations ship with the engine: ``LoggingCacheGateway`` (records
invalidations in the log only) and ``InMemoryReadCache`` (a TTL read cache
for single-process deployments). Select one with ``CACHE__BACKEND`` or
install a custom one with ``set_cache_gateway()``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from tagwarden.config import get_settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable
    from uuid import UUID

logger = logging.getLogger(__name__)

TAGS = "tags"
GROUPS = "groups"
EFFECTIVE = "effective"
SYSTEM = "system"


class CacheGatewayProtocol(Protocol):
    """Interface the engine notifies after tenant-scoped mutations."""

    def invalidate_tenant_tags(
        self, organization_id: UUID, entity_kind: str | None = None
    ) -> None:
        """Tags or taggings of a tenant changed (optionally for one kind)."""
        ...

    def invalidate_tenant_groups(self, organization_id: UUID) -> None:
        """Asset groups or memberships of a tenant changed."""
        ...

    def invalidate_effective_config(self, organization_id: UUID) -> None:
        """Merged dropdowns/templates/effective tags of a tenant changed."""
        ...

    def invalidate_system_defaults(self) -> None:
        """System-level reference data changed; every tenant is affected."""
        ...


class LoggingCacheGateway:
    """Gateway that only records invalidations in the log."""

    def invalidate_tenant_tags(
        self, organization_id: UUID, entity_kind: str | None = None
    ) -> None:
        logger.debug(
            "Invalidate tags org=%s kind=%s", organization_id, entity_kind or "*"
        )

    def invalidate_tenant_groups(self, organization_id: UUID) -> None:
        logger.debug("Invalidate groups org=%s", organization_id)

    def invalidate_effective_config(self, organization_id: UUID) -> None:
        logger.debug("Invalidate effective config org=%s", organization_id)

    def invalidate_system_defaults(self) -> None:
        logger.debug("Invalidate system defaults")


_MISSING = object()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class InMemoryReadCache:
    """Process-local TTL cache keyed by ``(namespace, organization_id, *rest)``.

    Reads go through ``get_or_set``; invalidations drop every key of the
    affected namespace for the tenant. System-default invalidation clears
    the ``effective`` and ``system`` namespaces for all tenants.
    """

    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: dict[tuple[Hashable, ...], _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: tuple[Hashable, ...]) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if time.monotonic() >= entry.expires_at:
            del self._entries[key]
            return _MISSING
        return entry.value

    def get(self, key: tuple[Hashable, ...], default: Any = None) -> Any:
        value = self._lookup(key)
        return default if value is _MISSING else value

    def set(self, key: tuple[Hashable, ...], value: Any) -> None:
        now = time.monotonic()
        expired = [k for k, entry in self._entries.items() if now >= entry.expires_at]
        for stale in expired:
            del self._entries[stale]
        self._entries[key] = _Entry(value, now + self.ttl_seconds)

    async def get_or_set(
        self,
        key: tuple[Hashable, ...],
        fetch: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value for *key*, fetching and storing on a miss.

        A cached ``None`` is a hit.
        """
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached
        value = await fetch()
        self.set(key, value)
        return value

    def _drop(self, namespace: str, organization_id: UUID | None = None) -> int:
        doomed = [
            key
            for key in self._entries
            if key[0] == namespace
            and (organization_id is None or key[1] == organization_id)
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def invalidate_tenant_tags(
        self, organization_id: UUID, entity_kind: str | None = None
    ) -> None:
        if entity_kind is None:
            dropped = self._drop(TAGS, organization_id)
        else:
            doomed = [
                key
                for key in self._entries
                if key[:2] == (TAGS, organization_id)
                and (len(key) < 3 or key[2] in (entity_kind, None))
            ]
            for key in doomed:
                del self._entries[key]
            dropped = len(doomed)
        # Effective tags embed the tenant's tag rows.
        dropped += self._drop(EFFECTIVE, organization_id)
        logger.debug(
            "Dropped %d cached tag entries for org=%s", dropped, organization_id
        )

    def invalidate_tenant_groups(self, organization_id: UUID) -> None:
        dropped = self._drop(GROUPS, organization_id)
        logger.debug(
            "Dropped %d cached group entries for org=%s", dropped, organization_id
        )

    def invalidate_effective_config(self, organization_id: UUID) -> None:
        dropped = self._drop(EFFECTIVE, organization_id)
        logger.debug(
            "Dropped %d cached config entries for org=%s", dropped, organization_id
        )

    def invalidate_system_defaults(self) -> None:
        dropped = self._drop(EFFECTIVE) + self._drop(SYSTEM)
        logger.debug("Dropped %d cached system-default entries", dropped)


_gateway: CacheGatewayProtocol | None = None


def get_cache_gateway() -> CacheGatewayProtocol:
    """Return the process-wide gateway, building it from settings on first use."""
    global _gateway  # noqa: PLW0603
    if _gateway is None:
        cache = get_settings().cache
        if cache.backend == "memory":
            _gateway = InMemoryReadCache(ttl_seconds=cache.ttl_seconds)
        else:
            _gateway = LoggingCacheGateway()
    return _gateway


def set_cache_gateway(gateway: CacheGatewayProtocol | None) -> None:
    """Install a gateway (``None`` resets to the settings-derived default)."""
    global _gateway  # noqa: PLW0603
    _gateway = gateway
