"""Tests for the cache invalidation gateway implementations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, patch

import pytest

from tests.unit.conftest import OTHER_ORG_ID, SAMPLE_ORG_ID

if TYPE_CHECKING:
    from pytest import LogCaptureFixture


@pytest.fixture
def cache():
    from tagwarden.cache import InMemoryReadCache

    store = InMemoryReadCache(ttl_seconds=60)
    store.set(("tags", SAMPLE_ORG_ID, "asset"), ["Prod"])
    store.set(("tags", SAMPLE_ORG_ID, "incident"), ["Urgent"])
    store.set(("tags", SAMPLE_ORG_ID), ["Prod", "Urgent"])
    store.set(("groups", SAMPLE_ORG_ID), ["Servers"])
    store.set(("effective", SAMPLE_ORG_ID, "dropdowns"), ["Severity"])
    store.set(("tags", OTHER_ORG_ID), ["Theirs"])
    store.set(("effective", OTHER_ORG_ID, "dropdowns"), ["Theirs"])
    store.set(("system", "dropdowns"), ["Severity"])
    return store


class TestInMemoryReadCache:
    def test_tag_invalidation_is_tenant_scoped(self, cache) -> None:
        cache.invalidate_tenant_tags(SAMPLE_ORG_ID)

        assert cache.get(("tags", SAMPLE_ORG_ID)) is None
        assert cache.get(("tags", SAMPLE_ORG_ID, "asset")) is None
        assert cache.get(("effective", SAMPLE_ORG_ID, "dropdowns")) is None
        assert cache.get(("groups", SAMPLE_ORG_ID)) == ["Servers"]
        assert cache.get(("tags", OTHER_ORG_ID)) == ["Theirs"]

    def test_kind_scoped_tag_invalidation(self, cache) -> None:
        """Only the named kind and the kind-less tenant keys are dropped."""
        cache.invalidate_tenant_tags(SAMPLE_ORG_ID, "asset")

        assert cache.get(("tags", SAMPLE_ORG_ID, "asset")) is None
        assert cache.get(("tags", SAMPLE_ORG_ID)) is None
        assert cache.get(("tags", SAMPLE_ORG_ID, "incident")) == ["Urgent"]

    def test_group_invalidation(self, cache) -> None:
        cache.invalidate_tenant_groups(SAMPLE_ORG_ID)

        assert cache.get(("groups", SAMPLE_ORG_ID)) is None
        assert cache.get(("tags", SAMPLE_ORG_ID)) == ["Prod", "Urgent"]

    def test_effective_invalidation(self, cache) -> None:
        cache.invalidate_effective_config(SAMPLE_ORG_ID)

        assert cache.get(("effective", SAMPLE_ORG_ID, "dropdowns")) is None
        assert cache.get(("effective", OTHER_ORG_ID, "dropdowns")) == ["Theirs"]

    def test_system_invalidation_reaches_every_tenant(self, cache) -> None:
        cache.invalidate_system_defaults()

        assert cache.get(("system", "dropdowns")) is None
        assert cache.get(("effective", SAMPLE_ORG_ID, "dropdowns")) is None
        assert cache.get(("effective", OTHER_ORG_ID, "dropdowns")) is None
        assert cache.get(("tags", OTHER_ORG_ID)) == ["Theirs"]

    def test_entries_expire(self) -> None:
        from tagwarden.cache import InMemoryReadCache

        store = InMemoryReadCache(ttl_seconds=10)
        with patch("tagwarden.cache.time.monotonic", return_value=100.0):
            store.set(("groups", SAMPLE_ORG_ID), ["Servers"])
        with patch("tagwarden.cache.time.monotonic", return_value=111.0):
            assert store.get(("groups", SAMPLE_ORG_ID)) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_get_or_set_fetches_once(self) -> None:
        from tagwarden.cache import InMemoryReadCache

        store = InMemoryReadCache()
        fetch = AsyncMock(return_value=["Prod"])
        key = ("tags", SAMPLE_ORG_ID)

        first = await store.get_or_set(key, fetch)
        second = await store.get_or_set(key, fetch)

        assert first == second == ["Prod"]
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self) -> None:
        from tagwarden.cache import InMemoryReadCache

        store = InMemoryReadCache()
        fetch = AsyncMock(return_value=None)
        key = ("effective", SAMPLE_ORG_ID, "missing")

        assert await store.get_or_set(key, fetch) is None
        assert await store.get_or_set(key, fetch) is None
        fetch.assert_awaited_once()
        assert store.get(key, "absent") is None

    def test_set_sweeps_expired_entries(self) -> None:
        from tagwarden.cache import InMemoryReadCache

        store = InMemoryReadCache(ttl_seconds=10)
        with patch("tagwarden.cache.time.monotonic", return_value=100.0):
            store.set(("groups", SAMPLE_ORG_ID), ["Servers"])
            store.set(("groups", OTHER_ORG_ID), ["Theirs"])
        with patch("tagwarden.cache.time.monotonic", return_value=111.0):
            store.set(("tags", SAMPLE_ORG_ID), ["Prod"])

        assert len(store) == 1


class TestGatewaySelection:
    def test_default_is_logging_gateway(self) -> None:
        from tagwarden.cache import (
            LoggingCacheGateway,
            get_cache_gateway,
            set_cache_gateway,
        )

        set_cache_gateway(None)
        try:
            assert isinstance(get_cache_gateway(), LoggingCacheGateway)
            assert get_cache_gateway() is get_cache_gateway()
        finally:
            set_cache_gateway(None)

    def test_memory_backend_from_settings(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from tagwarden.cache import (
            InMemoryReadCache,
            get_cache_gateway,
            set_cache_gateway,
        )
        from tagwarden.config import get_settings

        monkeypatch.setenv("CACHE__BACKEND", "memory")
        monkeypatch.setenv("CACHE__TTL_SECONDS", "5")
        get_settings.cache_clear()
        set_cache_gateway(None)
        try:
            gateway = get_cache_gateway()
            assert isinstance(gateway, InMemoryReadCache)
            assert gateway.ttl_seconds == 5
        finally:
            set_cache_gateway(None)

    def test_logging_gateway_logs(self, caplog: LogCaptureFixture) -> None:
        from tagwarden.cache import LoggingCacheGateway

        with caplog.at_level(logging.DEBUG, logger="tagwarden.cache"):
            LoggingCacheGateway().invalidate_tenant_tags(SAMPLE_ORG_ID, "asset")

        assert f"org={SAMPLE_ORG_ID} kind=asset" in caplog.text
