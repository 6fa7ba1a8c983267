"""Tests for tagwarden.config -- Settings and its sub-models.

Every test constructs Settings(_env_file=None, ...) to avoid reading real .env files.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from tagwarden.config import (
    CacheConfig,
    DatabaseConfig,
    GovernanceConfig,
    get_settings,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from tagwarden.config import Settings


class TestDefaults:
    def test_defaults_without_env(self, make_settings: Callable[..., Settings]) -> None:
        s = make_settings()

        assert s.database.url is None
        assert s.database.pool_size == 5
        assert s.cache.backend == "logging"
        assert s.cache.ttl_seconds == 300
        assert s.governance.default_tag_color == "#6B7280"
        assert s.governance.max_group_depth == 64
        assert s.dev.database_echo is False

    def test_explicit_sub_models(self, make_settings: Callable[..., Settings]) -> None:
        s = make_settings(
            database=DatabaseConfig(url="postgresql+asyncpg://u:p@h/db"),
            cache=CacheConfig(backend="memory", ttl_seconds=30),
        )

        assert s.database.url == "postgresql+asyncpg://u:p@h/db"
        assert s.cache.backend == "memory"
        assert s.cache.ttl_seconds == 30


class TestEnvironment:
    def test_nested_delimiter(
        self,
        monkeypatch: pytest.MonkeyPatch,
        make_settings: Callable[..., Settings],
    ) -> None:
        """GOVERNANCE__MAX_GROUP_DEPTH populates the nested field."""
        monkeypatch.setenv("GOVERNANCE__MAX_GROUP_DEPTH", "8")
        monkeypatch.setenv("CACHE__BACKEND", "memory")

        s = make_settings()

        assert s.governance.max_group_depth == 8
        assert s.cache.backend == "memory"

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_cache_clear_rereads_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        first = get_settings()
        monkeypatch.setenv("DATABASE__POOL_SIZE", "12")
        get_settings.cache_clear()

        second = get_settings()

        assert second is not first
        assert second.database.pool_size == 12


class TestValidation:
    @pytest.mark.parametrize("color", ["red", "#FFF", "#GGGGGG", "6B7280"])
    def test_default_color_must_be_hex(self, color: str) -> None:
        with pytest.raises(ValidationError):
            GovernanceConfig(default_tag_color=color)

    def test_unknown_cache_backend_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CacheConfig(backend="redis")  # type: ignore[arg-type]

    def test_int_coercion_from_string(self) -> None:
        cfg = GovernanceConfig(max_group_depth="16")  # type: ignore[arg-type]
        assert cfg.max_group_depth == 16
