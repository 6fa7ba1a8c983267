"""Shared pytest fixtures for governance engine tests."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio
from sqlmodel import SQLModel

from tagwarden.cache import set_cache_gateway
from tagwarden.config import get_settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path
    from uuid import UUID

_SETTINGS_PREFIXES = ("DATABASE__", "CACHE__", "GOVERNANCE__", "DEV__")


@dataclass
class RecordingGateway:
    """Cache gateway that remembers every invalidation it receives."""

    calls: list[tuple[Any, ...]] = field(default_factory=list)

    def invalidate_tenant_tags(
        self, organization_id: UUID, entity_kind: str | None = None
    ) -> None:
        self.calls.append(("tags", organization_id, entity_kind))

    def invalidate_tenant_groups(self, organization_id: UUID) -> None:
        self.calls.append(("groups", organization_id))

    def invalidate_effective_config(self, organization_id: UUID) -> None:
        self.calls.append(("effective", organization_id))

    def invalidate_system_defaults(self) -> None:
        self.calls.append(("system",))

    def kinds(self) -> list[str]:
        return [call[0] for call in self.calls]

    def reset(self) -> None:
        self.calls.clear()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Every test sees default settings, whatever the developer's shell has."""
    for key in list(os.environ):
        if key.startswith(_SETTINGS_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def gateway() -> Iterator[RecordingGateway]:
    """Install a recording cache gateway for the duration of a test."""
    recorder = RecordingGateway()
    set_cache_gateway(recorder)
    yield recorder
    set_cache_gateway(None)


@pytest_asyncio.fixture
async def db(
    tmp_path: Path,
    gateway: RecordingGateway,  # noqa: ARG001
) -> AsyncIterator[None]:
    """A fresh SQLite store per test, schema created from SQLModel metadata."""
    import tagwarden.db.models  # noqa: F401, PLC0415
    from tagwarden.db.engine import close_db, get_engine, init_db

    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'governance.db'}")
    engine = get_engine()
    assert engine is not None
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield

    await close_db()
