"""Shared fixtures for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

import pytest

from tagwarden.config import Settings

if TYPE_CHECKING:
    from collections.abc import Callable

# Standard UUIDs for test references
SAMPLE_ORG_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_ORG_ID = UUID("87654321-4321-8765-4321-876543218765")


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings without reading any .env file."""

    def _make(**overrides: Any) -> Settings:
        return Settings(_env_file=None, **overrides)  # type: ignore[call-arg]

    return _make
