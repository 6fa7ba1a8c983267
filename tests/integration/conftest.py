"""Fixtures for tests that run the engine against a real (SQLite) store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from uuid import UUID

    from tagwarden.db.models import Asset, Incident, Organization


@pytest_asyncio.fixture
async def org(db: None) -> Organization:  # noqa: ARG001
    """A tenant created without default-tag provisioning."""
    from tagwarden.db.organizations import create_organization

    organization, _ = await create_organization("Acme Response", provision=False)
    return organization


@pytest_asyncio.fixture
async def other_org(db: None) -> Organization:  # noqa: ARG001
    """A second tenant for cross-tenant checks."""
    from tagwarden.db.organizations import create_organization

    organization, _ = await create_organization("Globex", provision=False)
    return organization


@pytest.fixture
def make_asset(db: None) -> Callable[..., Awaitable[Asset]]:  # noqa: ARG001
    """Factory inserting an asset row for a tenant."""
    from tagwarden.db.engine import get_session
    from tagwarden.db.models import Asset

    async def _make(
        organization_id: UUID, name: str = "server", **fields: Any
    ) -> Asset:
        fields.setdefault("type", "server")
        async with get_session() as session:
            asset = Asset(organization_id=organization_id, name=name, **fields)
            session.add(asset)
            await session.flush()
            await session.refresh(asset)
            return asset

    return _make


@pytest.fixture
def make_incident(db: None) -> Callable[..., Awaitable[Incident]]:  # noqa: ARG001
    """Factory inserting an incident row for a tenant."""
    from tagwarden.db.engine import get_session
    from tagwarden.db.models import Incident

    async def _make(organization_id: UUID, title: str = "Outage") -> Incident:
        async with get_session() as session:
            incident = Incident(organization_id=organization_id, title=title)
            session.add(incident)
            await session.flush()
            await session.refresh(incident)
            return incident

    return _make
