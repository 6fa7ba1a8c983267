"""Tenant lifecycle.

Creating a tenant and provisioning its required default tags happen in a
single transaction: a tenant is never visible without its system tags.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tagwarden.cache import get_cache_gateway
from tagwarden.db.effective import notify_provisioned, provision_new_organization
from tagwarden.db.engine import get_session
from tagwarden.db.models import Organization, OrganizationStatus, _utcnow
from tagwarden.db.tags import require_organization, validate_name
from tagwarden.errors import ValidationError

if TYPE_CHECKING:
    from uuid import UUID

    from tagwarden.db.models import Tag

logger = logging.getLogger(__name__)


def parse_status(status: OrganizationStatus | str) -> OrganizationStatus:
    try:
        return OrganizationStatus(status)
    except ValueError:
        msg = f"Unknown organization status {status!r}"
        raise ValidationError(msg) from None


async def create_organization(
    name: str,
    *,
    status: OrganizationStatus | str = OrganizationStatus.TRIAL,
    provision: bool = True,
) -> tuple[Organization, list[Tag]]:
    """Create a tenant and, unless disabled, provision its default tags.

    Returns
    -------
    tuple[Organization, list[Tag]]
        The new tenant and the system tags created for it.
    """
    organization = Organization(
        name=validate_name(name, max_length=255),
        status=parse_status(status),
    )
    async with get_session() as session:
        session.add(organization)
        await session.flush()
        await session.refresh(organization)
        tags = (
            await provision_new_organization(organization.id, session=session)
            if provision
            else []
        )

    notify_provisioned(organization.id)
    logger.info(
        "Created organization %s (%s) with %d system tag(s)",
        organization.id,
        organization.name,
        len(tags),
    )
    return organization, tags


async def get_organization(organization_id: UUID) -> Organization:
    async with get_session() as session:
        return await require_organization(session, organization_id)


async def set_organization_status(
    organization_id: UUID, status: OrganizationStatus | str
) -> Organization:
    """Change a tenant's lifecycle status (trial, active, suspended)."""
    async with get_session() as session:
        organization = await require_organization(session, organization_id)
        organization.status = parse_status(status)
        organization.updated_at = _utcnow()
        session.add(organization)
        await session.flush()
        await session.refresh(organization)

    get_cache_gateway().invalidate_effective_config(organization_id)
    return organization
