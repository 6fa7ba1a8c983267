"""Counter reconciliation and membership expiry.

The denormalized counters are kept exact by the write paths; these jobs
recompute them from source rows to detect and repair drift introduced
outside the engine (manual SQL, restored backups). They also prune group
memberships whose ``expires_at`` has passed.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, update
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.db.engine import get_session
from tagwarden.db.groups import apply_member_delta
from tagwarden.db.models import AssetGroup, AssetGroupMember, Tag, Taggable, _utcnow

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Drift:
    """A counter whose stored value disagreed with its source rows."""

    id: UUID
    organization_id: UUID
    stored: int
    actual: int


async def reconcile_usage_counts(organization_id: UUID | None = None) -> list[Drift]:
    """Recompute ``Tag.usage_count`` from Taggable rows and fix any drift.

    Scoped to one tenant when *organization_id* is given, else all tenants.
    Returns the corrected tags.
    """
    actual = (
        select(Taggable.tag_id, func.count(col(Taggable.id)).label("n"))
        .group_by(col(Taggable.tag_id))
        .subquery()
    )
    stmt = select(
        Tag.id,
        Tag.organization_id,
        Tag.usage_count,
        func.coalesce(actual.c.n, 0),
    ).outerjoin(actual, actual.c.tag_id == col(Tag.id))
    if organization_id is not None:
        stmt = stmt.where(Tag.organization_id == organization_id)

    async with get_session() as session:
        result = await session.exec(stmt)
        drift = [
            Drift(tag_id, org_id, stored, count)
            for tag_id, org_id, stored, count in result.all()
            if stored != count
        ]
        for item in drift:
            await session.execute(
                update(Tag)
                .where(col(Tag.id) == item.id)
                .values(usage_count=item.actual)
                .execution_options(synchronize_session=False)
            )

    for org_id in {item.organization_id for item in drift}:
        get_cache_gateway().invalidate_tenant_tags(org_id)
    if drift:
        logger.warning("Corrected usage_count drift on %d tag(s)", len(drift))
    return drift


async def reconcile_member_counts(organization_id: UUID | None = None) -> list[Drift]:
    """Recompute ``AssetGroup.member_count`` from memberships and fix drift."""
    actual = (
        select(
            AssetGroupMember.group_id,
            func.count(col(AssetGroupMember.id)).label("n"),
        )
        .group_by(col(AssetGroupMember.group_id))
        .subquery()
    )
    stmt = select(
        AssetGroup.id,
        AssetGroup.organization_id,
        AssetGroup.member_count,
        func.coalesce(actual.c.n, 0),
    ).outerjoin(actual, actual.c.group_id == col(AssetGroup.id))
    if organization_id is not None:
        stmt = stmt.where(AssetGroup.organization_id == organization_id)

    async with get_session() as session:
        result = await session.exec(stmt)
        drift = [
            Drift(group_id, org_id, stored, count)
            for group_id, org_id, stored, count in result.all()
            if stored != count
        ]
        for item in drift:
            await session.execute(
                update(AssetGroup)
                .where(col(AssetGroup.id) == item.id)
                .values(member_count=item.actual)
                .execution_options(synchronize_session=False)
            )

    for org_id in {item.organization_id for item in drift}:
        get_cache_gateway().invalidate_tenant_groups(org_id)
    if drift:
        logger.warning("Corrected member_count drift on %d group(s)", len(drift))
    return drift


async def prune_expired_memberships(
    now: datetime | None = None, organization_id: UUID | None = None
) -> int:
    """Delete memberships whose ``expires_at`` is at or before *now*.

    Group counters are decremented in the same transaction. Returns the
    number of memberships removed.
    """
    now = now or _utcnow()
    stmt = (
        select(
            AssetGroupMember.id,
            AssetGroupMember.group_id,
            AssetGroup.organization_id,
        )
        .join(AssetGroup, col(AssetGroup.id) == col(AssetGroupMember.group_id))
        .where(
            col(AssetGroupMember.expires_at).is_not(None),
            col(AssetGroupMember.expires_at) <= now,
        )
    )
    if organization_id is not None:
        stmt = stmt.where(AssetGroup.organization_id == organization_id)

    async with get_session() as session:
        rows = list((await session.exec(stmt)).all())
        if rows:
            await session.execute(
                delete(AssetGroupMember).where(
                    col(AssetGroupMember.id).in_([row_id for row_id, _, _ in rows])
                )
            )
        per_group = Counter(group_id for _, group_id, _ in rows)
        for group_id, removed in per_group.items():
            await apply_member_delta(session, group_id, -removed)

    for org_id in {org_id for _, _, org_id in rows}:
        get_cache_gateway().invalidate_tenant_groups(org_id)
    if rows:
        logger.info("Pruned %d expired membership(s)", len(rows))
    return len(rows)
