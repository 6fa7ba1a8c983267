"""Tag Merge/Delete Operator.

Folds one tag into another without breaking the association uniqueness
rule or the usage counters, and re-exports the cascading delete so both
destructive tag operations live behind one import.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, update
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.db.engine import get_session
from tagwarden.db.models import Taggable, _utcnow
from tagwarden.db.tags import apply_usage_deltas, delete_tag, load_tag
from tagwarden.errors import Forbidden, ValidationError

if TYPE_CHECKING:
    from uuid import UUID

    from tagwarden.db.models import Tag

logger = logging.getLogger(__name__)

delete_tag_cascade = delete_tag


@dataclass(frozen=True)
class MergeResult:
    """Outcome of folding a source tag into a target tag.

    Attributes:
        tag: The surviving target tag, refreshed after the merge.
        repointed: Associations moved from source to target.
        collapsed: Source associations dropped because the entity
            already carried the target.
    """

    tag: Tag
    repointed: int
    collapsed: int


async def merge_tags(
    source_tag_id: UUID, target_tag_id: UUID, organization_id: UUID
) -> MergeResult:
    """Merge *source* into *target* and delete the source tag.

    Every entity tagged with the source ends up tagged with the target
    exactly once. The target's usage count grows by the number of rows
    actually re-pointed, never by the source's stored count.

    Raises
    ------
    ValidationError
        Source and target are the same tag.
    NotFound
        Either tag is absent from the organization.
    Forbidden
        The source is a system tag.
    """
    if source_tag_id == target_tag_id:
        msg = "Cannot merge a tag into itself"
        raise ValidationError(msg)

    async with get_session() as session:
        source = await load_tag(session, source_tag_id, organization_id)
        target = await load_tag(session, target_tag_id, organization_id)
        if source.is_system:
            msg = f"System tag {source.name!r} cannot be merged away"
            raise Forbidden(msg)

        held = await session.exec(
            select(Taggable.entity_kind, Taggable.entity_id).where(
                Taggable.tag_id == target.id
            )
        )
        target_keys = {(kind, entity_id) for kind, entity_id in held.all()}

        rows = await session.exec(
            select(Taggable.id, Taggable.entity_kind, Taggable.entity_id).where(
                Taggable.tag_id == source.id
            )
        )
        moved: list[UUID] = []
        dropped: list[UUID] = []
        for row_id, kind, entity_id in rows.all():
            (dropped if (kind, entity_id) in target_keys else moved).append(row_id)

        if dropped:
            await session.execute(delete(Taggable).where(col(Taggable.id).in_(dropped)))
        if moved:
            await session.execute(
                update(Taggable)
                .where(col(Taggable.id).in_(moved))
                .values(tag_id=target.id)
                .execution_options(synchronize_session=False)
            )
        await apply_usage_deltas(session, {target.id: len(moved)})

        target.updated_at = _utcnow()
        session.add(target)
        await session.delete(source)
        await session.flush()
        await session.refresh(target)

    get_cache_gateway().invalidate_tenant_tags(organization_id)
    logger.info(
        "Merged tag %s (%s) into %s (%s): %d re-pointed, %d collapsed, org=%s",
        source.id,
        source.name,
        target.id,
        target.name,
        len(moved),
        len(dropped),
        organization_id,
    )
    return MergeResult(tag=target, repointed=len(moved), collapsed=len(dropped))


__all__ = ["MergeResult", "delete_tag", "delete_tag_cascade", "merge_tags"]
