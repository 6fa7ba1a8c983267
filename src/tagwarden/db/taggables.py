"""Association Layer: attach and detach tags on polymorphic entities.

Every write inserts or deletes Taggable rows and applies the matching
usage-count deltas in the same transaction. Deltas are always the number
of rows actually changed, so re-requesting an existing association is a
no-op rather than a double count.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.db.engine import get_session
from tagwarden.db.entities import EntityRef, parse_entity_kind, require_entities
from tagwarden.db.models import Tag, Taggable
from tagwarden.db.tags import apply_usage_deltas
from tagwarden.errors import Forbidden, NotFound

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from tagwarden.db.models import EntityKind

logger = logging.getLogger(__name__)


async def require_tags(
    session: AsyncSession, tag_ids: Iterable[UUID], organization_id: UUID
) -> list[UUID]:
    """Deduplicate *tag_ids* and check each one belongs to the tenant.

    Raises:
        NotFound: A tag does not exist.
        Forbidden: A tag belongs to another tenant.
    """
    ids = list(dict.fromkeys(tag_ids))
    if not ids:
        return ids

    result = await session.exec(
        select(Tag.id, Tag.organization_id).where(col(Tag.id).in_(ids))
    )
    owners = dict(result.all())
    for tag_id in ids:
        if tag_id not in owners:
            msg = f"Tag {tag_id} not found"
            raise NotFound(msg)
        if owners[tag_id] != organization_id:
            msg = f"Tag {tag_id} belongs to another organization"
            raise Forbidden(msg)
    return ids


async def _existing_pairs(
    session: AsyncSession, refs: Sequence[EntityRef], tag_ids: Sequence[UUID]
) -> dict[tuple[UUID, EntityRef], UUID]:
    """Map ``(tag_id, ref)`` to Taggable id for rows that already exist."""
    wanted = set(refs)
    result = await session.exec(
        select(Taggable.id, Taggable.tag_id, Taggable.entity_kind, Taggable.entity_id)
        .where(col(Taggable.tag_id).in_(tag_ids))
        .where(col(Taggable.entity_id).in_(list({ref.id for ref in refs})))
    )
    existing: dict[tuple[UUID, EntityRef], UUID] = {}
    for row_id, tag_id, kind, entity_id in result.all():
        ref = EntityRef.of(kind, entity_id)
        if ref in wanted:
            existing[(tag_id, ref)] = row_id
    return existing


async def _attach(
    session: AsyncSession,
    refs: Sequence[EntityRef],
    tag_ids: Sequence[UUID],
    organization_id: UUID,
) -> list[tuple[UUID, EntityRef]]:
    """Insert the missing associations and bump usage for them only."""
    if not refs or not tag_ids:
        return []

    existing = await _existing_pairs(session, refs, tag_ids)
    inserted = [
        (tag_id, ref)
        for ref in refs
        for tag_id in tag_ids
        if (tag_id, ref) not in existing
    ]
    for tag_id, ref in inserted:
        session.add(
            Taggable(
                tag_id=tag_id,
                entity_kind=ref.kind,
                entity_id=ref.id,
                organization_id=organization_id,
            )
        )
    await session.flush()
    await apply_usage_deltas(session, Counter(tag_id for tag_id, _ in inserted))
    return inserted


async def _detach(
    session: AsyncSession, refs: Sequence[EntityRef], tag_ids: Sequence[UUID]
) -> list[tuple[UUID, EntityRef]]:
    """Delete the matching associations and decrement usage for them only."""
    if not refs or not tag_ids:
        return []

    existing = await _existing_pairs(session, refs, tag_ids)
    if existing:
        await session.execute(
            delete(Taggable).where(col(Taggable.id).in_(list(existing.values())))
        )
    removed = list(existing)
    counts = Counter(tag_id for tag_id, _ in removed)
    await apply_usage_deltas(session, {tag_id: -n for tag_id, n in counts.items()})
    return removed


def _dedupe_refs(entities: Iterable[EntityRef]) -> list[EntityRef]:
    return list(dict.fromkeys(entities))


def _notify(organization_id: UUID, refs: Sequence[EntityRef]) -> None:
    kinds = {ref.kind for ref in refs}
    kind = next(iter(kinds)) if len(kinds) == 1 else None
    get_cache_gateway().invalidate_tenant_tags(organization_id, kind)


# ── Single entity ────────────────────────────────────────────────────


async def attach_tags(
    entity_kind: EntityKind | str,
    entity_id: UUID,
    tag_ids: Iterable[UUID],
    organization_id: UUID,
) -> list[UUID]:
    """Attach tags to one entity.

    Idempotent: tags already on the entity are skipped and their usage
    count is left alone.

    Returns
    -------
    list[UUID]
        Ids of the tags that were newly attached.
    """
    ref = EntityRef.of(entity_kind, entity_id)
    async with get_session() as session:
        await require_entities(session, [ref], organization_id)
        ids = await require_tags(session, tag_ids, organization_id)
        inserted = await _attach(session, [ref], ids, organization_id)

    _notify(organization_id, [ref])
    logger.debug("Attached %d tag(s) to %s %s", len(inserted), ref.kind, ref.id)
    return [tag_id for tag_id, _ in inserted]


async def detach_tags(
    entity_kind: EntityKind | str,
    entity_id: UUID,
    tag_ids: Iterable[UUID],
    organization_id: UUID,
) -> list[UUID]:
    """Detach tags from one entity.

    Returns
    -------
    list[UUID]
        Ids of the tags that were actually removed.
    """
    ref = EntityRef.of(entity_kind, entity_id)
    async with get_session() as session:
        await require_entities(session, [ref], organization_id)
        ids = await require_tags(session, tag_ids, organization_id)
        removed = await _detach(session, [ref], ids)

    _notify(organization_id, [ref])
    logger.debug("Detached %d tag(s) from %s %s", len(removed), ref.kind, ref.id)
    return [tag_id for tag_id, _ in removed]


async def set_entity_tags(
    entity_kind: EntityKind | str,
    entity_id: UUID,
    tag_ids: Iterable[UUID],
    organization_id: UUID,
) -> tuple[list[UUID], list[UUID]]:
    """Replace an entity's tag set with exactly *tag_ids*.

    Returns ``(attached, detached)`` tag ids.
    """
    ref = EntityRef.of(entity_kind, entity_id)
    async with get_session() as session:
        await require_entities(session, [ref], organization_id)
        wanted = await require_tags(session, tag_ids, organization_id)

        result = await session.exec(
            select(Taggable.tag_id).where(
                Taggable.entity_kind == ref.kind, Taggable.entity_id == ref.id
            )
        )
        keep = set(wanted)
        stale = [tag_id for tag_id in result.all() if tag_id not in keep]

        removed = await _detach(session, [ref], stale)
        inserted = await _attach(session, [ref], wanted, organization_id)

    _notify(organization_id, [ref])
    return [tag_id for tag_id, _ in inserted], [tag_id for tag_id, _ in removed]


# ── Bulk ─────────────────────────────────────────────────────────────


async def bulk_attach(
    entities: Iterable[EntityRef],
    tag_ids: Iterable[UUID],
    organization_id: UUID,
) -> int:
    """Attach every tag to every entity in one transaction.

    Returns the number of associations actually inserted, which is also
    the total usage-count increase.
    """
    refs = _dedupe_refs(entities)
    async with get_session() as session:
        await require_entities(session, refs, organization_id)
        ids = await require_tags(session, tag_ids, organization_id)
        inserted = await _attach(session, refs, ids, organization_id)

    _notify(organization_id, refs)
    logger.info(
        "Bulk attach: %d association(s) across %d entities for org=%s",
        len(inserted),
        len(refs),
        organization_id,
    )
    return len(inserted)


async def bulk_detach(
    entities: Iterable[EntityRef],
    tag_ids: Iterable[UUID],
    organization_id: UUID,
) -> int:
    """Detach every tag from every entity in one transaction.

    Returns the number of associations actually removed.
    """
    refs = _dedupe_refs(entities)
    async with get_session() as session:
        await require_entities(session, refs, organization_id)
        ids = await require_tags(session, tag_ids, organization_id)
        removed = await _detach(session, refs, ids)

    _notify(organization_id, refs)
    logger.info(
        "Bulk detach: %d association(s) across %d entities for org=%s",
        len(removed),
        len(refs),
        organization_id,
    )
    return len(removed)


# ── Queries ──────────────────────────────────────────────────────────


async def list_entities_for_tag(
    tag_id: UUID,
    organization_id: UUID,
    entity_kind: EntityKind | str | None = None,
) -> list[EntityRef]:
    """List the entities carrying a tag, oldest association first."""
    stmt = select(Taggable.entity_kind, Taggable.entity_id).where(
        Taggable.tag_id == tag_id
    )
    if entity_kind is not None:
        stmt = stmt.where(Taggable.entity_kind == parse_entity_kind(entity_kind))

    async with get_session() as session:
        await require_tags(session, [tag_id], organization_id)
        result = await session.exec(
            stmt.order_by(col(Taggable.created_at), col(Taggable.id))
        )
        return [EntityRef.of(kind, entity_id) for kind, entity_id in result.all()]
