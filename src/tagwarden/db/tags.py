"""Tag Store: tenant-scoped tag CRUD and the usage counter.

Tags are per-organization labels with a category and a colour. Names are
unique within an organization. System tags (provisioned from required
default tag sets) cannot be deleted and their name/category cannot be
changed by tenant users.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, delete, update
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.config import get_settings
from tagwarden.db.engine import get_session
from tagwarden.db.entities import EntityRef, require_entities
from tagwarden.db.models import Organization, Tag, Taggable, TagCategory, _utcnow
from tagwarden.errors import Conflict, Forbidden, NotFound, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from tagwarden.db.models import EntityKind

logger = logging.getLogger(__name__)

MAX_TAG_NAME_LENGTH = 50
PROTECTED_TAG_FIELDS = frozenset({"name", "category"})

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


# ── Validation helpers ───────────────────────────────────────────────


def validate_name(name: str, *, max_length: int = MAX_TAG_NAME_LENGTH) -> str:
    """Strip and length-check a display name."""
    cleaned = (name or "").strip()
    if not cleaned:
        msg = "Name is required"
        raise ValidationError(msg)
    if len(cleaned) > max_length:
        msg = f"Name must be at most {max_length} characters"
        raise ValidationError(msg)
    return cleaned


def validate_color(color: str) -> str:
    if not _HEX_COLOR.match(color or ""):
        msg = f"Colour must be a #RRGGBB hex string, got {color!r}"
        raise ValidationError(msg)
    return color


def parse_category(category: TagCategory | str) -> TagCategory:
    try:
        return TagCategory(category)
    except ValueError:
        msg = f"Unknown tag category {category!r}"
        raise ValidationError(msg) from None


async def require_organization(
    session: AsyncSession, organization_id: UUID
) -> Organization:
    organization = await session.get(Organization, organization_id)
    if organization is None:
        msg = f"Organization {organization_id} not found"
        raise NotFound(msg)
    return organization


async def _ensure_name_free(
    session: AsyncSession, organization_id: UUID, name: str
) -> None:
    result = await session.exec(
        select(Tag.id).where(Tag.organization_id == organization_id, Tag.name == name)
    )
    if result.first() is not None:
        msg = f"Tag {name!r} already exists"
        raise Conflict(msg)


async def load_tag(session: AsyncSession, tag_id: UUID, organization_id: UUID) -> Tag:
    """Load a tag inside the caller's transaction.

    A tag owned by another organization is reported as missing so tenants
    cannot probe each other's ids.
    """
    tag = await session.get(Tag, tag_id)
    if tag is None or tag.organization_id != organization_id:
        msg = f"Tag {tag_id} not found"
        raise NotFound(msg)
    return tag


# ── Usage counter ────────────────────────────────────────────────────


async def apply_usage_deltas(session: AsyncSession, deltas: Mapping[UUID, int]) -> None:
    """Apply per-tag usage deltas in the caller's transaction.

    The single writer of ``Tag.usage_count``. Results are floored at zero.
    Loaded Tag instances are not synchronised; refresh them before reading.
    """
    by_delta: dict[int, list[UUID]] = defaultdict(list)
    for tag_id, delta in deltas.items():
        if delta:
            by_delta[delta].append(tag_id)

    for delta, tag_ids in by_delta.items():
        adjusted = col(Tag.usage_count) + delta
        await session.execute(
            update(Tag)
            .where(col(Tag.id).in_(tag_ids))
            .values(usage_count=case((adjusted < 0, 0), else_=adjusted))
            .execution_options(synchronize_session=False)
        )
        logger.debug("usage_count %+d for %d tag(s)", delta, len(tag_ids))


async def increment_usage(
    session: AsyncSession, tag_ids: Iterable[UUID], delta: int
) -> None:
    """Add *delta* to the usage count of each tag (once per listed id)."""
    counts: dict[UUID, int] = defaultdict(int)
    for tag_id in tag_ids:
        counts[tag_id] += delta
    await apply_usage_deltas(session, counts)


# ── CRUD ─────────────────────────────────────────────────────────────


async def create_tag(
    organization_id: UUID,
    name: str,
    category: TagCategory | str = TagCategory.CUSTOM,
    color: str | None = None,
    description: str | None = None,
) -> Tag:
    """Create a tenant tag.

    Raises
    ------
    NotFound
        The organization does not exist.
    ValidationError
        Empty or over-long name, unknown category, malformed colour.
    Conflict
        A tag with this name already exists in the organization.
    """
    name = validate_name(name)
    parsed = parse_category(category)
    color = validate_color(color or get_settings().governance.default_tag_color)

    async with get_session() as session:
        await require_organization(session, organization_id)
        await _ensure_name_free(session, organization_id, name)
        tag = Tag(
            organization_id=organization_id,
            name=name,
            category=parsed,
            color=color,
            description=description,
        )
        session.add(tag)
        await session.flush()
        await session.refresh(tag)

    get_cache_gateway().invalidate_tenant_tags(organization_id)
    logger.info("Created tag %s (%s) for org=%s", tag.id, name, organization_id)
    return tag


async def get_tag(tag_id: UUID, organization_id: UUID) -> Tag:
    """Get a tag by id within an organization."""
    async with get_session() as session:
        return await load_tag(session, tag_id, organization_id)


async def list_tags(
    organization_id: UUID, category: TagCategory | str | None = None
) -> list[Tag]:
    """List an organization's tags, most used first."""
    stmt = select(Tag).where(Tag.organization_id == organization_id)
    if category is not None:
        stmt = stmt.where(Tag.category == parse_category(category))
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(col(Tag.usage_count).desc(), col(Tag.name))
        )
        return list(result.all())


async def get_tags_for_entity(
    entity_kind: EntityKind | str, entity_id: UUID, organization_id: UUID
) -> list[Tag]:
    """List the tags attached to one entity, by name."""
    ref = EntityRef.of(entity_kind, entity_id)
    async with get_session() as session:
        await require_entities(session, [ref], organization_id)
        result = await session.exec(
            select(Tag)
            .join(Taggable, col(Taggable.tag_id) == col(Tag.id))
            .where(
                Taggable.entity_kind == ref.kind,
                Taggable.entity_id == ref.id,
                Taggable.organization_id == organization_id,
            )
            .order_by(col(Tag.name))
        )
        return list(result.all())


def _changed_protected_fields(tag: Tag, patch: dict[str, Any]) -> list[str]:
    """Protected fields whose patched value differs from the stored one."""
    normalise = {"name": validate_name, "category": parse_category}
    return sorted(
        field
        for field in PROTECTED_TAG_FIELDS & patch.keys()
        if normalise[field](patch[field]) != getattr(tag, field)
    )


async def update_tag(
    tag_id: UUID,
    organization_id: UUID,
    *,
    name: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel distinguishes "not provided" from explicit None
    category: TagCategory | str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    color: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    description: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
) -> Tag:
    """Patch tag details.

    Omit a parameter to leave the field unchanged. On a system tag only
    ``color`` and ``description`` may change; a new ``name`` or
    ``category`` raises ``Forbidden``, while resending the stored values
    is allowed.
    """
    patch = {
        field: value
        for field, value in {
            "name": name,
            "category": category,
            "color": color,
            "description": description,
        }.items()
        if value is not ...
    }

    async with get_session() as session:
        tag = await load_tag(session, tag_id, organization_id)

        if tag.is_system:
            touched = _changed_protected_fields(tag, patch)
            if touched:
                msg = f"System tag {tag.name!r} cannot change: {', '.join(touched)}"
                raise Forbidden(msg)

        if "name" in patch:
            new_name = validate_name(patch["name"])
            if new_name != tag.name:
                await _ensure_name_free(session, organization_id, new_name)
            tag.name = new_name
        if "category" in patch:
            tag.category = parse_category(patch["category"])
        if "color" in patch:
            tag.color = validate_color(patch["color"])
        if "description" in patch:
            tag.description = patch["description"]

        tag.updated_at = _utcnow()
        session.add(tag)
        await session.flush()
        await session.refresh(tag)

    get_cache_gateway().invalidate_tenant_tags(organization_id)
    return tag


async def delete_tag(tag_id: UUID, organization_id: UUID) -> Tag:
    """Delete a tag together with all of its associations.

    Returns the deleted tag as it was before removal.

    Raises
    ------
    NotFound
        No such tag in the organization.
    Forbidden
        The tag is a system tag.
    """
    async with get_session() as session:
        tag = await load_tag(session, tag_id, organization_id)
        if tag.is_system:
            msg = f"System tag {tag.name!r} cannot be deleted"
            raise Forbidden(msg)

        removed = await _delete_associations(session, tag.id)
        await session.delete(tag)
        await session.flush()

    get_cache_gateway().invalidate_tenant_tags(organization_id)
    logger.info(
        "Deleted tag %s (%s) and %d association(s) for org=%s",
        tag.id,
        tag.name,
        removed,
        organization_id,
    )
    return tag


async def _delete_associations(session: AsyncSession, tag_id: UUID) -> int:
    """Delete every association of a tag explicitly (mirrors the FK cascade)."""
    result = await session.exec(select(Taggable.id).where(Taggable.tag_id == tag_id))
    ids = list(result.all())
    if ids:
        await session.execute(delete(Taggable).where(col(Taggable.id).in_(ids)))
    return len(ids)
