"""Effective Configuration Resolver.

Tenants inherit system-level reference data (dropdown vocabularies,
content templates, default tag sets) and may shadow any entry with their
own. Every merge here is the same fold: an ordered list of layers, system
first and tenant last, collapsed into a map keyed by the override key
where the last layer to define a key wins.

Also home to tenant provisioning, which materialises the required default
tag sets as system tags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.db.engine import get_session, session_scope
from tagwarden.db.models import (
    CommunicationTemplate,
    DefaultTagSet,
    OrganizationDropdown,
    SystemDropdown,
    SystemTemplate,
    Tag,
    TagDefinition,
)
from tagwarden.db.tags import require_organization
from tagwarden.errors import ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Iterable
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from tagwarden.db.models import DropdownCategory, TemplateCategory

logger = logging.getLogger(__name__)

SYSTEM = "system"
ORGANIZATION = "organization"

T = TypeVar("T")


@dataclass(frozen=True)
class Resolved(Generic[T]):
    """An item that survived the layer fold, with the layer it came from."""

    item: T
    source: str


def resolve_layers(
    layers: Iterable[tuple[str, Iterable[T]]],
    key: Callable[[T], Hashable],
) -> dict[Hashable, Resolved[T]]:
    """Fold ordered ``(source, items)`` layers into one keyed map.

    Later layers overwrite earlier ones key by key (last write wins). The
    result keeps the order in which each key was first seen, so a tenant
    override sits where the system entry it replaced used to be.
    """
    resolved: dict[Hashable, Resolved[T]] = {}
    for source, items in layers:
        for item in items:
            resolved[key(item)] = Resolved(item, source)
    return resolved


# ── Dropdowns ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MergedDropdown:
    """A dropdown as a tenant sees it, attributed to its source layer."""

    id: UUID
    category: str
    name: str
    description: str | None
    options: list[dict[str, Any]]
    allow_custom_values: bool
    sort_order: int
    source: str


def _dropdown_key(row: SystemDropdown | OrganizationDropdown) -> tuple[str, str]:
    return (row.category, row.name)


async def get_merged_dropdowns(
    organization_id: UUID, category: DropdownCategory | str | None = None
) -> list[MergedDropdown]:
    """Active system dropdowns overlaid with the tenant's active overrides.

    Entries are keyed by ``(category, name)``; a tenant entry replaces the
    system entry with the same key and is reported with
    ``source="organization"``.
    """
    system_stmt = select(SystemDropdown).where(col(SystemDropdown.is_active).is_(True))
    tenant_stmt = select(OrganizationDropdown).where(
        OrganizationDropdown.organization_id == organization_id,
        col(OrganizationDropdown.is_active).is_(True),
    )
    if category is not None:
        system_stmt = system_stmt.where(SystemDropdown.category == category)
        tenant_stmt = tenant_stmt.where(OrganizationDropdown.category == category)

    async with get_session() as session:
        await require_organization(session, organization_id)
        system_rows = (
            await session.exec(
                system_stmt.order_by(
                    col(SystemDropdown.sort_order), col(SystemDropdown.name)
                )
            )
        ).all()
        tenant_rows = (
            await session.exec(
                tenant_stmt.order_by(
                    col(OrganizationDropdown.sort_order),
                    col(OrganizationDropdown.name),
                )
            )
        ).all()

    merged = resolve_layers(
        [(SYSTEM, system_rows), (ORGANIZATION, tenant_rows)], key=_dropdown_key
    )
    dropdowns = [
        MergedDropdown(
            id=entry.item.id,
            category=entry.item.category,
            name=entry.item.name,
            description=entry.item.description,
            options=list(entry.item.options),
            allow_custom_values=entry.item.allow_custom_values,
            sort_order=entry.item.sort_order,
            source=entry.source,
        )
        for entry in merged.values()
    ]
    dropdowns.sort(key=lambda d: (d.category, d.sort_order, d.name))
    return dropdowns


# ── Templates ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MergedTemplate:
    id: UUID
    category: str
    title: str
    content: str
    description: str | None
    source: str


def _template_key(row: SystemTemplate | CommunicationTemplate) -> tuple[str, str]:
    return (row.category, row.title)


async def get_merged_templates(
    organization_id: UUID, category: TemplateCategory | str | None = None
) -> list[MergedTemplate]:
    """Active system templates overlaid by the tenant's own templates.

    Keyed by ``(category, title)``.
    """
    system_stmt = select(SystemTemplate).where(col(SystemTemplate.is_active).is_(True))
    tenant_stmt = select(CommunicationTemplate).where(
        CommunicationTemplate.organization_id == organization_id
    )
    if category is not None:
        system_stmt = system_stmt.where(SystemTemplate.category == category)
        tenant_stmt = tenant_stmt.where(CommunicationTemplate.category == category)

    async with get_session() as session:
        await require_organization(session, organization_id)
        system_rows = (
            await session.exec(
                system_stmt.order_by(
                    col(SystemTemplate.sort_order), col(SystemTemplate.title)
                )
            )
        ).all()
        tenant_rows = (
            await session.exec(tenant_stmt.order_by(col(CommunicationTemplate.title)))
        ).all()

    merged = resolve_layers(
        [(SYSTEM, system_rows), (ORGANIZATION, tenant_rows)], key=_template_key
    )
    templates = [
        MergedTemplate(
            id=entry.item.id,
            category=entry.item.category,
            title=entry.item.title,
            content=entry.item.content,
            description=getattr(entry.item, "description", None),
            source=entry.source,
        )
        for entry in merged.values()
    ]
    templates.sort(key=lambda t: (t.category, t.title))
    return templates


# ── Effective tags ───────────────────────────────────────────────────


@dataclass(frozen=True)
class EffectiveTag:
    """One tag name as the tenant should see it.

    ``tag_id`` is ``None`` when the name comes only from a required
    default set and the tenant has no such tag yet.
    """

    name: str
    category: str
    color: str
    description: str | None
    source: str
    tag_id: UUID | None = None
    is_system: bool = False


@dataclass(frozen=True)
class EffectiveTags:
    default_tag_sets: list[DefaultTagSet]
    organization_tags: list[Tag]
    tags: list[EffectiveTag] = field(default_factory=list)
    missing_required: list[TagDefinition] = field(default_factory=list)


def parse_tag_definitions(tag_set: DefaultTagSet) -> list[TagDefinition]:
    """Validate the stored definitions of a default tag set."""
    try:
        return [TagDefinition.model_validate(raw) for raw in tag_set.tag_definitions]
    except PydanticValidationError as exc:
        msg = f"Default tag set {tag_set.name!r} has a malformed tag definition"
        raise ValidationError(msg) from exc


async def _required_tag_sets(session: AsyncSession) -> list[DefaultTagSet]:
    result = await session.exec(
        select(DefaultTagSet)
        .where(
            col(DefaultTagSet.is_active).is_(True),
            col(DefaultTagSet.is_required).is_(True),
        )
        .order_by(col(DefaultTagSet.sort_order), col(DefaultTagSet.name))
    )
    return list(result.all())


async def get_effective_tags(organization_id: UUID) -> EffectiveTags:
    """Union of the required default tag sets and the tenant's own tags.

    Read-only. Tenant tags shadow default definitions with the same name;
    ``missing_required`` lists the required definitions the tenant has no
    tag for, so a UI can highlight them.
    """
    async with get_session() as session:
        await require_organization(session, organization_id)
        tag_sets = await _required_tag_sets(session)
        result = await session.exec(
            select(Tag)
            .where(Tag.organization_id == organization_id)
            .order_by(col(Tag.name))
        )
        organization_tags = list(result.all())

    definitions = [
        definition
        for tag_set in tag_sets
        for definition in parse_tag_definitions(tag_set)
    ]
    defaults = [
        EffectiveTag(
            name=d.name,
            category=d.category,
            color=d.color,
            description=d.description,
            source=SYSTEM,
        )
        for d in definitions
    ]
    owned = [
        EffectiveTag(
            name=t.name,
            category=t.category,
            color=t.color,
            description=t.description,
            source=ORGANIZATION,
            tag_id=t.id,
            is_system=t.is_system,
        )
        for t in organization_tags
    ]
    merged = resolve_layers(
        [(SYSTEM, defaults), (ORGANIZATION, owned)], key=lambda tag: tag.name
    )

    owned_names = {t.name for t in organization_tags}
    missing: dict[str, TagDefinition] = {}
    for definition in definitions:
        if definition.name not in owned_names:
            missing.setdefault(definition.name, definition)

    return EffectiveTags(
        default_tag_sets=tag_sets,
        organization_tags=organization_tags,
        tags=[entry.item for entry in merged.values()],
        missing_required=list(missing.values()),
    )


# ── Provisioning ─────────────────────────────────────────────────────


async def provision_new_organization(
    organization_id: UUID, *, session: AsyncSession | None = None
) -> list[Tag]:
    """Create a system tag for every definition of each required default set.

    Runs inside *session* when given (tenant creation), otherwise in its
    own transaction. Names the tenant already has are skipped, so running
    it again creates nothing; when two sets define the same name the
    first set (by sort order) wins.

    Returns the tags created by this call.
    """
    async with session_scope(session) as scope:
        await require_organization(scope, organization_id)
        tag_sets = await _required_tag_sets(scope)
        result = await scope.exec(
            select(Tag.name).where(Tag.organization_id == organization_id)
        )
        taken = set(result.all())

        created: list[Tag] = []
        for tag_set in tag_sets:
            for definition in parse_tag_definitions(tag_set):
                if definition.name in taken:
                    logger.debug(
                        "Skipping %r from set %r: already present",
                        definition.name,
                        tag_set.name,
                    )
                    continue
                taken.add(definition.name)
                tag = Tag(
                    organization_id=organization_id,
                    name=definition.name,
                    category=definition.category,
                    color=definition.color,
                    description=definition.description,
                    is_system=True,
                )
                scope.add(tag)
                created.append(tag)
        await scope.flush()

    if session is None:
        notify_provisioned(organization_id)
    logger.info(
        "Provisioned %d system tag(s) from %d default set(s) for org=%s",
        len(created),
        len(tag_sets),
        organization_id,
    )
    return created


def notify_provisioned(organization_id: UUID) -> None:
    """Send the invalidations that follow a committed provisioning run."""
    gateway = get_cache_gateway()
    gateway.invalidate_tenant_tags(organization_id)
    gateway.invalidate_effective_config(organization_id)
