"""CRUD for the reference data tenants inherit.

System-level rows (default tag sets, dropdown vocabularies, templates)
apply to every tenant, so each write here notifies
``invalidate_system_defaults``. Tenant overrides (organization dropdowns,
communication templates) only invalidate that tenant's effective config.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import SQLModel, col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.db.engine import get_session
from tagwarden.db.entities import parse_entity_kind
from tagwarden.db.models import (
    CommunicationTemplate,
    DefaultTagSet,
    DropdownCategory,
    DropdownOption,
    OrganizationDropdown,
    SystemDropdown,
    SystemTemplate,
    TagDefinition,
    TemplateCategory,
    _utcnow,
)
from tagwarden.db.tags import require_organization, validate_name
from tagwarden.errors import Conflict, NotFound, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


# ── Validation ───────────────────────────────────────────────────────


def parse_dropdown_category(category: DropdownCategory | str) -> DropdownCategory:
    try:
        return DropdownCategory(category)
    except ValueError:
        msg = f"Unknown dropdown category {category!r}"
        raise ValidationError(msg) from None


def parse_template_category(category: TemplateCategory | str) -> TemplateCategory:
    try:
        return TemplateCategory(category)
    except ValueError:
        msg = f"Unknown template category {category!r}"
        raise ValidationError(msg) from None


def _validate_payloads(
    items: Iterable[Mapping[str, Any] | Any],
    model: type[DropdownOption] | type[TagDefinition],
    label: str,
) -> list[dict[str, Any]]:
    try:
        return [
            (item if isinstance(item, model) else model.model_validate(item))
            .model_dump(mode="json", exclude_none=True)
            for item in items
        ]
    except PydanticValidationError as exc:
        msg = f"Malformed {label}: {exc.errors()[0]['msg']}"
        raise ValidationError(msg) from exc


def validate_options(options: Iterable[Any]) -> list[dict[str, Any]]:
    """Validate dropdown options; values must be unique within a dropdown."""
    parsed = _validate_payloads(options, DropdownOption, "dropdown option")
    values = [option["value"] for option in parsed]
    if len(values) != len(set(values)):
        msg = "Dropdown option values must be unique"
        raise ValidationError(msg)
    return parsed


def validate_tag_definitions(definitions: Iterable[Any]) -> list[dict[str, Any]]:
    return _validate_payloads(definitions, TagDefinition, "tag definition")


def _patch(row: SQLModel, changes: Mapping[str, Any]) -> None:
    """Apply provided (non-Ellipsis) fields and bump ``updated_at``."""
    for name, value in changes.items():
        if value is not ...:
            setattr(row, name, value)
    row.updated_at = _utcnow()  # type: ignore[attr-defined]


async def _require(
    session: AsyncSession, model: type[ModelT], row_id: UUID, label: str
) -> ModelT:
    row = await session.get(model, row_id)
    if row is None:
        msg = f"{label} {row_id} not found"
        raise NotFound(msg)
    return row


async def _save(session: AsyncSession, row: ModelT) -> ModelT:
    session.add(row)
    await session.flush()
    await session.refresh(row)
    return row


# ── Default tag sets ─────────────────────────────────────────────────


async def create_default_tag_set(
    name: str,
    tag_definitions: Sequence[Mapping[str, Any] | TagDefinition],
    *,
    description: str | None = None,
    entity_types: Iterable[str] = (),
    is_active: bool = True,
    is_required: bool = False,
    sort_order: int = 0,
) -> DefaultTagSet:
    """Create a default tag set.

    Active, required sets are provisioned into every new tenant.
    """
    tag_set = DefaultTagSet(
        name=validate_name(name, max_length=100),
        description=description,
        tag_definitions=validate_tag_definitions(tag_definitions),
        entity_types=[parse_entity_kind(kind).value for kind in entity_types],
        is_active=is_active,
        is_required=is_required,
        sort_order=sort_order,
    )
    async with get_session() as session:
        await _save(session, tag_set)

    get_cache_gateway().invalidate_system_defaults()
    logger.info("Created default tag set %s (%s)", tag_set.id, tag_set.name)
    return tag_set


async def list_default_tag_sets(*, active_only: bool = False) -> list[DefaultTagSet]:
    stmt = select(DefaultTagSet)
    if active_only:
        stmt = stmt.where(col(DefaultTagSet.is_active).is_(True))
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(col(DefaultTagSet.sort_order), col(DefaultTagSet.name))
        )
        return list(result.all())


async def update_default_tag_set(
    tag_set_id: UUID,
    *,
    name: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel distinguishes "not provided" from explicit None
    description: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    tag_definitions: Sequence[Mapping[str, Any] | TagDefinition] = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    entity_types: Iterable[str] = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    is_active: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    is_required: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    sort_order: int = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
) -> DefaultTagSet:
    """Patch a default tag set. Tenants already provisioned are not touched."""
    async with get_session() as session:
        tag_set = await _require(session, DefaultTagSet, tag_set_id, "Default tag set")
        _patch(
            tag_set,
            {
                "name": name if name is ... else validate_name(name, max_length=100),
                "description": description,
                "tag_definitions": (
                    tag_definitions
                    if tag_definitions is ...
                    else validate_tag_definitions(tag_definitions)
                ),
                "entity_types": (
                    entity_types
                    if entity_types is ...
                    else [parse_entity_kind(kind).value for kind in entity_types]
                ),
                "is_active": is_active,
                "is_required": is_required,
                "sort_order": sort_order,
            },
        )
        await _save(session, tag_set)

    get_cache_gateway().invalidate_system_defaults()
    return tag_set


async def delete_default_tag_set(tag_set_id: UUID) -> DefaultTagSet:
    async with get_session() as session:
        tag_set = await _require(session, DefaultTagSet, tag_set_id, "Default tag set")
        await session.delete(tag_set)
        await session.flush()

    get_cache_gateway().invalidate_system_defaults()
    return tag_set


# ── System dropdowns ─────────────────────────────────────────────────


async def create_system_dropdown(
    category: DropdownCategory | str,
    name: str,
    options: Iterable[Mapping[str, Any] | DropdownOption],
    *,
    description: str | None = None,
    allow_custom_values: bool = False,
    sort_order: int = 0,
) -> SystemDropdown:
    """Create a system dropdown; ``(category, name)`` must be unused."""
    parsed_category = parse_dropdown_category(category)
    name = validate_name(name, max_length=100)
    dropdown = SystemDropdown(
        category=parsed_category,
        name=name,
        description=description,
        options=validate_options(options),
        allow_custom_values=allow_custom_values,
        sort_order=sort_order,
    )
    async with get_session() as session:
        existing = await session.exec(
            select(SystemDropdown.id).where(
                SystemDropdown.category == parsed_category,
                SystemDropdown.name == name,
            )
        )
        if existing.first() is not None:
            msg = f"System dropdown {parsed_category}:{name} already exists"
            raise Conflict(msg)
        await _save(session, dropdown)

    get_cache_gateway().invalidate_system_defaults()
    return dropdown


async def list_system_dropdowns(
    category: DropdownCategory | str | None = None, *, active_only: bool = False
) -> list[SystemDropdown]:
    stmt = select(SystemDropdown)
    if category is not None:
        stmt = stmt.where(SystemDropdown.category == parse_dropdown_category(category))
    if active_only:
        stmt = stmt.where(col(SystemDropdown.is_active).is_(True))
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(
                col(SystemDropdown.category),
                col(SystemDropdown.sort_order),
                col(SystemDropdown.name),
            )
        )
        return list(result.all())


async def update_system_dropdown(
    dropdown_id: UUID,
    *,
    description: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    options: Iterable[Mapping[str, Any] | DropdownOption] = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    is_active: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    allow_custom_values: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    sort_order: int = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
) -> SystemDropdown:
    """Patch a system dropdown. Its ``(category, name)`` key is fixed."""
    async with get_session() as session:
        dropdown = await _require(session, SystemDropdown, dropdown_id, "Dropdown")
        _patch(
            dropdown,
            {
                "description": description,
                "options": options if options is ... else validate_options(options),
                "is_active": is_active,
                "allow_custom_values": allow_custom_values,
                "sort_order": sort_order,
            },
        )
        await _save(session, dropdown)

    get_cache_gateway().invalidate_system_defaults()
    return dropdown


async def delete_system_dropdown(dropdown_id: UUID) -> SystemDropdown:
    """Delete a system dropdown; tenant overrides of it become standalone."""
    async with get_session() as session:
        dropdown = await _require(session, SystemDropdown, dropdown_id, "Dropdown")
        await session.delete(dropdown)
        await session.flush()

    get_cache_gateway().invalidate_system_defaults()
    return dropdown


# ── Organization dropdowns ───────────────────────────────────────────


async def set_organization_dropdown(
    organization_id: UUID,
    category: DropdownCategory | str,
    name: str,
    options: Iterable[Mapping[str, Any] | DropdownOption],
    *,
    description: str | None = None,
    allow_custom_values: bool = False,
    is_active: bool = True,
    sort_order: int = 0,
) -> OrganizationDropdown:
    """Create or replace the tenant's dropdown for ``(category, name)``.

    When a system dropdown with the same key exists the override is
    linked to it through ``system_dropdown_id``.
    """
    parsed_category = parse_dropdown_category(category)
    name = validate_name(name, max_length=100)
    parsed_options = validate_options(options)

    async with get_session() as session:
        await require_organization(session, organization_id)
        system = (
            await session.exec(
                select(SystemDropdown.id).where(
                    SystemDropdown.category == parsed_category,
                    SystemDropdown.name == name,
                )
            )
        ).first()
        dropdown = (
            await session.exec(
                select(OrganizationDropdown).where(
                    OrganizationDropdown.organization_id == organization_id,
                    OrganizationDropdown.category == parsed_category,
                    OrganizationDropdown.name == name,
                )
            )
        ).first()
        if dropdown is None:
            dropdown = OrganizationDropdown(
                organization_id=organization_id,
                category=parsed_category,
                name=name,
            )
        _patch(
            dropdown,
            {
                "system_dropdown_id": system,
                "description": description,
                "options": parsed_options,
                "allow_custom_values": allow_custom_values,
                "is_active": is_active,
                "sort_order": sort_order,
            },
        )
        await _save(session, dropdown)

    get_cache_gateway().invalidate_effective_config(organization_id)
    return dropdown


async def list_organization_dropdowns(
    organization_id: UUID, category: DropdownCategory | str | None = None
) -> list[OrganizationDropdown]:
    stmt = select(OrganizationDropdown).where(
        OrganizationDropdown.organization_id == organization_id
    )
    if category is not None:
        stmt = stmt.where(
            OrganizationDropdown.category == parse_dropdown_category(category)
        )
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(
                col(OrganizationDropdown.category),
                col(OrganizationDropdown.sort_order),
                col(OrganizationDropdown.name),
            )
        )
        return list(result.all())


async def delete_organization_dropdown(
    dropdown_id: UUID, organization_id: UUID
) -> OrganizationDropdown:
    """Remove a tenant override, re-exposing the system entry if any."""
    async with get_session() as session:
        dropdown = await session.get(OrganizationDropdown, dropdown_id)
        if dropdown is None or dropdown.organization_id != organization_id:
            msg = f"Dropdown {dropdown_id} not found"
            raise NotFound(msg)
        await session.delete(dropdown)
        await session.flush()

    get_cache_gateway().invalidate_effective_config(organization_id)
    return dropdown


# ── Templates ────────────────────────────────────────────────────────


async def create_system_template(
    title: str,
    category: TemplateCategory | str,
    content: str,
    *,
    description: str | None = None,
    variables: Sequence[Mapping[str, Any]] = (),
    version: str = "1.0",
    sort_order: int = 0,
) -> SystemTemplate:
    template = SystemTemplate(
        title=validate_name(title, max_length=255),
        category=parse_template_category(category),
        content=content,
        description=description,
        variables=[dict(variable) for variable in variables],
        version=version,
        sort_order=sort_order,
    )
    async with get_session() as session:
        await _save(session, template)

    get_cache_gateway().invalidate_system_defaults()
    return template


async def list_system_templates(
    category: TemplateCategory | str | None = None,
) -> list[SystemTemplate]:
    stmt = select(SystemTemplate)
    if category is not None:
        stmt = stmt.where(SystemTemplate.category == parse_template_category(category))
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(col(SystemTemplate.sort_order), col(SystemTemplate.title))
        )
        return list(result.all())


async def update_system_template(
    template_id: UUID,
    *,
    content: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    description: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    is_active: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    version: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    sort_order: int = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
) -> SystemTemplate:
    async with get_session() as session:
        template = await _require(session, SystemTemplate, template_id, "Template")
        _patch(
            template,
            {
                "content": content,
                "description": description,
                "is_active": is_active,
                "version": version,
                "sort_order": sort_order,
            },
        )
        await _save(session, template)

    get_cache_gateway().invalidate_system_defaults()
    return template


async def delete_system_template(template_id: UUID) -> SystemTemplate:
    async with get_session() as session:
        template = await _require(session, SystemTemplate, template_id, "Template")
        await session.delete(template)
        await session.flush()

    get_cache_gateway().invalidate_system_defaults()
    return template


async def create_communication_template(
    organization_id: UUID,
    title: str,
    content: str,
    category: TemplateCategory | str = TemplateCategory.COMMUNICATION,
) -> CommunicationTemplate:
    """Create a tenant template; it shadows a system template with the same
    ``(category, title)``.
    """
    template = CommunicationTemplate(
        organization_id=organization_id,
        title=validate_name(title, max_length=255),
        category=parse_template_category(category),
        content=content,
    )
    async with get_session() as session:
        await require_organization(session, organization_id)
        await _save(session, template)

    get_cache_gateway().invalidate_effective_config(organization_id)
    return template
