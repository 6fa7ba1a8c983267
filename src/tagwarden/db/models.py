"""SQLModel database models for the governance engine.

Tenant-scoped tags, polymorphic taggings and asset groups, the minimal
entity tables the engine checks tenancy against, and the system-level
reference data (default tag sets, dropdowns, templates) that tenants
inherit and override.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlmodel import Field, SQLModel

# ── Enumerations ─────────────────────────────────────────────────────


class TagCategory(StrEnum):
    LOCATION = "location"
    DEPARTMENT = "department"
    CRITICALITY = "criticality"
    COMPLIANCE = "compliance"
    INCIDENT_TYPE = "incident_type"
    SKILL = "skill"
    CUSTOM = "custom"


class EntityKind(StrEnum):
    """Kinds of entity a tag can be attached to."""

    ASSET = "asset"
    INCIDENT = "incident"
    RUNBOOK = "runbook"
    COMMUNICATION = "communication"
    EXERCISE = "exercise"


class GroupType(StrEnum):
    LOGICAL = "logical"
    LOCATION = "location"
    DEPARTMENT = "department"
    COMPLIANCE = "compliance"
    CUSTOM = "custom"
    DYNAMIC = "dynamic"


class OrganizationStatus(StrEnum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class DropdownCategory(StrEnum):
    ASSET_TYPES = "asset_types"
    CRITICALITY_LEVELS = "criticality_levels"
    INCIDENT_CLASSIFICATIONS = "incident_classifications"
    SEVERITY_LEVELS = "severity_levels"
    DEPARTMENTS = "departments"
    LOCATIONS = "locations"
    VENDOR_TYPES = "vendor_types"
    COMPLIANCE_FRAMEWORKS = "compliance_frameworks"
    CUSTOM = "custom"


class TemplateCategory(StrEnum):
    INCIDENT_RESPONSE = "incident_response"
    COMMUNICATION = "communication"
    RUNBOOK = "runbook"
    TRAINING = "training"
    COMPLIANCE = "compliance"
    CUSTOM = "custom"


# ── JSON payload models (validated, not tables) ──────────────────────


class GroupRules(BaseModel):
    """Equality predicates a dynamic group evaluates against live assets.

    Omitted predicates do not constrain the match. Unknown keys are
    rejected so a typo cannot silently widen a group to every asset.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    asset_type: str | None = PydanticField(default=None, alias="assetType")
    criticality: str | None = None
    must_contact: bool | None = PydanticField(default=None, alias="mustContact")

    def predicates(self) -> dict[str, Any]:
        """Map asset column name to required value for each set predicate."""
        columns = {
            "asset_type": "type",
            "criticality": "criticality",
            "must_contact": "must_contact",
        }
        return {
            columns[name]: value
            for name, value in self.model_dump().items()
            if value is not None
        }


class TagDefinition(BaseModel):
    """One tag inside a default tag set."""

    model_config = ConfigDict(extra="forbid")

    name: str = PydanticField(min_length=1, max_length=50)
    category: TagCategory = TagCategory.CUSTOM
    color: str = PydanticField(default="#6B7280", pattern=r"^#[0-9a-fA-F]{6}$")
    description: str | None = None


class DropdownOption(BaseModel):
    """One selectable value of a dropdown vocabulary."""

    value: str
    label: str
    metadata: dict[str, Any] | None = None


# ── Column helpers ───────────────────────────────────────────────────


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def _timestamptz_column() -> Any:
    """Create a TIMESTAMP WITH TIME ZONE column."""
    return Column(DateTime(timezone=True), nullable=False)


def _cascade_fk_column(target: str, *, index: bool = True) -> Any:
    """Create a UUID foreign key column with CASCADE DELETE."""
    return Column(
        Uuid(), ForeignKey(target, ondelete="CASCADE"), nullable=False, index=index
    )


def _set_null_fk_column(target: str) -> Any:
    """Create a UUID foreign key column with SET NULL on delete."""
    return Column(
        Uuid(), ForeignKey(target, ondelete="SET NULL"), nullable=True, index=True
    )


def _enum_column(length: int, default: str) -> Any:
    """Enum values are stored as plain strings and validated in Python."""
    return Column(String(length), nullable=False, server_default=str(default))


def _json_column(*, nullable: bool = False) -> Any:
    return Column(sa.JSON(), nullable=nullable)


# ── Tenant ───────────────────────────────────────────────────────────


class Organization(SQLModel, table=True):
    """A tenant. Every governance row is scoped by its id."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    status: str = Field(
        default=OrganizationStatus.TRIAL,
        sa_column=_enum_column(20, OrganizationStatus.TRIAL),
    )
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


# ── Tags ─────────────────────────────────────────────────────────────


class Tag(SQLModel, table=True):
    """A named, categorized, colored label owned by one tenant.

    Attributes:
        usage_count: Number of live Taggable rows referencing this tag.
            Only ``tags.apply_usage_deltas`` writes it, always in the same
            transaction as the association change that caused it.
        is_system: Provisioned from a required default tag set. System
            tags cannot be deleted, merged away or renamed by tenants.
    """

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_tag_organization_name"),
        CheckConstraint("usage_count >= 0", name="ck_tag_usage_count_non_negative"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    name: str = Field(sa_column=Column(String(50), nullable=False))
    category: str = Field(
        default=TagCategory.CUSTOM,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    color: str = Field(default="#6B7280", max_length=7)
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    is_system: bool = Field(default=False)
    usage_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class Taggable(SQLModel, table=True):
    """Polymorphic association of one Tag to one entity instance.

    ``(entity_kind, entity_id)`` names the entity; there is no FK because
    the target table depends on the kind. Deleting the Tag cascades here.
    """

    __table_args__ = (
        UniqueConstraint(
            "tag_id", "entity_kind", "entity_id", name="uq_taggable_tag_entity"
        ),
        Index("ix_taggable_entity", "entity_kind", "entity_id"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    tag_id: UUID = Field(sa_column=_cascade_fk_column("tag.id"))
    entity_kind: str = Field(sa_column=Column(String(20), nullable=False))
    entity_id: UUID = Field(sa_column=Column(Uuid(), nullable=False))
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


# ── Taggable entities ────────────────────────────────────────────────
# Owned by the wider platform; only the columns the engine reads live here.


class Asset(SQLModel, table=True):
    """An asset. Dynamic groups match on type, criticality and must_contact."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    name: str = Field(max_length=255)
    type: str = Field(sa_column=Column(String(50), nullable=False))
    criticality: str | None = Field(default=None, max_length=20)
    must_contact: bool = Field(default=False)
    deleted_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class Incident(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    title: str = Field(max_length=255)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class Runbook(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    title: str = Field(max_length=255)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class CommunicationTemplate(SQLModel, table=True):
    """A tenant's communication template; also the tenant template layer."""

    __tablename__ = "communication_template"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    title: str = Field(max_length=255)
    category: str = Field(
        default=TemplateCategory.COMMUNICATION,
        sa_column=_enum_column(30, TemplateCategory.COMMUNICATION),
    )
    content: str = Field(default="", sa_column=Column(sa.Text(), nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class Exercise(SQLModel, table=True):
    """A tabletop exercise."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    title: str = Field(max_length=255)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


# ── Asset groups ─────────────────────────────────────────────────────


class AssetGroup(SQLModel, table=True):
    """A tenant-scoped, possibly nested, possibly rule-computed asset group.

    Attributes:
        parent_group_id: Optional parent in the same tenant. The parent
            graph is kept acyclic by ``groups.update_group``.
        rules: ``GroupRules`` payload; required when ``is_dynamic``.
        member_count: Number of AssetGroupMember rows for this group.
    """

    __tablename__ = "asset_group"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "name", name="uq_asset_group_organization_name"
        ),
        CheckConstraint(
            "member_count >= 0", name="ck_asset_group_member_count_non_negative"
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    name: str = Field(sa_column=Column(String(100), nullable=False))
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    type: str = Field(
        default=GroupType.CUSTOM, sa_column=_enum_column(20, GroupType.CUSTOM)
    )
    parent_group_id: UUID | None = Field(
        default=None, sa_column=_set_null_fk_column("asset_group.id")
    )
    is_dynamic: bool = Field(default=False)
    rules: dict[str, Any] | None = Field(
        default=None, sa_column=_json_column(nullable=True)
    )
    icon: str | None = Field(default=None, max_length=50)
    color: str | None = Field(default=None, max_length=7)
    sort_order: int = Field(default=0)
    member_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class AssetGroupMember(SQLModel, table=True):
    """Membership of one asset in one group."""

    __tablename__ = "asset_group_member"
    __table_args__ = (
        UniqueConstraint("group_id", "asset_id", name="uq_asset_group_member"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    group_id: UUID = Field(sa_column=_cascade_fk_column("asset_group.id"))
    asset_id: UUID = Field(sa_column=_cascade_fk_column("asset.id"))
    added_by: UUID = Field(sa_column=Column(Uuid(), nullable=False))
    added_at: datetime = Field(default_factory=_utcnow, sa_column=_timestamptz_column())
    notes: str | None = Field(default=None, sa_column=Column(sa.Text(), nullable=True))
    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


# ── System-level reference data ──────────────────────────────────────


class DefaultTagSet(SQLModel, table=True):
    """System template of tags provisioned into tenants.

    ``is_active and is_required`` sets are copied into every newly
    provisioned tenant as system tags.
    """

    __tablename__ = "default_tag_set"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=100, index=True)
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    tag_definitions: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=_json_column()
    )
    entity_types: list[str] = Field(default_factory=list, sa_column=_json_column())
    is_active: bool = Field(default=True)
    is_required: bool = Field(default=False)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class SystemDropdown(SQLModel, table=True):
    """System-wide dropdown vocabulary keyed by ``(category, name)``."""

    __tablename__ = "system_dropdown"
    __table_args__ = (
        UniqueConstraint("category", "name", name="uq_system_dropdown_category_name"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    category: str = Field(sa_column=Column(String(40), nullable=False, index=True))
    name: str = Field(max_length=100)
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    options: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=_json_column()
    )
    is_active: bool = Field(default=True)
    allow_custom_values: bool = Field(default=False)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class OrganizationDropdown(SQLModel, table=True):
    """Tenant dropdown. Shadows the system entry with the same key."""

    __tablename__ = "organization_dropdown"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "category",
            "name",
            name="uq_organization_dropdown_category_name",
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(sa_column=_cascade_fk_column("organization.id"))
    system_dropdown_id: UUID | None = Field(
        default=None, sa_column=_set_null_fk_column("system_dropdown.id")
    )
    category: str = Field(sa_column=Column(String(40), nullable=False, index=True))
    name: str = Field(max_length=100)
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    options: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=_json_column()
    )
    is_active: bool = Field(default=True)
    allow_custom_values: bool = Field(default=False)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )


class SystemTemplate(SQLModel, table=True):
    """System-wide content template, overridable per tenant by title."""

    __tablename__ = "system_template"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    title: str = Field(max_length=255)
    category: str = Field(sa_column=Column(String(30), nullable=False, index=True))
    description: str | None = Field(
        default=None, sa_column=Column(sa.Text(), nullable=True)
    )
    content: str = Field(sa_column=Column(sa.Text(), nullable=False))
    variables: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=_json_column()
    )
    is_active: bool = Field(default=True)
    version: str = Field(default="1.0", max_length=20)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
    updated_at: datetime = Field(
        default_factory=_utcnow, sa_column=_timestamptz_column()
    )
