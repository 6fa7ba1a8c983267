"""create governance tables

Revision ID: 3c1d9e7a52f0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1d9e7a52f0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _flag(name: str, default: bool) -> sa.Column:
    return sa.Column(
        name,
        sa.Boolean(),
        nullable=False,
        server_default=sa.true() if default else sa.false(),
    )


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def _organization_fk() -> sa.Column:
    return sa.Column(
        "organization_id",
        sa.Uuid(),
        sa.ForeignKey("organization.id", ondelete="CASCADE"),
        nullable=False,
    )


def _entity_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column("title", sa.String(255), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(f"ix_{name}_organization_id", name, ["organization_id"])


def upgrade() -> None:
    """Create tenants, tags, associations, asset groups and reference data."""
    # --- tenants ---
    op.create_table(
        "organization",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="trial"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- tags ---
    op.create_table(
        "tag",
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("color", sa.String(7), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _flag("is_system", False),
        _counter("usage_count"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id", "name", name="uq_tag_organization_name"
        ),
        sa.CheckConstraint(
            "usage_count >= 0", name="ck_tag_usage_count_non_negative"
        ),
    )
    op.create_index("ix_tag_organization_id", "tag", ["organization_id"])
    op.create_index("ix_tag_category", "tag", ["category"])

    op.create_table(
        "taggable",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "tag_id",
            sa.Uuid(),
            sa.ForeignKey("tag.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_kind", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        _organization_fk(),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tag_id", "entity_kind", "entity_id", name="uq_taggable_tag_entity"
        ),
    )
    op.create_index("ix_taggable_tag_id", "taggable", ["tag_id"])
    op.create_index("ix_taggable_organization_id", "taggable", ["organization_id"])
    op.create_index("ix_taggable_entity", "taggable", ["entity_kind", "entity_id"])

    # --- taggable entities (minimal columns) ---
    op.create_table(
        "asset",
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("criticality", sa.String(20), nullable=True),
        _flag("must_contact", False),
        _timestamp("deleted_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_asset_organization_id", "asset", ["organization_id"])

    _entity_table("incident")
    _entity_table("runbook")
    _entity_table("exercise")

    op.create_table(
        "communication_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column(
            "category", sa.String(30), nullable=False, server_default="communication"
        ),
        sa.Column("content", sa.Text(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_communication_template_organization_id",
        "communication_template",
        ["organization_id"],
    )

    # --- asset groups ---
    op.create_table(
        "asset_group",
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(20), nullable=False, server_default="custom"),
        sa.Column(
            "parent_group_id",
            sa.Uuid(),
            sa.ForeignKey("asset_group.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _flag("is_dynamic", False),
        sa.Column("rules", sa.JSON(), nullable=True),
        sa.Column("icon", sa.String(50), nullable=True),
        sa.Column("color", sa.String(7), nullable=True),
        _counter("sort_order"),
        _counter("member_count"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id", "name", name="uq_asset_group_organization_name"
        ),
        sa.CheckConstraint(
            "member_count >= 0", name="ck_asset_group_member_count_non_negative"
        ),
    )
    op.create_index(
        "ix_asset_group_organization_id", "asset_group", ["organization_id"]
    )
    op.create_index(
        "ix_asset_group_parent_group_id", "asset_group", ["parent_group_id"]
    )

    op.create_table(
        "asset_group_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "group_id",
            sa.Uuid(),
            sa.ForeignKey("asset_group.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "asset_id",
            sa.Uuid(),
            sa.ForeignKey("asset.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("added_by", sa.Uuid(), nullable=False),
        _timestamp("added_at"),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("expires_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("group_id", "asset_id", name="uq_asset_group_member"),
    )
    op.create_index(
        "ix_asset_group_member_group_id", "asset_group_member", ["group_id"]
    )
    op.create_index(
        "ix_asset_group_member_asset_id", "asset_group_member", ["asset_id"]
    )

    # --- system-level reference data ---
    op.create_table(
        "default_tag_set",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tag_definitions", sa.JSON(), nullable=False),
        sa.Column("entity_types", sa.JSON(), nullable=False),
        _flag("is_active", True),
        _flag("is_required", False),
        _counter("sort_order"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_default_tag_set_name", "default_tag_set", ["name"])

    op.create_table(
        "system_dropdown",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("category", sa.String(40), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=False),
        _flag("is_active", True),
        _flag("allow_custom_values", False),
        _counter("sort_order"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "category", "name", name="uq_system_dropdown_category_name"
        ),
    )
    op.create_index("ix_system_dropdown_category", "system_dropdown", ["category"])

    op.create_table(
        "organization_dropdown",
        sa.Column("id", sa.Uuid(), nullable=False),
        _organization_fk(),
        sa.Column(
            "system_dropdown_id",
            sa.Uuid(),
            sa.ForeignKey("system_dropdown.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("category", sa.String(40), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=False),
        _flag("is_active", True),
        _flag("allow_custom_values", False),
        _counter("sort_order"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id",
            "category",
            "name",
            name="uq_organization_dropdown_category_name",
        ),
    )
    op.create_index(
        "ix_organization_dropdown_organization_id",
        "organization_dropdown",
        ["organization_id"],
    )
    op.create_index(
        "ix_organization_dropdown_system_dropdown_id",
        "organization_dropdown",
        ["system_dropdown_id"],
    )
    op.create_index(
        "ix_organization_dropdown_category", "organization_dropdown", ["category"]
    )

    op.create_table(
        "system_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        _flag("is_active", True),
        sa.Column("version", sa.String(20), nullable=False, server_default="1.0"),
        _counter("sort_order"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_system_template_category", "system_template", ["category"])


def downgrade() -> None:
    """Drop every governance table (reverse dependency order)."""
    for table in (
        "system_template",
        "organization_dropdown",
        "system_dropdown",
        "default_tag_set",
        "asset_group_member",
        "asset_group",
        "communication_template",
        "exercise",
        "runbook",
        "incident",
        "asset",
        "taggable",
        "tag",
        "organization",
    ):
        op.drop_table(table)
