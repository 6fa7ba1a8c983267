"""Database module for the governance engine.

Provides async SQLModel operations with PostgreSQL (SQLite for tests).
"""

from __future__ import annotations

from tagwarden.db.bootstrap import (
    get_expected_tables,
    is_db_configured,
    run_alembic_upgrade,
    verify_schema,
)
from tagwarden.db.effective import (
    EffectiveTag,
    EffectiveTags,
    MergedDropdown,
    MergedTemplate,
    get_effective_tags,
    get_merged_dropdowns,
    get_merged_templates,
    provision_new_organization,
    resolve_layers,
)
from tagwarden.db.engine import close_db, get_engine, get_session, init_db
from tagwarden.db.entities import EntityRef
from tagwarden.db.groups import (
    GroupNode,
    MoveResult,
    add_members,
    create_group,
    delete_group,
    get_group,
    get_path,
    get_tree,
    list_groups,
    list_members,
    move_members,
    recompute_all_dynamic_groups,
    recompute_dynamic_group,
    remove_members,
    update_group,
)
from tagwarden.db.merge import MergeResult, delete_tag_cascade, merge_tags
from tagwarden.db.models import (
    Asset,
    AssetGroup,
    AssetGroupMember,
    DefaultTagSet,
    EntityKind,
    GroupRules,
    GroupType,
    Organization,
    OrganizationDropdown,
    SystemDropdown,
    SystemTemplate,
    Tag,
    TagCategory,
    Taggable,
)
from tagwarden.db.organizations import (
    create_organization,
    get_organization,
    set_organization_status,
)
from tagwarden.db.taggables import (
    attach_tags,
    bulk_attach,
    bulk_detach,
    detach_tags,
    list_entities_for_tag,
    set_entity_tags,
)
from tagwarden.db.tags import (
    create_tag,
    delete_tag,
    get_tag,
    get_tags_for_entity,
    increment_usage,
    list_tags,
    update_tag,
)

__all__ = [
    # Models
    "Asset",
    "AssetGroup",
    "AssetGroupMember",
    "DefaultTagSet",
    "EntityKind",
    "GroupRules",
    "GroupType",
    "Organization",
    "OrganizationDropdown",
    "SystemDropdown",
    "SystemTemplate",
    "Tag",
    "TagCategory",
    "Taggable",
    # Records
    "EffectiveTag",
    "EffectiveTags",
    "EntityRef",
    "GroupNode",
    "MergeResult",
    "MergedDropdown",
    "MergedTemplate",
    "MoveResult",
    # Engine
    "close_db",
    "get_engine",
    "get_session",
    "init_db",
    # Bootstrap
    "get_expected_tables",
    "is_db_configured",
    "run_alembic_upgrade",
    "verify_schema",
    # Tags
    "create_tag",
    "delete_tag",
    "delete_tag_cascade",
    "get_tag",
    "get_tags_for_entity",
    "increment_usage",
    "list_tags",
    "merge_tags",
    "update_tag",
    # Associations
    "attach_tags",
    "bulk_attach",
    "bulk_detach",
    "detach_tags",
    "list_entities_for_tag",
    "set_entity_tags",
    # Groups
    "add_members",
    "create_group",
    "delete_group",
    "get_group",
    "get_path",
    "get_tree",
    "list_groups",
    "list_members",
    "move_members",
    "recompute_all_dynamic_groups",
    "recompute_dynamic_group",
    "remove_members",
    "update_group",
    # Effective configuration
    "get_effective_tags",
    "get_merged_dropdowns",
    "get_merged_templates",
    "provision_new_organization",
    "resolve_layers",
    # Organizations
    "create_organization",
    "get_organization",
    "set_organization_status",
]
