"""Unit tests for model defaults and the validated JSON payload models."""

from __future__ import annotations

from uuid import UUID

import pytest
from pydantic import ValidationError

from tests.unit.conftest import SAMPLE_ORG_ID


class TestTableDefaults:
    def test_tag_defaults(self) -> None:
        from tagwarden.db.models import Tag

        tag = Tag(organization_id=SAMPLE_ORG_ID, name="Production")

        assert isinstance(tag.id, UUID)
        assert tag.category == "custom"
        assert tag.color == "#6B7280"
        assert tag.usage_count == 0
        assert tag.is_system is False
        assert tag.created_at.tzinfo is not None

    def test_asset_group_defaults(self) -> None:
        from tagwarden.db.models import AssetGroup

        group = AssetGroup(organization_id=SAMPLE_ORG_ID, name="Servers")

        assert group.type == "custom"
        assert group.parent_group_id is None
        assert group.is_dynamic is False
        assert group.rules is None
        assert group.member_count == 0

    def test_ids_are_unique(self) -> None:
        from tagwarden.db.models import Organization

        assert Organization(name="a").id != Organization(name="b").id


class TestGroupRules:
    def test_aliases_and_field_names(self) -> None:
        from tagwarden.db.models import GroupRules

        by_alias = GroupRules.model_validate({"assetType": "server"})
        by_name = GroupRules.model_validate({"asset_type": "server"})

        assert by_alias == by_name
        assert by_alias.predicates() == {"type": "server"}

    def test_predicates_map_to_asset_columns(self) -> None:
        from tagwarden.db.models import GroupRules

        rules = GroupRules(
            asset_type="database", criticality="high", must_contact=False
        )

        assert rules.predicates() == {
            "type": "database",
            "criticality": "high",
            "must_contact": False,
        }

    def test_empty_rules_have_no_predicates(self) -> None:
        from tagwarden.db.models import GroupRules

        assert GroupRules().predicates() == {}

    def test_unknown_keys_rejected(self) -> None:
        from tagwarden.db.models import GroupRules

        with pytest.raises(ValidationError):
            GroupRules.model_validate({"owner": "alice"})


class TestTagDefinition:
    def test_defaults(self) -> None:
        from tagwarden.db.models import TagCategory, TagDefinition

        definition = TagDefinition(name="PCI")

        assert definition.category == TagCategory.CUSTOM
        assert definition.color == "#6B7280"

    @pytest.mark.parametrize(
        "raw",
        [
            {"name": ""},
            {"name": "x" * 51},
            {"name": "PCI", "color": "#12345"},
            {"name": "PCI", "category": "planet"},
            {"name": "PCI", "icon": "lock"},
        ],
    )
    def test_invalid_definitions(self, raw: dict) -> None:
        from tagwarden.db.models import TagDefinition

        with pytest.raises(ValidationError):
            TagDefinition.model_validate(raw)


class TestDropdownOption:
    def test_metadata_optional(self) -> None:
        from tagwarden.db.models import DropdownOption

        option = DropdownOption(value="sev1", label="SEV 1")

        assert option.model_dump(exclude_none=True) == {
            "value": "sev1",
            "label": "SEV 1",
        }

    def test_value_and_label_required(self) -> None:
        from tagwarden.db.models import DropdownOption

        with pytest.raises(ValidationError):
            DropdownOption.model_validate({"value": "sev1"})
