"""Unit tests for input validation shared by the engine's write paths."""

from __future__ import annotations

from uuid import uuid4

import pytest

from tagwarden.errors import ValidationError


class TestNamesAndColours:
    def test_name_is_stripped(self) -> None:
        from tagwarden.db.tags import validate_name

        assert validate_name("  Production ") == "Production"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 51])
    def test_bad_tag_names(self, name: str) -> None:
        from tagwarden.db.tags import validate_name

        with pytest.raises(ValidationError):
            validate_name(name)

    def test_group_names_allow_longer(self) -> None:
        from tagwarden.db.groups import MAX_GROUP_NAME_LENGTH
        from tagwarden.db.tags import validate_name

        assert validate_name("g" * 100, max_length=MAX_GROUP_NAME_LENGTH)

    @pytest.mark.parametrize("color", ["#6B7280", "#abcdef", "#000000"])
    def test_good_colours(self, color: str) -> None:
        from tagwarden.db.tags import validate_color

        assert validate_color(color) == color

    @pytest.mark.parametrize("color", ["", "red", "#ABC", "6B7280", "#6B72801"])
    def test_bad_colours(self, color: str) -> None:
        from tagwarden.db.tags import validate_color

        with pytest.raises(ValidationError):
            validate_color(color)


class TestEnumerations:
    def test_known_values_parse(self) -> None:
        from tagwarden.db.content import (
            parse_dropdown_category,
            parse_template_category,
        )
        from tagwarden.db.groups import parse_group_type
        from tagwarden.db.organizations import parse_status
        from tagwarden.db.tags import parse_category

        assert parse_category("incident_type") == "incident_type"
        assert parse_group_type("dynamic") == "dynamic"
        assert parse_status("suspended") == "suspended"
        assert parse_dropdown_category("severity_levels") == "severity_levels"
        assert parse_template_category("runbook") == "runbook"

    @pytest.mark.parametrize(
        ("module", "function"),
        [
            ("tagwarden.db.tags", "parse_category"),
            ("tagwarden.db.groups", "parse_group_type"),
            ("tagwarden.db.organizations", "parse_status"),
            ("tagwarden.db.content", "parse_dropdown_category"),
            ("tagwarden.db.content", "parse_template_category"),
            ("tagwarden.db.entities", "parse_entity_kind"),
        ],
    )
    def test_unknown_values_raise_validation_error(
        self, module: str, function: str
    ) -> None:
        import importlib

        parse = getattr(importlib.import_module(module), function)

        with pytest.raises(ValidationError, match="Unknown"):
            parse("nonsense")


class TestGroupRulesParsing:
    def test_rules_are_stored_by_field_name(self) -> None:
        from tagwarden.db.groups import parse_rules

        assert parse_rules({"assetType": "server", "mustContact": True}) == {
            "asset_type": "server",
            "must_contact": True,
        }

    @pytest.mark.parametrize("rules", [None, {}, {"criticality": None}])
    def test_rules_without_predicates_rejected(self, rules: dict | None) -> None:
        from tagwarden.db.groups import parse_rules

        with pytest.raises(ValidationError):
            parse_rules(rules)

    def test_malformed_rules_wrap_pydantic_error(self) -> None:
        from tagwarden.db.groups import parse_rules

        with pytest.raises(ValidationError, match="Malformed group rules"):
            parse_rules({"mustContact": "sometimes"})


class TestPayloads:
    def test_options_normalised(self) -> None:
        from tagwarden.db.content import validate_options
        from tagwarden.db.models import DropdownOption

        options = validate_options(
            [
                DropdownOption(value="a", label="A"),
                {"value": "b", "label": "B", "metadata": {"rank": 2}},
            ]
        )

        assert options == [
            {"value": "a", "label": "A"},
            {"value": "b", "label": "B", "metadata": {"rank": 2}},
        ]

    def test_duplicate_option_values_rejected(self) -> None:
        from tagwarden.db.content import validate_options

        with pytest.raises(ValidationError, match="unique"):
            validate_options(
                [{"value": "a", "label": "A"}, {"value": "a", "label": "Again"}]
            )

    def test_tag_definitions_serialise_enums(self) -> None:
        from tagwarden.db.content import validate_tag_definitions

        (definition,) = validate_tag_definitions(
            [{"name": "PCI", "category": "compliance"}]
        )

        assert definition["category"] == "compliance"
        assert type(definition["category"]) is str


class TestEntityRef:
    def test_of_coerces_kind(self) -> None:
        from tagwarden.db.entities import EntityRef
        from tagwarden.db.models import EntityKind

        entity_id = uuid4()
        ref = EntityRef.of("incident", entity_id)

        assert ref.kind is EntityKind.INCIDENT
        assert ref == EntityRef(EntityKind.INCIDENT, entity_id)
        assert len({ref, EntityRef.of("incident", entity_id)}) == 1

    def test_every_kind_has_a_table(self) -> None:
        from tagwarden.db.entities import model_for
        from tagwarden.db.models import EntityKind

        tables = {model_for(kind).__tablename__ for kind in EntityKind}

        assert tables == {
            "asset",
            "incident",
            "runbook",
            "communication_template",
            "exercise",
        }


class TestErrorHierarchy:
    def test_everything_is_a_governance_error(self) -> None:
        from tagwarden.errors import (
            Conflict,
            Forbidden,
            GovernanceError,
            NotFound,
            StoreError,
        )

        for error in (NotFound, Conflict, Forbidden, ValidationError, StoreError):
            assert issubclass(error, GovernanceError)

    def test_builtin_bases_for_callers(self) -> None:
        from tagwarden.errors import Forbidden, NotFound

        assert issubclass(NotFound, LookupError)
        assert issubclass(Forbidden, PermissionError)
        assert issubclass(ValidationError, ValueError)
