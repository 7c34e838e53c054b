"""
Unit tests for schema types.

Tests cover:
- FieldDef creation and validation
- Reference field definitions
- AggregateDef strategies
- EntityTypeDef payload splitting and validation
"""

import pytest

from docgraph.errors import UnknownFieldError
from docgraph.schema import (
    EntityTypeDef,
    FieldKind,
    RecomputeStrategy,
    aggregate,
    field,
)


class TestFieldDef:
    """Tests for FieldDef."""

    def test_create_string_field(self):
        """String field can be created."""
        f = field("title", "str", required=True)
        assert f.name == "title"
        assert f.kind == FieldKind.STRING
        assert f.required is True

    def test_create_enum_field(self):
        """Enum field requires enum_values."""
        f = field("status", "enum", enum_values=("open", "done"))
        assert f.kind == FieldKind.ENUM
        assert f.enum_values == ("open", "done")

    def test_enum_field_without_values_raises(self):
        """Enum field without values raises error."""
        with pytest.raises(ValueError, match="enum_values required"):
            field("status", "enum")

    def test_invalid_kind_raises(self):
        """Unknown kind string raises error."""
        with pytest.raises(ValueError, match="Invalid field kind"):
            field("title", "text")

    def test_target_type_only_on_references(self):
        """target_type is rejected on non-reference fields."""
        with pytest.raises(ValueError, match="target_type only applies"):
            field("title", "str", target_type="User")

    def test_reference_kinds(self):
        """ref and list_ref are reference kinds."""
        assert field("owner", "ref", target_type="User").kind.is_reference
        assert field("members", "list_ref", target_type="User").kind.is_reference
        assert not field("tags", "list_str").kind.is_reference

    def test_validate_required(self):
        """Required field rejects None."""
        f = field("title", "str", required=True)
        assert f.validate_value(None) == (False, "Field 'title' is required")
        assert f.validate_value("x") == (True, None)

    def test_validate_int_rejects_bool(self):
        """bool is not accepted as an int."""
        f = field("open_count", "int")
        ok, error = f.validate_value(True)
        assert not ok
        assert "got bool" in error

    def test_validate_reference_values(self):
        """References are bare keys or key/partition mappings."""
        f = field("owner", "ref")
        assert f.validate_value("user-1")[0]
        assert f.validate_value({"key": "user-1", "partition": "t2"})[0]
        assert not f.validate_value({"partition": "t2"})[0]
        assert not f.validate_value(42)[0]

    def test_validate_list_ref_items(self):
        """Every list_ref item must be a reference."""
        f = field("members", "list_ref")
        assert f.validate_value(["u1", {"key": "u2", "partition": "t2"}])[0]
        ok, error = f.validate_value(["u1", 7])
        assert not ok
        assert "invalid references" in error

    def test_to_dict(self):
        """FieldDef serializes only non-default attributes."""
        f = field("members", "list_ref", target_type="User", ordered=False)
        assert f.to_dict() == {
            "name": "members",
            "kind": "list_ref",
            "target_type": "User",
            "ordered": False,
        }


class TestAggregateDef:
    """Tests for AggregateDef."""

    def test_default_strategy_is_recompute(self):
        """Aggregates recompute from source unless told otherwise."""
        assert aggregate("open_count").strategy == RecomputeStrategy.RECOMPUTE_FROM_SOURCE

    def test_strategy_from_string(self):
        """Strategy can be given by its name."""
        agg = aggregate("view_count", "incremental-delta")
        assert agg.strategy == RecomputeStrategy.INCREMENTAL_DELTA

    def test_unknown_strategy_raises(self):
        """Unknown strategy names are rejected."""
        with pytest.raises(ValueError, match="Invalid recompute strategy"):
            aggregate("open_count", "eventual")


class TestEntityTypeDef:
    """Tests for EntityTypeDef."""

    @pytest.fixture
    def project(self):
        return EntityTypeDef(
            name="Project",
            fields=(
                field("title", "str", required=True),
                field("tenantId", "str"),
                field("owner", "ref", target_type="User"),
                field("members", "list_ref", target_type="User"),
                field("open_count", "int", default=0),
            ),
            aggregates=(aggregate("open_count"),),
        )

    def test_empty_name_raises(self):
        """Entity type needs a name."""
        with pytest.raises(ValueError, match="name cannot be empty"):
            EntityTypeDef(name="")

    def test_duplicate_field_raises(self):
        """Field names must be unique."""
        with pytest.raises(ValueError, match="Duplicate field name"):
            EntityTypeDef(name="T", fields=(field("a", "str"), field("a", "int")))

    def test_aggregate_must_be_field(self):
        """Aggregates must name known fields."""
        with pytest.raises(ValueError, match="is not a field"):
            EntityTypeDef(name="T", aggregates=(aggregate("open_count"),))

    def test_reference_fields(self, project):
        """reference_fields lists ref and list_ref fields."""
        assert [f.name for f in project.reference_fields()] == ["owner", "members"]

    def test_get_reference_unknown_suggests(self, project):
        """Unknown reference field raises with suggestions."""
        with pytest.raises(UnknownFieldError) as exc_info:
            project.get_reference("member")
        assert "members" in exc_info.value.suggestions

    def test_get_reference_rejects_plain_field(self, project):
        """A non-reference field is not a reference."""
        with pytest.raises(UnknownFieldError):
            project.get_reference("title")

    def test_get_aggregate(self, project):
        """Aggregate lookup by field name."""
        assert project.get_aggregate("open_count").name == "open_count"
        assert project.get_aggregate("title") is None

    def test_split_payload(self, project):
        """Unknown payload keys go to the extension map."""
        fields, extra = project.split_payload({"title": "X", "color": "red"})
        assert fields == {"title": "X"}
        assert extra == {"color": "red"}

    def test_validate_payload(self, project):
        """Payload validation collects all errors."""
        ok, errors = project.validate_payload({"open_count": "many"})
        assert not ok
        assert len(errors) == 2

    def test_new_applies_defaults(self, project):
        """new() fills defaults and validates."""
        assert project.new(title="X") == {"title": "X", "open_count": 0}

    def test_new_unknown_field_raises(self, project):
        """new() rejects unknown fields."""
        with pytest.raises(TypeError, match="Unknown field"):
            project.new(title="X", colour="red")
