"""
Unit tests for entities and references.

Tests cover:
- Reference parsing and stored form
- Payload splitting through the registry
- Detached copies
- Associations are never persisted
"""

import pytest

from docgraph.entity import Entity, Reference
from docgraph.registry import SchemaRegistry
from docgraph.schema import EntityTypeDef, field


class TestReference:
    """Tests for Reference."""

    def test_parse_bare_key_uses_owner_partition(self):
        """A bare key lives in the owner's partition."""
        assert Reference.parse("u1", "t1") == Reference("u1", "t1")

    def test_parse_mapping(self):
        """A mapping carries its own partition."""
        assert Reference.parse({"key": "u1", "partition": "t2"}, "t1") == Reference("u1", "t2")

    def test_parse_mapping_without_partition(self):
        """A mapping without partition falls back to the owner's."""
        assert Reference.parse({"key": "u1"}, "t1") == Reference("u1", "t1")

    @pytest.mark.parametrize("value", ["", 42, None, {"partition": "t1"}])
    def test_parse_invalid(self, value):
        """Non-references raise ValueError."""
        with pytest.raises(ValueError):
            Reference.parse(value, "t1")

    def test_to_value_shorthand(self):
        """Same-partition references use the bare key."""
        ref = Reference("u1", "t1")
        assert ref.to_value("t1") == "u1"
        assert ref.to_value("t2") == {"key": "u1", "partition": "t1"}
        assert str(ref) == "t1/u1"


class TestEntity:
    """Tests for Entity."""

    @pytest.fixture
    def registry(self):
        registry = SchemaRegistry()
        registry.register(
            EntityTypeDef(
                name="Task",
                fields=(field("title", "str"), field("assignees", "list_ref")),
            )
        )
        return registry

    def test_from_document_splits_known_fields(self, registry):
        """Registered types keep unmodeled keys in the extension map."""
        entity = Entity.from_document(
            "k1", "t1", {"title": "X", "color": "red"}, type_name="Task", registry=registry
        )
        assert entity.fields == {"title": "X"}
        assert entity.extra == {"color": "red"}
        assert entity.get("color") == "red"
        assert entity["title"] == "X"
        assert "color" in entity

    def test_from_document_unregistered_type(self, registry):
        """Unregistered types treat every key as a field."""
        entity = Entity.from_document("k1", "t1", {"a": 1}, type_name="Other", registry=registry)
        assert entity.fields == {"a": 1}
        assert entity.extra == {}

    def test_to_document_excludes_associations(self):
        """Associations are transient."""
        entity = Entity("k1", "t1", {"owner": "u1"}, extra={"x": 1})
        entity.associations["owner"] = [Entity("u1", "t1")]
        assert entity.to_document() == {"owner": "u1", "x": 1}

    def test_references_single_and_list(self):
        """Single references become one-element lists."""
        entity = Entity("k1", "t1", {"owner": "u1", "members": ["u2", {"key": "u3", "partition": "t2"}]})
        assert entity.references("owner") == [Reference("u1", "t1")]
        assert entity.references("members") == [Reference("u2", "t1"), Reference("u3", "t2")]
        assert entity.references("missing") == []

    def test_association_requires_hydration(self):
        """Reading an unhydrated association raises KeyError."""
        entity = Entity("k1", "t1")
        assert not entity.is_hydrated("owner")
        with pytest.raises(KeyError):
            entity.association("owner")

    def test_copy_is_detached(self):
        """copy() shares no mutable state and drops associations."""
        entity = Entity("k1", "t1", {"tags": ["a"]}, version="v1")
        entity.associations["owner"] = []
        clone = entity.copy()

        clone.fields["tags"].append("b")

        assert entity.fields["tags"] == ["a"]
        assert clone.version == "v1"
        assert clone.associations == {}

    def test_evolve(self):
        """evolve() returns a copy with replaced fields."""
        entity = Entity("k1", "t1", {"n": 1})
        evolved = entity.evolve(n=2)
        assert evolved["n"] == 2
        assert entity["n"] == 1
        assert evolved.ref == Reference("k1", "t1")
