"""
Unit tests for query predicates.

Tests cover:
- Building predicates with where()
- Client-side evaluation
- Null handling
- Conjunct flattening used by the router
"""

import pytest

from docgraph.entity import Entity
from docgraph.predicates import Comparison, Logical, conjuncts, match_all, resolve_path, where


@pytest.fixture
def task():
    return Entity(
        "task-1",
        "t1",
        {"status": "open", "priority": 3, "tags": ["a", "b"], "meta": {"owner": {"name": "ann"}}},
    )


class TestPredicates:
    """Tests for predicate evaluation."""

    def test_equality(self, task):
        """== compares field values."""
        assert (where("status") == "open").matches(task)
        assert not (where("status") == "done").matches(task)
        assert (where("status") != "done").matches(task)

    def test_ordering(self, task):
        """Ordering comparisons."""
        assert (where("priority") >= 3).matches(task)
        assert not (where("priority") > 3).matches(task)
        assert (where("priority") < 4).matches(task)

    def test_type_mismatch_never_matches(self, task):
        """Comparing incompatible types is False, not an error."""
        assert not (where("status") > 3).matches(task)

    def test_missing_field_never_orders(self, task):
        """Missing values never satisfy ordering comparisons."""
        assert not (where("missing") > 0).matches(task)

    def test_in_startswith_contains(self, task):
        """Collection and string operators."""
        assert where("status").in_(["open", "blocked"]).matches(task)
        assert where("status").startswith("op").matches(task)
        assert where("tags").contains("b").matches(task)
        assert not where("priority").contains("x").matches(task)

    def test_nested_path(self, task):
        """Dotted paths walk into nested mappings."""
        assert (where("meta.owner.name") == "ann").matches(task)
        assert resolve_path(task, "meta.owner.missing") is None
        assert resolve_path(task, "status.nope") is None

    def test_key_and_partition_paths(self, task):
        """$key and $partition resolve to entity identity."""
        assert (where("$key") == "task-1").matches(task)
        assert (where("$partition") == "t1").matches(task)

    def test_null_checks(self, task):
        """is_null / is_not_null replace == None."""
        assert where("missing").is_null().matches(task)
        assert where("status").is_not_null().matches(task)
        with pytest.raises(TypeError, match="is_null"):
            where("status") == None  # noqa: E711
        with pytest.raises(TypeError, match="is_not_null"):
            where("status") != None  # noqa: E711

    def test_logical_operators(self, task):
        """&, | and ~ combine predicates."""
        assert ((where("status") == "open") & (where("priority") == 3)).matches(task)
        assert ((where("status") == "done") | (where("priority") == 3)).matches(task)
        assert (~(where("status") == "done")).matches(task)
        assert match_all().matches(task)

    def test_invalid_path(self):
        """Invalid paths are rejected."""
        with pytest.raises(ValueError):
            where("")
        with pytest.raises(ValueError):
            where("a..b")


class TestConjuncts:
    """Tests for conjunct flattening."""

    def test_flattens_nested_and(self):
        """Nested ANDs flatten to their terms."""
        a, b, c = where("a") == 1, where("b") == 2, where("c") == 3
        assert conjuncts((a & b) & c) == [a, b, c]

    def test_or_is_one_term(self):
        """OR is not split."""
        pred = (where("a") == 1) | (where("b") == 2)
        assert conjuncts(pred) == [pred]
        assert isinstance(pred, Logical)

    def test_comparison_is_hashable(self):
        """Comparisons with list values can be hashed."""
        assert hash(Comparison("a", "IN", [1, 2])) == hash(Comparison("a", "IN", [1, 2]))
