"""
Unit tests for the reference resolver.

Tests cover:
- One batched fetch per partition
- Dangling references
- Partial failures and markers
- Limits and batch splitting
- Copies per owner
"""

import asyncio

import pytest

from docgraph.entity import Entity, HydrationFailure
from docgraph.errors import (
    DeadlineExceededError,
    PartialHydrationError,
    ReferenceLimitError,
    StoreConnectionError,
    UnknownFieldError,
    ValidationError,
)
from docgraph.hydrator import ReferenceResolver
from docgraph.registry import SchemaRegistry
from docgraph.schema import EntityTypeDef, field
from docgraph.stores.memory import InMemoryDocumentStore


def user(key, partition):
    return Entity(key, partition, {"name": key.upper()}, type_name="User")


class ChunkFailingStore(InMemoryDocumentStore):
    """Fails batches containing u0; other batches hang until cancelled."""

    def __init__(self):
        super().__init__()
        self.cancelled = 0

    async def get_many(self, keys, partition):
        if "u0" in keys:
            raise StoreConnectionError("down", partition=partition)
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return [], list(keys)


class TestReferenceResolver:
    """Tests for ReferenceResolver."""

    @pytest.fixture
    def store(self):
        store = InMemoryDocumentStore()
        store.seed(
            [
                user("u1", "t1"),
                user("u2", "t1"),
                user("u3", "t2"),
                user("u4", "t3"),
            ]
        )
        return store

    @pytest.fixture
    def resolver(self, store):
        return ReferenceResolver(store)

    @pytest.mark.asyncio
    async def test_one_batch_per_partition(self, resolver, store):
        """M owners over K ids in P partitions issue exactly P fetches."""
        owners = [
            Entity("task-1", "t1", {"assignees": ["u1", {"key": "u3", "partition": "t2"}]}),
            Entity("task-2", "t1", {"assignees": ["u2", "u1"]}),
            Entity("task-3", "t1", {"assignees": [{"key": "u4", "partition": "t3"}, "u2"]}),
        ]

        await resolver.hydrate(owners, "assignees")

        assert len(store.stats.batch_reads) == 3
        assert store.stats.point_reads == 0
        assert sorted(store.stats.batch_reads_for("t1")[0]) == ["u1", "u2"]
        assert [u.key for u in owners[0].association("assignees")] == ["u1", "u3"]
        assert [u.key for u in owners[2].association("assignees")] == ["u4", "u2"]

    @pytest.mark.asyncio
    async def test_dangling_reference_omitted(self, resolver):
        """A missing target is silently omitted."""
        owner = Entity("task-1", "t1", {"assignees": ["u1", "ghost"]})

        [hydrated] = await resolver.hydrate([owner], "assignees")

        assert hydrated is owner
        assert [u.key for u in owner.association("assignees")] == ["u1"]
        assert owner.hydration_errors == {}

    @pytest.mark.asyncio
    async def test_single_reference_field(self, resolver):
        """A single reference hydrates to a one-element list."""
        owner = Entity("task-1", "t1", {"owner": "u2"})
        await resolver.hydrate([owner], "owner")
        assert owner.association("owner")[0]["name"] == "U2"

    @pytest.mark.asyncio
    async def test_absent_field_hydrates_empty(self, resolver, store):
        """Owners without references get an empty association and cost no fetch."""
        owner = Entity("task-1", "t1", {})
        await resolver.hydrate([owner], "assignees")
        assert owner.association("assignees") == []
        assert store.stats.batch_reads == []

    @pytest.mark.asyncio
    async def test_reference_fields_not_mutated(self, resolver):
        """Persisted reference values stay as identifiers."""
        owner = Entity("task-1", "t1", {"assignees": ["u1"]})
        await resolver.hydrate([owner], "assignees")
        assert owner.to_document() == {"assignees": ["u1"]}

    @pytest.mark.asyncio
    async def test_targets_copied_per_owner(self, resolver):
        """Owners never share target instances."""
        a = Entity("task-1", "t1", {"owner": "u1"})
        b = Entity("task-2", "t1", {"owner": "u1"})

        await resolver.hydrate([a, b], "owner")

        target_a = a.association("owner")[0]
        target_b = b.association("owner")[0]
        assert target_a == target_b
        assert target_a is not target_b
        target_a.fields["name"] = "changed"
        assert target_b["name"] == "U1"

    @pytest.mark.asyncio
    async def test_partial_failure_raises(self, resolver, store):
        """A failed scope raises PartialHydrationError with the failed scopes."""
        store.fail_partition("t2", StoreConnectionError("down", partition="t2"))
        ok_owner = Entity("task-1", "t1", {"assignees": ["u1"]})
        bad_owner = Entity("task-2", "t1", {"assignees": ["u2", {"key": "u3", "partition": "t2"}]})

        with pytest.raises(PartialHydrationError) as exc_info:
            await resolver.hydrate([ok_owner, bad_owner], "assignees")

        error = exc_info.value
        assert error.failed_scopes == ["t2"]
        assert isinstance(error.errors["t2"], StoreConnectionError)
        assert error.entities == [ok_owner, bad_owner]
        assert ok_owner.is_hydrated("assignees")
        assert not bad_owner.is_hydrated("assignees")

    @pytest.mark.asyncio
    async def test_partial_failure_allowed(self, resolver, store):
        """allow_partial returns entities carrying failure markers."""
        store.fail_partition("t3", StoreConnectionError("down", partition="t3"))
        ok_owner = Entity("task-1", "t1", {"assignees": ["u1"]})
        bad_owner = Entity("task-2", "t1", {"assignees": [{"key": "u4", "partition": "t3"}]})

        result = await resolver.hydrate([ok_owner, bad_owner], "assignees", allow_partial=True)

        assert result == [ok_owner, bad_owner]
        assert [u.key for u in ok_owner.association("assignees")] == ["u1"]
        marker = bad_owner.hydration_errors["assignees"]
        assert isinstance(marker, HydrationFailure)
        assert marker.scopes == ["t3"]
        assert "down" in marker.error

    @pytest.mark.asyncio
    async def test_reference_limit(self, store):
        """Exceeding the per-owner limit fails before any fetch."""
        resolver = ReferenceResolver(store, max_references_per_entity=2)
        owner = Entity("task-1", "t1", {"assignees": ["u1", "u2", "u3"]})

        with pytest.raises(ReferenceLimitError) as exc_info:
            await resolver.hydrate([owner], "assignees")

        assert exc_info.value.count == 3
        assert store.stats.batch_reads == []

    @pytest.mark.asyncio
    async def test_large_group_split_into_batches(self):
        """A partition group larger than max_batch_size is chunked."""
        store = InMemoryDocumentStore()
        store.seed([user(f"u{i}", "t1") for i in range(250)])
        resolver = ReferenceResolver(store, max_batch_size=100)
        owner = Entity("team", "t1", {"members": [f"u{i}" for i in range(250)]})

        await resolver.hydrate([owner], "members")

        assert [len(keys) for keys in store.stats.batch_reads_for("t1")] == [100, 100, 50]
        assert len(owner.association("members")) == 250

    @pytest.mark.asyncio
    async def test_hydrate_many_shares_batches(self, resolver, store):
        """Several fields still cost one fetch per partition."""
        owner = Entity("task-1", "t1", {"owner": "u1", "reviewers": ["u2", "u1"]})

        await resolver.hydrate_many([owner], ["owner", "reviewers"])

        assert len(store.stats.batch_reads) == 1
        assert [u.key for u in owner.association("reviewers")] == ["u2", "u1"]

    @pytest.mark.asyncio
    async def test_invalid_reference_value(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.hydrate([Entity("task-1", "t1", {"owner": 42})], "owner")

    @pytest.mark.asyncio
    async def test_registered_type_must_declare_field(self, store):
        """Registered owner types reject unknown reference fields."""
        registry = SchemaRegistry()
        registry.register(
            EntityTypeDef(name="Task", fields=(field("owner", "ref", target_type="User"),))
        )
        resolver = ReferenceResolver(store, registry=registry)
        owner = Entity("task-1", "t1", {"owner": "u1"}, type_name="Task")

        with pytest.raises(UnknownFieldError):
            await resolver.hydrate([owner], "ownr")
        await resolver.hydrate([owner], "owner")
        assert owner.is_hydrated("owner")

    @pytest.mark.asyncio
    async def test_deadline(self, store):
        """Slow fetches raise DeadlineExceededError."""
        store.latency = 0.5
        resolver = ReferenceResolver(store)
        owner = Entity("task-1", "t1", {"owner": "u1"})

        with pytest.raises(DeadlineExceededError):
            await resolver.hydrate([owner], "owner", deadline=0.05)

    @pytest.mark.asyncio
    async def test_fetches_run_concurrently(self, store):
        """Partition groups are fetched in parallel, not one after another."""
        store.latency = 0.1
        resolver = ReferenceResolver(store)
        owner = Entity(
            "task-1",
            "t1",
            {"assignees": ["u1", {"key": "u3", "partition": "t2"}, {"key": "u4", "partition": "t3"}]},
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        await resolver.hydrate([owner], "assignees")

        assert loop.time() - started < 0.25

    @pytest.mark.asyncio
    async def test_failed_chunk_cancels_siblings(self):
        """When one chunk of a scope fails, the scope's other fetches are stopped."""
        store = ChunkFailingStore()
        resolver = ReferenceResolver(store, max_batch_size=1)
        owner = Entity("task-1", "t1", {"assignees": ["u0", "u1", "u2"]})

        await resolver.hydrate([owner], "assignees", allow_partial=True)

        assert owner.hydration_errors["assignees"].scopes == ["t1"]
        assert store.cancelled == 2
