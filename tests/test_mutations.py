"""Tests for optimistic mutations."""

import asyncio

import pytest

from flexboard_core.domain.entities import CacheKey, Entity, QueryParams, TempId
from flexboard_core.domain.mutations import MutationOperation
from flexboard_core.errors import (
    CacheInvariantViolation,
    RemoteError,
    RemoteRejection,
    TransientNetworkError,
)
from flexboard_core.services.cache import EntityCache
from flexboard_core.services.mutations import OptimisticMutationCoordinator
from tests.conftest import USER_ID, FakeRemoteSyncClient, make_entity, seed

TODOS = CacheKey(USER_ID, "todos")
TODAY = CacheKey(USER_ID, "todos", QueryParams.build(eq={"date": "2024-03-15"}))


def test_insert_prepends_then_swaps_in_server_entity(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a", title="Old")])

    async def scenario() -> tuple[TempId, Entity | None]:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        temp_id = coordinator.insert(TODOS, {"title": "New"})
        assert cache.get(TODOS).ids() == [temp_id, "a"]
        assert coordinator.pending(temp_id).operation is MutationOperation.INSERT
        created = await coordinator.wait(temp_id)
        return temp_id, created

    temp_id, created = asyncio.run(scenario())

    assert created is not None
    assert created.id == "server-1"
    assert cache.get(TODOS).ids() == ["server-1", "a"]
    _collection, options = remote.calls_for("insert")[0]
    assert options.insert == [{"title": "New", "user_id": USER_ID}]
    assert str(temp_id) not in str(options.insert)


def test_failed_insert_leaves_cache_identical(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    before = seed(cache, TODOS, [make_entity("a"), make_entity("b")])
    remote.respond("todos", "insert", error=RemoteRejection("violates check", "23514"))
    errors: list[tuple[object, RemoteError]] = []

    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(
            cache,
            remote,
            on_error=lambda entity_id, error: errors.append((entity_id, error)),
        )
        temp_id = coordinator.insert(TODOS, {"title": "Doomed"})
        with pytest.raises(RemoteRejection) as excinfo:
            await coordinator.wait(temp_id)
        assert excinfo.value.code == "23514"
        assert cache.get(TODOS) == before
        assert coordinator.pending(temp_id) is None

    asyncio.run(scenario())

    after = cache.get(TODOS)
    assert after == before
    assert all(
        restored is original
        for restored, original in zip(after.items, before.items, strict=True)
    )
    assert len(errors) == 1
    assert isinstance(errors[0][0], TempId)


def test_duplicate_acknowledgement_is_a_noop(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a")])

    async def scenario() -> tuple[OptimisticMutationCoordinator, TempId]:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        temp_id = coordinator.insert(TODOS, {"title": "New"})
        await coordinator.drain()
        return coordinator, temp_id

    coordinator, temp_id = asyncio.run(scenario())
    server_entity = cache.get(TODOS).items[0]

    assert not coordinator.acknowledge_insert(USER_ID, "todos", temp_id, server_entity)
    assert cache.get(TODOS).ids() == ["server-1", "a"]


def test_acknowledgement_drops_temp_when_server_copy_already_cached(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    temp_id = TempId(999)
    server_entity = make_entity("server-9", title="New")
    seed(
        cache,
        TODOS,
        [Entity(id=temp_id, user_id=USER_ID, data={"title": "New"}), server_entity],
    )
    coordinator = OptimisticMutationCoordinator(cache, remote)

    assert coordinator.acknowledge_insert(USER_ID, "todos", temp_id, server_entity)
    assert cache.get(TODOS).ids() == ["server-9"]


def test_insert_into_uncached_key_is_an_invariant_violation(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        with pytest.raises(CacheInvariantViolation):
            coordinator.insert(TODOS, {"title": "Nowhere"})

    asyncio.run(scenario())
    assert remote.calls == []


def test_insert_without_returned_row_invalidates_views(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a")])
    seed(cache, TODAY, [make_entity("a")])
    remote.respond("todos", "insert", data=[])

    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.insert(TODOS, {"title": "Hidden by policy"})
        await coordinator.drain()

    asyncio.run(scenario())

    assert cache.get(TODOS) is None
    assert cache.get(TODAY) is not None


def test_update_rollback_restores_exact_snapshot_in_every_view(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    original = make_entity("a", title="Report", completed=False)
    seed(cache, TODOS, [original, make_entity("b")])
    seed(cache, TODAY, [original])
    remote.respond("todos", "update", error=TransientNetworkError("timed out"))

    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.update(USER_ID, "todos", "a", {"completed": True})
        assert cache.get(TODOS).items[0].get("completed") is True
        assert cache.get(TODAY).items[0].get("completed") is True
        with pytest.raises(TransientNetworkError):
            await coordinator.wait("a")

    asyncio.run(scenario())

    assert cache.get(TODOS).items[0] is original
    assert cache.get(TODAY).items[0] is original
    assert cache.get(TODOS).ids() == ["a", "b"]


def test_update_reconciles_with_server_row(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a", title="Report", completed=False)])
    remote.respond(
        "todos",
        "update",
        data=[
            {
                "id": "a",
                "user_id": USER_ID,
                "title": "Report",
                "completed": True,
                "completed_at": "2024-03-15T12:00:00+00:00",
            }
        ],
    )

    async def scenario() -> Entity | None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.update(USER_ID, "todos", "a", {"completed": True})
        return await coordinator.wait("a")

    committed = asyncio.run(scenario())

    assert committed is not None
    assert committed.get("completed_at") == "2024-03-15T12:00:00+00:00"
    assert cache.get(TODOS).items[0] == committed
    _collection, options = remote.calls_for("update")[0]
    assert options.eq == {"id": "a"}
    assert options.update == {"completed": True}


def test_update_of_missing_entity_resolves_as_noop(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a")])

    async def scenario() -> Entity | None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.update(USER_ID, "todos", "gone", {"title": "x"})
        return await coordinator.wait("gone")

    assert asyncio.run(scenario()) is None
    assert remote.calls == []


def test_delete_rollback_restores_original_position(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a"), make_entity("b"), make_entity("c")])
    remote.respond("todos", "delete", error=RemoteRejection("foreign key"))

    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.delete(USER_ID, "todos", "b")
        assert cache.get(TODOS).ids() == ["a", "c"]
        with pytest.raises(RemoteRejection):
            await coordinator.wait("b")

    asyncio.run(scenario())

    assert cache.get(TODOS).ids() == ["a", "b", "c"]


def test_delete_rollback_clamps_when_neighbour_is_gone(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a"), make_entity("b"), make_entity("c")])

    async def scenario() -> None:
        gate = asyncio.Event()
        remote.respond("todos", "delete", error=RemoteRejection("locked"), gate=gate)
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.delete(USER_ID, "todos", "b")
        await asyncio.sleep(0)
        cache.patch(
            TODOS,
            lambda collection: collection.replace_items(
                entity for entity in collection.items if entity.id != "c"
            ),
        )
        gate.set()
        await coordinator.drain()

    asyncio.run(scenario())

    assert cache.get(TODOS).ids() == ["a", "b"]


def test_successful_delete_removes_everywhere(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a"), make_entity("b")])
    seed(cache, TODAY, [make_entity("b")])

    async def scenario() -> None:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.delete(USER_ID, "todos", "b")
        await coordinator.wait("b")
        assert coordinator.pending("b") is None

    asyncio.run(scenario())

    assert cache.get(TODOS).ids() == ["a"]
    assert cache.get(TODAY).ids() == []
    _collection, options = remote.calls_for("delete")[0]
    assert options.eq == {"id": "b"}


def test_second_update_waits_for_the_first(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a", title="Draft")])

    async def scenario() -> None:
        gate = asyncio.Event()
        remote.respond("todos", "update", data=[], gate=gate)
        coordinator = OptimisticMutationCoordinator(cache, remote)
        coordinator.update(USER_ID, "todos", "a", {"title": "First"})
        coordinator.update(USER_ID, "todos", "a", {"title": "Second"})
        await asyncio.sleep(0)

        assert len(remote.calls_for("update")) == 1
        assert cache.get(TODOS).items[0].get("title") == "First"
        assert coordinator.pending("a").payload == {"title": "First"}

        gate.set()
        await coordinator.drain()
        assert coordinator.pending("a") is None

    asyncio.run(scenario())

    updates = remote.calls_for("update")
    assert [options.update for _collection, options in updates] == [
        {"title": "First"},
        {"title": "Second"},
    ]
    assert cache.get(TODOS).items[0].get("title") == "Second"


def test_update_queued_behind_insert_targets_server_id(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [])

    async def scenario() -> TempId:
        gate = asyncio.Event()
        remote.respond(
            "todos",
            "insert",
            data=[{"id": "srv-9", "user_id": USER_ID, "title": "New"}],
            gate=gate,
        )
        coordinator = OptimisticMutationCoordinator(cache, remote)
        temp_id = coordinator.insert(TODOS, {"title": "New"})
        coordinator.update(USER_ID, "todos", temp_id, {"title": "Renamed"})
        await asyncio.sleep(0)
        gate.set()
        await coordinator.drain()
        return temp_id

    asyncio.run(scenario())

    _collection, options = remote.calls_for("update")[0]
    assert options.eq == {"id": "srv-9"}
    assert cache.get(TODOS).ids() == ["srv-9"]
    assert cache.get(TODOS).items[0].get("title") == "Renamed"


def test_discarded_mutation_ignores_late_acknowledgement(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [make_entity("a")])

    async def scenario() -> Entity | None:
        gate = asyncio.Event()
        remote.respond(
            "todos",
            "insert",
            data=[{"id": "late", "user_id": USER_ID, "title": "Late"}],
            gate=gate,
        )
        coordinator = OptimisticMutationCoordinator(cache, remote)
        temp_id = coordinator.insert(TODOS, {"title": "Late"})
        await asyncio.sleep(0)

        coordinator.discard_user(USER_ID)
        cache.invalidate_all(USER_ID)
        assert coordinator.pending(temp_id) is None

        gate.set()
        await coordinator.drain()
        return await coordinator.wait(temp_id)

    assert asyncio.run(scenario()) is None
    assert cache.get(TODOS) is None


def test_settled_mutations_release_their_bookkeeping(
    cache: EntityCache, remote: FakeRemoteSyncClient
) -> None:
    seed(cache, TODOS, [])

    async def scenario() -> OptimisticMutationCoordinator:
        coordinator = OptimisticMutationCoordinator(cache, remote)
        for index in range(50):
            temp_id = coordinator.insert(TODOS, {"title": f"Task {index}"})
            coordinator.update(USER_ID, "todos", temp_id, {"completed": True})
            await coordinator.drain()
        await asyncio.sleep(0)
        return coordinator

    coordinator = asyncio.run(scenario())

    assert len(cache.get(TODOS).items) == 50
    assert all(entity.get("completed") is True for entity in cache.get(TODOS).items)
    assert coordinator._outcomes == {}
    assert coordinator._committed_ids == {}
    assert coordinator._pending == {}
