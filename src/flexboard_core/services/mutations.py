"""Optimistic writes with reconciliation and exact rollback."""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Callable, Coroutine, Iterator, Mapping
from dataclasses import dataclass, field

from flexboard_core.adapters.remote import QueryOptions, QueryResult, RemoteSyncClient
from flexboard_core.domain.collections import get_collection
from flexboard_core.domain.entities import (
    CacheKey,
    CachedCollection,
    Entity,
    EntityId,
    TempId,
)
from flexboard_core.domain.mutations import (
    EntitySnapshot,
    MutationOperation,
    MutationStatus,
    PendingMutation,
)
from flexboard_core.errors import RemoteError
from flexboard_core.services.cache import CollectionUpdater, EntityCache

_logger = logging.getLogger(__name__)

_TEMP_IDS = itertools.count(1)

ErrorCallback = Callable[[EntityId, RemoteError], None]


def next_temp_id() -> TempId:
    """Return a process-wide unique temp id."""
    return TempId(next(_TEMP_IDS))


@dataclass(frozen=True)
class MutationOutcome:
    """Final result of one optimistic mutation."""

    entity: Entity | None = None
    error: RemoteError | None = None


_Starter = Callable[[], PendingMutation | None]


@dataclass
class OptimisticMutationCoordinator:
    """Applies writes to the cache immediately and settles them remotely.

    Each entity id has at most one mutation in flight. Later mutations on
    the same id wait in a queue and start, optimistic part included, once
    the previous one commits or rolls back.
    """

    cache: EntityCache
    remote: RemoteSyncClient
    on_error: ErrorCallback | None = None
    _pending: dict[EntityId, PendingMutation] = field(
        default_factory=dict, init=False, repr=False
    )
    _queued: dict[EntityId, deque[tuple[_Starter, asyncio.Future]]] = field(
        default_factory=dict, init=False, repr=False
    )
    _outcomes: dict[EntityId, asyncio.Future] = field(
        default_factory=dict, init=False, repr=False
    )
    _committed_ids: dict[TempId, str] = field(
        default_factory=dict, init=False, repr=False
    )
    _tasks: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)
    _marks: Iterator[int] = field(
        default_factory=itertools.count, init=False, repr=False
    )
    _open_reads: set[int] = field(default_factory=set, init=False, repr=False)
    _touched: dict[EntityId, tuple[int, PendingMutation]] = field(
        default_factory=dict, init=False, repr=False
    )

    def insert(
        self, key: CacheKey, payload: Mapping[str, object], *, seeded: bool = False
    ) -> TempId:
        """Prepend a new entity to ``key`` and persist it in the background.

        ``seeded`` marks ``key`` as a placeholder created for this insert, so
        a rollback removes the key instead of leaving an empty list behind.
        """
        get_collection(key.entity_type)
        temp_id = next_temp_id()
        outcome = self._new_outcome(temp_id)
        entity = Entity(id=temp_id, user_id=key.user_id, data=payload)
        self.cache.patch(key, _prepend(entity))
        mutation = PendingMutation(
            entity_id=temp_id,
            user_id=key.user_id,
            entity_type=key.entity_type,
            operation=MutationOperation.INSERT,
            payload=dict(payload),
            submitted_at=self.cache.now(),
            snapshots={key: EntitySnapshot(entity=entity, index=0)},
            seeded_keys=frozenset({key}) if seeded else frozenset(),
        )
        self._pending[temp_id] = mutation
        self._touch(temp_id, mutation)
        self._spawn(self._send_insert(mutation, entity, outcome))
        return temp_id

    def update(
        self,
        user_id: str,
        entity_type: str,
        entity_id: EntityId,
        fields: Mapping[str, object],
    ) -> EntityId:
        """Patch every cached copy of an entity and persist the change."""
        get_collection(entity_type)
        changes = dict(fields)
        return self._submit(
            entity_id,
            lambda outcome: self._start_update(
                user_id, entity_type, entity_id, changes, outcome
            ),
        )

    def delete(self, user_id: str, entity_type: str, entity_id: EntityId) -> EntityId:
        """Remove an entity from every cached view and delete it remotely."""
        get_collection(entity_type)
        return self._submit(
            entity_id,
            lambda outcome: self._start_delete(
                user_id, entity_type, entity_id, outcome
            ),
        )

    def acknowledge_insert(
        self,
        user_id: str,
        entity_type: str,
        temp_id: TempId,
        server_entity: Entity,
    ) -> bool:
        """Swap a temp entity for its persisted version, matching by id.

        Returns False when no cached view still holds the temp entity, which
        is the case for duplicate or late acknowledgements.
        """
        replaced = False
        for key in self.cache.keys_for(user_id, entity_type):
            collection = self.cache.get(key)
            if collection is None or collection.index_of(temp_id) is None:
                continue
            self.cache.patch_if_present(key, _swap_temp(temp_id, server_entity))
            replaced = True
        return replaced

    def resolve_id(self, entity_id: EntityId) -> EntityId:
        """Map a committed temp id to its server id."""
        if isinstance(entity_id, TempId):
            return self._committed_ids.get(entity_id, entity_id)
        return entity_id

    def pending(self, entity_id: EntityId) -> PendingMutation | None:
        return self._pending.get(self.resolve_id(entity_id))

    def begin_read(self) -> int:
        """Open a read window and return its mark.

        While any window is open, every mutation start and settlement is
        stamped so that a read can tell which entities changed under it.
        """
        mark = next(self._marks)
        self._open_reads.add(mark)
        return mark

    def end_read(self, mark: int) -> None:
        """Close a read window and forget stamps no open window needs."""
        self._open_reads.discard(mark)
        oldest = min(self._open_reads, default=None)
        if oldest is None:
            self._touched.clear()
            return
        self._touched = {
            entity_id: record
            for entity_id, record in self._touched.items()
            if record[0] > oldest
        }

    def mutations_since(
        self, mark: int, user_id: str, entity_type: str
    ) -> dict[EntityId, PendingMutation]:
        """Mutations a read opened at ``mark`` may not have seen.

        Covers every pending mutation plus those that started or settled
        after the mark. Failed mutations are left out; the server copy is
        authoritative for them.
        """
        mutations = {
            entity_id: mutation
            for entity_id, (stamp, mutation) in self._touched.items()
            if stamp > mark
        }
        mutations.update(self._pending)
        return {
            entity_id: mutation
            for entity_id, mutation in mutations.items()
            if mutation.user_id == user_id
            and mutation.entity_type == entity_type
            and mutation.status is not MutationStatus.FAILED
        }

    async def wait(self, entity_id: EntityId) -> Entity | None:
        """Wait for the latest unsettled mutation on an id; re-raise its error.

        Returns None at once when nothing is outstanding for the id.
        """
        outcome = self._outcomes.get(entity_id) or self._outcomes.get(
            self.resolve_id(entity_id)
        )
        if outcome is None:
            return None
        result: MutationOutcome = await outcome
        if result.error is not None:
            raise result.error
        return result.entity

    async def drain(self) -> None:
        """Wait until every dispatched remote write has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def discard_user(self, user_id: str) -> None:
        """Forget a user's pending work without rolling it back."""
        for entity_id, mutation in list(self._pending.items()):
            if mutation.user_id != user_id:
                continue
            del self._pending[entity_id]
            for _starter, outcome in self._queued.pop(entity_id, deque()):
                _settle(outcome, MutationOutcome())
            _logger.info(
                "Discarded pending %s of %s %s on sign-out",
                mutation.operation.value,
                mutation.entity_type,
                entity_id,
            )
        self._touched = {
            entity_id: record
            for entity_id, record in self._touched.items()
            if record[1].user_id != user_id
        }
        self._prune_committed_ids()

    def _submit(
        self,
        entity_id: EntityId,
        start: Callable[[asyncio.Future], PendingMutation | None],
    ) -> EntityId:
        target = self.resolve_id(entity_id)
        outcome = self._new_outcome(target)
        if target in self._pending:
            self._queued.setdefault(target, deque()).append(
                (lambda: start(outcome), outcome)
            )
            return target
        start(outcome)
        return target

    def _start_update(
        self,
        user_id: str,
        entity_type: str,
        entity_id: EntityId,
        fields: dict[str, object],
        outcome: asyncio.Future,
    ) -> PendingMutation | None:
        target = self.resolve_id(entity_id)
        snapshots = self._snapshot(user_id, entity_type, target)
        if not snapshots:
            _logger.info("Skipped update of missing %s %s", entity_type, target)
            _settle(outcome, MutationOutcome())
            return None
        for key in snapshots:
            self.cache.patch_if_present(key, _change(target, fields))
        mutation = PendingMutation(
            entity_id=target,
            user_id=user_id,
            entity_type=entity_type,
            operation=MutationOperation.UPDATE,
            payload=fields,
            submitted_at=self.cache.now(),
            snapshots=snapshots,
        )
        self._pending[target] = mutation
        self._touch(target, mutation)
        self._spawn(self._send_update(mutation, outcome))
        return mutation

    def _start_delete(
        self,
        user_id: str,
        entity_type: str,
        entity_id: EntityId,
        outcome: asyncio.Future,
    ) -> PendingMutation | None:
        target = self.resolve_id(entity_id)
        snapshots = self._snapshot(user_id, entity_type, target)
        if not snapshots:
            _logger.info("Skipped delete of missing %s %s", entity_type, target)
            _settle(outcome, MutationOutcome())
            return None
        for key in snapshots:
            self.cache.patch_if_present(key, _remove(target))
        mutation = PendingMutation(
            entity_id=target,
            user_id=user_id,
            entity_type=entity_type,
            operation=MutationOperation.DELETE,
            payload={},
            submitted_at=self.cache.now(),
            snapshots=snapshots,
        )
        self._pending[target] = mutation
        self._touch(target, mutation)
        self._spawn(self._send_delete(mutation, outcome))
        return mutation

    async def _send_insert(
        self, mutation: PendingMutation, entity: Entity, outcome: asyncio.Future
    ) -> None:
        temp_id = mutation.entity_id
        result = await self._query(
            mutation.entity_type,
            QueryOptions(insert=[entity.to_row(include_id=False)]),
        )
        if not self._is_current(mutation):
            self._ignore_late(mutation, outcome)
            return
        if not result.ok:
            for key in self.cache.keys_for(mutation.user_id, mutation.entity_type):
                self.cache.patch_if_present(key, _remove(temp_id))
            for key in mutation.seeded_keys:
                collection = self.cache.get(key)
                if collection is not None and collection.is_placeholder:
                    self.cache.invalidate(key)
            self._finish(mutation, outcome, MutationOutcome(error=result.error))
            return
        rows = result.data or []
        if not rows:
            _logger.warning(
                "Insert into %s returned no row; dropping cached views",
                mutation.entity_type,
            )
            for key in self.cache.keys_for(mutation.user_id, mutation.entity_type):
                collection = self.cache.get(key)
                if collection is not None and collection.index_of(temp_id) is not None:
                    self.cache.invalidate(key)
            self._finish(mutation, outcome, MutationOutcome())
            return
        server_entity = Entity.from_row(rows[0])
        self._committed_ids[temp_id] = str(server_entity.id)
        self.acknowledge_insert(
            mutation.user_id, mutation.entity_type, temp_id, server_entity
        )
        self._touch(server_entity.id, mutation)
        self._finish(mutation, outcome, MutationOutcome(entity=server_entity))

    async def _send_update(
        self, mutation: PendingMutation, outcome: asyncio.Future
    ) -> None:
        target = mutation.entity_id
        result = await self._query(
            mutation.entity_type,
            QueryOptions(eq={"id": target}, update=mutation.payload),
        )
        if not self._is_current(mutation):
            self._ignore_late(mutation, outcome)
            return
        if not result.ok:
            for key, snapshot in mutation.snapshots.items():
                self.cache.patch_if_present(key, _replace(target, snapshot.entity))
            self._finish(mutation, outcome, MutationOutcome(error=result.error))
            return
        rows = result.data or []
        if rows:
            committed = Entity.from_row(rows[0])
            for key in mutation.snapshots:
                self.cache.patch_if_present(key, _replace(target, committed))
        else:
            committed = _find_any(self.cache, mutation.snapshots, target)
        self._finish(mutation, outcome, MutationOutcome(entity=committed))

    async def _send_delete(
        self, mutation: PendingMutation, outcome: asyncio.Future
    ) -> None:
        target = mutation.entity_id
        result = await self._query(
            mutation.entity_type,
            QueryOptions(eq={"id": target}, delete=True),
        )
        if not self._is_current(mutation):
            self._ignore_late(mutation, outcome)
            return
        if not result.ok:
            for key, snapshot in mutation.snapshots.items():
                self.cache.patch_if_present(key, _reinsert(snapshot))
        self._finish(mutation, outcome, MutationOutcome(error=result.error))

    async def _query(self, entity_type: str, options: QueryOptions) -> QueryResult:
        collection = get_collection(entity_type).collection
        try:
            return await self.remote.query(collection, options)
        except RemoteError as exc:
            return QueryResult(data=None, error=exc)

    def _finish(
        self,
        mutation: PendingMutation,
        outcome: asyncio.Future,
        result: MutationOutcome,
    ) -> None:
        if result.error is None:
            mutation.status = MutationStatus.COMMITTED
        else:
            mutation.status = MutationStatus.FAILED
            _logger.warning(
                "Rolled back %s of %s %s: %s",
                mutation.operation.value,
                mutation.entity_type,
                mutation.entity_id,
                result.error,
            )
        self._pending.pop(mutation.entity_id, None)
        self._touch(mutation.entity_id, mutation)
        _settle(outcome, result)
        if result.error is not None and self.on_error is not None:
            self.on_error(mutation.entity_id, result.error)
        self._start_next(mutation.entity_id)
        self._prune_committed_ids()

    def _start_next(self, entity_id: EntityId) -> None:
        queue = self._queued.pop(entity_id, None)
        while queue:
            start, _outcome = queue.popleft()
            started = start()
            if started is None:
                continue
            if queue:
                self._queued.setdefault(started.entity_id, deque()).extend(queue)
            return

    def _ignore_late(self, mutation: PendingMutation, outcome: asyncio.Future) -> None:
        _logger.debug(
            "Ignoring late result for discarded %s of %s %s",
            mutation.operation.value,
            mutation.entity_type,
            mutation.entity_id,
        )
        _settle(outcome, MutationOutcome())

    def _is_current(self, mutation: PendingMutation) -> bool:
        return self._pending.get(mutation.entity_id) is mutation

    def _snapshot(
        self, user_id: str, entity_type: str, entity_id: EntityId
    ) -> dict[CacheKey, EntitySnapshot]:
        snapshots: dict[CacheKey, EntitySnapshot] = {}
        for key in self.cache.keys_for(user_id, entity_type):
            collection = self.cache.get(key)
            if collection is None:
                continue
            index = collection.index_of(entity_id)
            if index is None:
                continue
            following = collection.items[index + 1 : index + 2]
            snapshots[key] = EntitySnapshot(
                entity=collection.items[index],
                index=index,
                next_id=following[0].id if following else None,
            )
        return snapshots

    def _new_outcome(self, entity_id: EntityId) -> asyncio.Future:
        outcome = asyncio.get_running_loop().create_future()
        self._outcomes[entity_id] = outcome
        outcome.add_done_callback(
            lambda settled: self._forget_outcome(entity_id, settled)
        )
        return outcome

    def _forget_outcome(self, entity_id: EntityId, outcome: asyncio.Future) -> None:
        if self._outcomes.get(entity_id) is outcome:
            del self._outcomes[entity_id]

    def _prune_committed_ids(self) -> None:
        for temp_id, server_id in list(self._committed_ids.items()):
            if server_id not in self._pending and server_id not in self._queued:
                del self._committed_ids[temp_id]

    def _touch(self, entity_id: EntityId, mutation: PendingMutation) -> None:
        if not self._open_reads:
            return
        previous = self._touched.get(entity_id)
        # A failure never hides an earlier accepted write to the same id.
        if (
            mutation.status is MutationStatus.FAILED
            and previous is not None
            and previous[1].status is MutationStatus.COMMITTED
        ):
            return
        self._touched[entity_id] = (next(self._marks), mutation)

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _settle(outcome: asyncio.Future, result: MutationOutcome) -> None:
    if not outcome.done():
        outcome.set_result(result)


def _find_any(
    cache: EntityCache,
    snapshots: Mapping[CacheKey, EntitySnapshot],
    entity_id: EntityId,
) -> Entity | None:
    for key in snapshots:
        collection = cache.get(key)
        entity = collection.find(entity_id) if collection is not None else None
        if entity is not None:
            return entity
    return None


def _prepend(entity: Entity) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        return collection.replace_items((entity, *collection.items))

    return apply


def _remove(entity_id: EntityId) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        return collection.replace_items(
            entity for entity in collection.items if entity.id != entity_id
        )

    return apply


def _replace(entity_id: EntityId, replacement: Entity) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        return collection.replace_items(
            replacement if entity.id == entity_id else entity
            for entity in collection.items
        )

    return apply


def _change(entity_id: EntityId, fields: Mapping[str, object]) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        return collection.replace_items(
            entity.with_changes(fields) if entity.id == entity_id else entity
            for entity in collection.items
        )

    return apply


def _swap_temp(temp_id: TempId, server_entity: Entity) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        if collection.index_of(temp_id) is None:
            return collection
        if collection.index_of(server_entity.id) is not None:
            return _remove(temp_id)(collection)
        return _replace(temp_id, server_entity)(collection)

    return apply


def _reinsert(snapshot: EntitySnapshot) -> CollectionUpdater:
    def apply(collection: CachedCollection) -> CachedCollection:
        if collection.index_of(snapshot.entity.id) is not None:
            return collection
        items = list(collection.items)
        position = None
        if snapshot.next_id is not None:
            position = collection.index_of(snapshot.next_id)
        if position is None:
            position = min(snapshot.index, len(items))
        items.insert(position, snapshot.entity)
        return collection.replace_items(items)

    return apply
