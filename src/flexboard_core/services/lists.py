"""Stale-while-revalidate list access and the per-user dashboard session."""

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date

from flexboard_core.adapters.remote import QueryOptions, RemoteSyncClient
from flexboard_core.domain.collections import get_collection
from flexboard_core.domain.entities import (
    CacheKey,
    CachedCollection,
    Entity,
    EntityId,
    QueryParams,
    TempId,
)
from flexboard_core.domain.mutations import MutationOperation, PendingMutation
from flexboard_core.errors import DerivedMetricsInputError, RemoteError
from flexboard_core.services import metrics
from flexboard_core.services.cache import EntityCache
from flexboard_core.services.mutations import (
    ErrorCallback,
    OptimisticMutationCoordinator,
)

_logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

METRICS: dict[str, Callable[..., object]] = {
    "priority_score": metrics.compute_priority_score,
    "priority_label": metrics.priority_label,
    "priority_breakdown": metrics.priority_breakdown,
    "bmr": metrics.compute_bmr,
    "tdee": metrics.compute_tdee,
    "target_calories": metrics.compute_target_calories,
    "profile": metrics.compute_profile_metrics,
    "streaks": metrics.compute_streaks,
    "daily_activity": metrics.build_daily_activity,
    "completion_rate": metrics.completion_rate,
    "daily_stats": metrics.build_daily_stats,
    "weekly_comparison": metrics.weekly_comparison,
    "monthly_task_stats": metrics.monthly_task_stats,
    "weekly_body_summary": metrics.weekly_body_summary,
    "cashflow_summary": metrics.cashflow_summary,
}

# Metric arguments that default to the session's cached entities.
CACHED_ARGUMENTS = {
    "tasks": "todos",
    "journal_entries": "journal_entries",
    "calorie_entries": "calorie_entries",
    "workout_entries": "workout_entries",
    "sleep_entries": "sleep_entries",
    "weight_entries": "weight_entries",
    "incomes": "money_income",
    "outcomes": "money_outcome",
}


@dataclass(frozen=True)
class ListMutations:
    """Mutation handle bound to one cached list."""

    key: CacheKey
    cache: EntityCache
    coordinator: OptimisticMutationCoordinator
    ttl_seconds: int = DEFAULT_TTL_SECONDS

    def insert(self, payload: Mapping[str, object]) -> TempId:
        seeded = self.cache.get(self.key) is None
        if seeded:
            self.cache.set(self.key, CachedCollection.placeholder(self.ttl_seconds))
        return self.coordinator.insert(self.key, payload, seeded=seeded)

    def update(self, entity_id: EntityId, fields: Mapping[str, object]) -> EntityId:
        return self.coordinator.update(
            self.key.user_id, self.key.entity_type, entity_id, fields
        )

    def delete(self, entity_id: EntityId) -> EntityId:
        return self.coordinator.delete(
            self.key.user_id, self.key.entity_type, entity_id
        )


@dataclass(frozen=True)
class CachedList:
    """What a view renders: current items, a loading flag and mutators."""

    items: tuple[Entity, ...]
    loading: bool
    mutate: ListMutations


@dataclass
class CachedListService:
    """Serves one entity type from the cache and keeps it fresh.

    Reads never wait on the network. A miss or a stale hit schedules one
    background fetch per key; responses carry a sequence number and only
    the newest request for a key may write its result.
    """

    entity_type: str
    cache: EntityCache
    remote: RemoteSyncClient
    coordinator: OptimisticMutationCoordinator
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    _refreshing: dict[CacheKey, asyncio.Task] = field(
        default_factory=dict, init=False, repr=False
    )
    _sequence: dict[CacheKey, int] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._collection = get_collection(self.entity_type)

    def key_for(self, user_id: str, filters: QueryParams | None = None) -> CacheKey:
        """Cache key for a user's filtered list, with the default order applied."""
        params = (filters or QueryParams()).with_default_order(
            self._collection.order_column, self._collection.ascending
        )
        return CacheKey(user_id=user_id, entity_type=self.entity_type, params=params)

    def use_cached_list(
        self, user_id: str, filters: QueryParams | None = None
    ) -> CachedList:
        """Return cached items immediately; must run inside the event loop."""
        key = self.key_for(user_id, filters)
        mutate = ListMutations(
            key=key,
            cache=self.cache,
            coordinator=self.coordinator,
            ttl_seconds=self.ttl_seconds,
        )
        collection = self.cache.get(key)
        if collection is None:
            self._schedule_refresh(key)
            return CachedList(items=(), loading=True, mutate=mutate)
        if self.cache.is_stale(collection):
            self._schedule_refresh(key)
        return CachedList(items=collection.items, loading=False, mutate=mutate)

    async def load(
        self, user_id: str, filters: QueryParams | None = None
    ) -> tuple[Entity, ...]:
        """Return cached items, fetching and raising on a failed first load."""
        key = self.key_for(user_id, filters)
        collection = self.cache.get(key)
        if collection is not None:
            if self.cache.is_stale(collection):
                self._schedule_refresh(key)
            return collection.items
        return await self._fetch_and_apply(key)

    async def refresh(
        self, user_id: str, filters: QueryParams | None = None
    ) -> tuple[Entity, ...]:
        """Fetch now, superseding any background refresh of the same key."""
        return await self._fetch_and_apply(self.key_for(user_id, filters))

    async def drain(self) -> None:
        """Wait for scheduled background refreshes to finish."""
        while self._refreshing:
            await asyncio.gather(
                *list(self._refreshing.values()), return_exceptions=True
            )

    def forget(self, user_id: str) -> None:
        """Cancel a user's background refreshes and void in-flight fetches."""
        for key in [key for key in self._sequence if key.user_id == user_id]:
            self._next_sequence(key)
        for key, task in list(self._refreshing.items()):
            if key.user_id == user_id:
                task.cancel()
                self._refreshing.pop(key, None)

    def _schedule_refresh(self, key: CacheKey) -> None:
        task = self._refreshing.get(key)
        if task is not None and not task.done():
            return
        task = asyncio.get_running_loop().create_task(self._refresh(key))
        self._refreshing[key] = task
        task.add_done_callback(lambda done: self._forget_task(key, done))

    def _forget_task(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._refreshing.get(key) is task:
            del self._refreshing[key]

    async def _refresh(self, key: CacheKey) -> None:
        try:
            await self._fetch_and_apply(key)
        except RemoteError as exc:
            _logger.warning(
                "Background refresh of %s for %s failed: %s",
                key.entity_type,
                key.user_id,
                exc,
            )
        except Exception:
            _logger.exception(
                "Background refresh of %s for %s crashed", key.entity_type, key.user_id
            )

    async def _fetch_and_apply(self, key: CacheKey) -> tuple[Entity, ...]:
        sequence = self._next_sequence(key)
        mark = self.coordinator.begin_read()
        try:
            fetched = await self._fetch(key)
            if self._sequence.get(key) != sequence:
                _logger.debug("Discarded superseded %s response", key.entity_type)
                collection = self.cache.get(key)
                return collection.items if collection is not None else tuple(fetched)
            merged = self._merge(key, fetched, mark)
            self.cache.set(
                key,
                CachedCollection(
                    items=merged,
                    fetched_at=self.cache.now(),
                    ttl_seconds=self.ttl_seconds,
                ),
            )
            return merged
        finally:
            self.coordinator.end_read(mark)

    async def _fetch(self, key: CacheKey) -> list[Entity]:
        options = QueryOptions.from_params(key.params)
        options = options.model_copy(
            update={"eq": {**options.eq, "user_id": key.user_id}}
        )
        result = await self.remote.query(self._collection.collection, options)
        if not result.ok:
            raise result.error
        return [Entity.from_row(row) for row in result.data or []]

    def _merge(
        self, key: CacheKey, fetched: list[Entity], mark: int
    ) -> tuple[Entity, ...]:
        """Overlay writes the response may predate onto the fetched rows.

        Entities written since the request went out keep their cached copy,
        deletes stay deleted, and inserts the server did not return yet stay
        at the front in their cached order.
        """
        mutated = self.coordinator.mutations_since(
            mark, key.user_id, key.entity_type
        )
        if not mutated:
            return tuple(fetched)

        current = self.cache.get(key)
        cached = current.items if current is not None else ()
        cached_by_id = {entity.id: entity for entity in cached}
        fetched_ids = {entity.id for entity in fetched}
        merged: list[Entity] = [
            entity
            for entity in cached
            if entity.id not in fetched_ids
            and _is_operation(mutated.get(entity.id), MutationOperation.INSERT)
        ]
        for entity in fetched:
            mutation = mutated.get(entity.id)
            if mutation is None:
                merged.append(entity)
            elif mutation.operation is not MutationOperation.DELETE:
                merged.append(cached_by_id.get(entity.id, entity))
        return tuple(merged)

    def _next_sequence(self, key: CacheKey) -> int:
        sequence = self._sequence.get(key, 0) + 1
        self._sequence[key] = sequence
        return sequence


@dataclass
class DashboardSession:
    """Everything one signed-in user's views share.

    Owns the cache and the mutation coordinator, and hands out one list
    service per entity type on first use.
    """

    user_id: str
    remote: RemoteSyncClient
    cache: EntityCache = field(default_factory=EntityCache)
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    on_error: ErrorCallback | None = None
    coordinator: OptimisticMutationCoordinator = field(init=False)
    _services: dict[str, CachedListService] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.coordinator = OptimisticMutationCoordinator(
            cache=self.cache, remote=self.remote, on_error=self.on_error
        )

    def service(self, entity_type: str) -> CachedListService:
        service = self._services.get(entity_type)
        if service is None:
            service = CachedListService(
                entity_type=entity_type,
                cache=self.cache,
                remote=self.remote,
                coordinator=self.coordinator,
                ttl_seconds=self.ttl_seconds,
            )
            self._services[entity_type] = service
        return service

    def use_cached_list(
        self, entity_type: str, filters: QueryParams | None = None
    ) -> CachedList:
        return self.service(entity_type).use_cached_list(self.user_id, filters)

    async def load(
        self, entity_type: str, filters: QueryParams | None = None
    ) -> tuple[Entity, ...]:
        return await self.service(entity_type).load(self.user_id, filters)

    def cached_entities(self, entity_type: str) -> list[Entity]:
        """Every cached entity of a type across this user's views, once each."""
        seen: set[EntityId] = set()
        entities: list[Entity] = []
        for key in self.cache.keys_for(self.user_id, entity_type):
            collection = self.cache.get(key)
            if collection is None:
                continue
            for entity in collection.items:
                if entity.id not in seen:
                    seen.add(entity.id)
                    entities.append(entity)
        return entities

    def compute_metrics(self, kind: str, **args: object) -> object:
        """Run a named metric against explicit arguments and cached entities.

        Collection arguments such as ``tasks`` or ``outcomes`` default to
        whatever the session has cached for the matching entity type, and
        ``today`` defaults to the cache clock's date.
        """
        metric = METRICS.get(kind)
        if metric is None:
            raise DerivedMetricsInputError(f"Unknown metric: {kind}")
        parameters = inspect.signature(metric).parameters
        resolved = dict(args)
        for name in parameters:
            if name in resolved:
                continue
            if name in CACHED_ARGUMENTS:
                resolved[name] = self.cached_entities(CACHED_ARGUMENTS[name])
            elif name == "today":
                resolved[name] = self._today()
        try:
            bound = inspect.signature(metric).bind(**resolved)
        except TypeError as exc:
            message = f"Invalid arguments for {kind}: {exc}"
            raise DerivedMetricsInputError(message) from exc
        return metric(*bound.args, **bound.kwargs)

    def sign_out(self) -> None:
        """Drop the user's cache and pending work; in-flight writes finish quietly."""
        for service in self._services.values():
            service.forget(self.user_id)
        self.coordinator.discard_user(self.user_id)
        self.cache.invalidate_all(self.user_id)
        _logger.info("Signed out %s", self.user_id)

    async def close(self) -> None:
        """Wait for background refreshes and dispatched remote writes to settle."""
        for service in list(self._services.values()):
            await service.drain()
        await self.coordinator.drain()

    def _today(self) -> date:
        return self.cache.now().date()


def _is_operation(
    mutation: PendingMutation | None, operation: MutationOperation
) -> bool:
    return mutation is not None and mutation.operation is operation
