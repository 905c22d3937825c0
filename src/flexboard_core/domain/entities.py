"""Entity, key and collection models shared by the cache core."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

_TEMP_PREFIX = "temp-"
_RESERVED_COLUMNS = ("id", "user_id")

# Fetched long ago, so the first read of a placeholder triggers a refresh.
NEVER_FETCHED = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True, order=True)
class TempId:
    """Locally generated placeholder id for an entity not yet persisted."""

    value: int

    def __str__(self) -> str:
        return f"{_TEMP_PREFIX}{self.value}"


EntityId = str | TempId


@dataclass(frozen=True)
class Entity:
    """Immutable snapshot of a remote record."""

    id: EntityId
    user_id: str
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.id, TempId)

    def get(self, name: str, default: object = None) -> object:
        """Return a domain field, or ``default`` when absent or null."""
        value = self.data.get(name)
        return default if value is None else value

    def with_changes(self, fields: Mapping[str, object]) -> "Entity":
        """Return a new snapshot with ``fields`` applied."""
        merged = dict(self.data)
        merged.update(_domain_fields(fields))
        return Entity(id=self.id, user_id=self.user_id, data=merged)

    def to_row(self, *, include_id: bool = True) -> dict[str, object]:
        """Serialize to a backend row."""
        row: dict[str, object] = dict(self.data)
        row["user_id"] = self.user_id
        if include_id and not self.is_temporary:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "Entity":
        """Build an entity from a backend row."""
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            data=_domain_fields(row),
        )


def _domain_fields(values: Mapping[str, object]) -> dict[str, object]:
    return {
        key: value for key, value in values.items() if key not in _RESERVED_COLUMNS
    }


FilterItems = tuple[tuple[str, object], ...]


def _freeze(values: Mapping[str, object] | None) -> FilterItems:
    if not values:
        return ()
    return tuple(sorted(values.items()))


@dataclass(frozen=True)
class QueryParams:
    """Hashable description of a collection query."""

    eq: FilterItems = ()
    gte: FilterItems = ()
    lte: FilterItems = ()
    order_column: str | None = None
    ascending: bool = True
    select: tuple[str, ...] = ()
    limit: int | None = None

    @classmethod
    def build(  # noqa: PLR0913
        cls,
        *,
        eq: Mapping[str, object] | None = None,
        gte: Mapping[str, object] | None = None,
        lte: Mapping[str, object] | None = None,
        order: tuple[str, bool] | None = None,
        select: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> "QueryParams":
        """Build params from plain mappings."""
        order_column, ascending = order if order else (None, True)
        return cls(
            eq=_freeze(eq),
            gte=_freeze(gte),
            lte=_freeze(lte),
            order_column=order_column,
            ascending=ascending,
            select=tuple(select or ()),
            limit=limit,
        )

    def with_default_order(self, column: str, ascending: bool) -> "QueryParams":
        """Return params ordered by ``column`` unless an order is already set."""
        if self.order_column is not None:
            return self
        return replace(self, order_column=column, ascending=ascending)


@dataclass(frozen=True)
class CacheKey:
    """Identifies one cached collection."""

    user_id: str
    entity_type: str
    params: QueryParams = QueryParams()


@dataclass(frozen=True)
class CachedCollection:
    """Ordered entities for one key plus freshness metadata."""

    items: tuple[Entity, ...]
    fetched_at: datetime
    ttl_seconds: int

    @classmethod
    def placeholder(cls, ttl_seconds: int) -> "CachedCollection":
        """An empty, never-fetched collection that writes can land in."""
        return cls(items=(), fetched_at=NEVER_FETCHED, ttl_seconds=ttl_seconds)

    @property
    def is_placeholder(self) -> bool:
        return not self.items and self.fetched_at == NEVER_FETCHED

    def is_stale(self, now: datetime) -> bool:
        return now - self.fetched_at > timedelta(seconds=self.ttl_seconds)

    def index_of(self, entity_id: EntityId) -> int | None:
        for index, entity in enumerate(self.items):
            if entity.id == entity_id:
                return index
        return None

    def find(self, entity_id: EntityId) -> Entity | None:
        index = self.index_of(entity_id)
        return None if index is None else self.items[index]

    def ids(self) -> list[EntityId]:
        return [entity.id for entity in self.items]

    def replace_items(self, items: Iterable[Entity]) -> "CachedCollection":
        """Return a copy holding ``items`` with the same freshness."""
        return replace(self, items=tuple(items))
