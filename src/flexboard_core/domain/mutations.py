"""Domain models for optimistic mutations."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from flexboard_core.domain.entities import CacheKey, Entity, EntityId


class MutationOperation(str, Enum):
    """Kind of optimistic write."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """Lifecycle status of a pending mutation."""

    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class EntitySnapshot:
    """Pre-mutation copy of an entity inside one cached collection."""

    entity: Entity
    index: int
    next_id: EntityId | None = None


@dataclass
class PendingMutation:
    """A local write awaiting its remote acknowledgement."""

    entity_id: EntityId
    user_id: str
    entity_type: str
    operation: MutationOperation
    payload: dict[str, object]
    submitted_at: datetime
    status: MutationStatus = MutationStatus.PENDING
    snapshots: dict[CacheKey, EntitySnapshot] = field(default_factory=dict)
    # Keys created empty for this write; rollback removes them again.
    seeded_keys: frozenset[CacheKey] = frozenset()
