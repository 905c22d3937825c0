"""Registry of entity types backed by remote collections."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CollectionSpec:
    """Backend collection and default ordering for an entity type."""

    entity_type: str
    collection: str
    order_column: str
    ascending: bool = False


COLLECTIONS: dict[str, CollectionSpec] = {
    entry.entity_type: entry
    for entry in (
        CollectionSpec("todos", "todos", "priority_score"),
        CollectionSpec("journal_entries", "journal_entries", "date"),
        CollectionSpec("content_items", "content_items", "created_at"),
        CollectionSpec("learning_goals", "learning_goals", "target_date", True),
        CollectionSpec("quick_links", "quick_links", "created_at", True),
        CollectionSpec("prompts", "prompts", "created_at"),
        CollectionSpec("calorie_entries", "calorie_entries", "date"),
        CollectionSpec("workout_entries", "workout_entries", "date"),
        CollectionSpec("weight_entries", "weight_entries", "date"),
        CollectionSpec("sleep_entries", "sleep_entries", "date"),
        CollectionSpec("channels", "channels", "created_at"),
        CollectionSpec("money_categories", "money_categories", "name", True),
        CollectionSpec("money_income", "money_income", "date"),
        CollectionSpec("money_outcome", "money_outcome", "date"),
    )
}


def get_collection(entity_type: str) -> CollectionSpec:
    """Return the registry entry for an entity type."""
    try:
        return COLLECTIONS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None
