"""Remote sync client contract."""

from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, model_validator

from flexboard_core.domain.entities import QueryParams
from flexboard_core.errors import RemoteError


class OrderBy(BaseModel):
    """Sort order for a select."""

    column: str
    ascending: bool = True


class QueryOptions(BaseModel):
    """Options for a single collection query or write."""

    select: list[str] | None = None
    eq: dict[str, Any] = {}
    gte: dict[str, Any] = {}
    lte: dict[str, Any] = {}
    order: OrderBy | None = None
    limit: int | None = None
    insert: list[dict[str, Any]] | None = None
    update: dict[str, Any] | None = None
    delete: bool = False

    @model_validator(mode="after")
    def _single_write(self) -> "QueryOptions":
        writes = [self.insert is not None, self.update is not None, self.delete]
        if sum(writes) > 1:
            raise ValueError("insert, update and delete are mutually exclusive")
        return self

    @property
    def action(self) -> str:
        if self.insert is not None:
            return "insert"
        if self.update is not None:
            return "update"
        if self.delete:
            return "delete"
        return "select"

    @classmethod
    def from_params(cls, params: QueryParams) -> "QueryOptions":
        """Build select options from cached query params."""
        return cls(
            select=list(params.select) or None,
            eq=dict(params.eq),
            gte=dict(params.gte),
            lte=dict(params.lte),
            order=(
                OrderBy(column=params.order_column, ascending=params.ascending)
                if params.order_column
                else None
            ),
            limit=params.limit,
        )


@dataclass(frozen=True)
class QueryResult:
    """Rows or an error; ``error`` is authoritative when set."""

    data: list[dict[str, object]] | None
    error: RemoteError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteSyncClient(Protocol):
    """Generic query executor over named backend collections."""

    async def query(self, collection: str, options: QueryOptions) -> QueryResult:
        """Run a select or a write and return its rows or error."""
