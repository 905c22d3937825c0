"""Supabase-backed remote sync client."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from flexboard_core.adapters.remote import QueryOptions, QueryResult, RemoteSyncClient
from flexboard_core.errors import RemoteRejection, TransientNetworkError

_logger = logging.getLogger(__name__)


@dataclass
class SupabaseRemoteSyncClient(RemoteSyncClient):
    """Runs collection queries through the Supabase table API."""

    client: Client
    timeout_seconds: float = 10.0

    async def query(self, collection: str, options: QueryOptions) -> QueryResult:
        """Execute the query in a worker thread with a timeout."""
        try:
            rows = await asyncio.wait_for(
                asyncio.to_thread(self._execute, collection, options),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            _logger.warning(
                "Supabase %s on %s timed out after %ss",
                options.action,
                collection,
                self.timeout_seconds,
            )
            return QueryResult(
                data=None,
                error=TransientNetworkError(
                    f"{options.action} on {collection} timed out"
                ),
            )
        except httpx.TransportError as exc:
            return QueryResult(data=None, error=TransientNetworkError(str(exc)))
        except APIError as exc:
            return QueryResult(
                data=None,
                error=RemoteRejection(
                    exc.message or str(exc),
                    code=exc.code,
                    details=exc.details,
                ),
            )
        return QueryResult(data=rows)

    def _execute(
        self, collection: str, options: QueryOptions
    ) -> list[dict[str, object]]:
        table = self.client.table(collection)
        if options.insert is not None:
            request = table.insert([_to_row(row) for row in options.insert])
        elif options.update is not None:
            request = _apply_filters(table.update(_to_row(options.update)), options)
        elif options.delete:
            request = _apply_filters(table.delete(), options)
        else:
            columns = ", ".join(options.select) if options.select else "*"
            request = _apply_filters(table.select(columns), options)
            if options.order is not None:
                request = request.order(
                    options.order.column, desc=not options.order.ascending
                )
            if options.limit is not None:
                request = request.limit(options.limit)
        response = request.execute()
        return list(response.data or [])


def _apply_filters(request, options: QueryOptions):  # type: ignore[no-untyped-def]
    for column, value in options.eq.items():
        request = request.eq(column, _to_param(value))
    for column, value in options.gte.items():
        request = request.gte(column, _to_param(value))
    for column, value in options.lte.items():
        request = request.lte(column, _to_param(value))
    return request


def _to_param(value: object) -> object:
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


def _to_row(row: dict[str, object]) -> dict[str, object]:
    return {key: _to_param(value) for key, value in row.items()}
