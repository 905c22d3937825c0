"""Dependency container wiring for the dashboard core."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from flexboard_core.adapters.remote import RemoteSyncClient
from flexboard_core.adapters.supabase_remote_client import SupabaseRemoteSyncClient
from flexboard_core.app_logging import configure_logging
from flexboard_core.config import Settings
from flexboard_core.services.cache import EntityCache
from flexboard_core.services.lists import DashboardSession
from flexboard_core.services.mutations import ErrorCallback


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    remote_client: RemoteSyncClient
    open_session: Callable[..., DashboardSession]
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    configure_logging()
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_key
    )
    remote_client = SupabaseRemoteSyncClient(
        supabase_client, timeout_seconds=resolved_settings.remote_timeout_seconds
    )
    sessions: list[DashboardSession] = []

    def open_session(
        user_id: str, on_error: ErrorCallback | None = None
    ) -> DashboardSession:
        session = DashboardSession(
            user_id=user_id,
            remote=remote_client,
            cache=EntityCache(strict=resolved_settings.strict_cache_invariants),
            ttl_seconds=resolved_settings.cache_ttl_seconds,
            on_error=on_error,
        )
        sessions.append(session)
        return session

    async def close_resources() -> None:
        for session in sessions:
            await session.close()
        sessions.clear()

    return AppContainer(
        settings=resolved_settings,
        remote_client=remote_client,
        open_session=open_session,
        close_resources=close_resources,
    )
