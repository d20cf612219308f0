"""Supabase client factories for database and realtime operations."""

from functools import lru_cache

from supabase import AsyncClient, Client, acreate_client, create_client

from src.core.config import get_settings

_async_client: AsyncClient | None = None


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton for database operations.

    Uses secret key (sb_secret_) for backend operations, which bypasses RLS
    at the PostgREST level. Callers are responsible for scoping every query
    to the authenticated actor.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def get_async_supabase_client() -> AsyncClient:
    """Get the shared async Supabase client used for Realtime channels.

    The realtime websocket lives on the async client, so it is created lazily
    on first subscription and reused for every channel afterwards.

    Returns:
        AsyncClient: Async Supabase client instance.
    """
    global _async_client
    if _async_client is None:
        settings = get_settings()
        _async_client = await acreate_client(
            settings.supabase_url,
            settings.supabase_secret_key,
        )
    return _async_client


async def close_async_supabase_client() -> None:
    """Drop every Realtime channel and forget the shared async client."""
    global _async_client
    if _async_client is not None:
        await _async_client.remove_all_channels()
        _async_client = None
