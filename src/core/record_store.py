"""Record store backends: Supabase (PostgREST + Realtime) and in-process memory.

Services talk to the store through a small CRUD + subscribe contract so the
chat logic never depends on a particular query builder. Rows are plain
dicts, exactly as PostgREST returns them.
"""

import itertools
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Protocol
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError
from realtime import RealtimeSubscribeStates
from supabase import AsyncClient, Client

from src.api.middleware.error_handler import StoreError
from src.core.config import get_settings
from src.core.supabase import get_async_supabase_client, get_supabase_client

logger = logging.getLogger(__name__)

Record = dict[str, Any]
OnRecord = Callable[[Record], None]
OnError = Callable[[Exception], None]


class StoreSubscription(Protocol):
    """Handle for a standing insert watch."""

    async def close(self) -> None:
        """Stop delivery. Safe to call more than once."""


class RecordStore(Protocol):
    """CRUD and insert-notification contract consumed by the chat services."""

    async def insert(self, table: str, record: Record) -> Record: ...

    async def query(
        self,
        table: str,
        match_any: list[Record] | None = None,
        order_by: list[str] | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]: ...

    async def update(self, table: str, match: Record, patch: Record) -> int: ...

    async def count(self, table: str, match: Record) -> int: ...

    async def subscribe_insert(self, table: str, on_record: OnRecord, on_error: OnError) -> StoreSubscription: ...

    async def ping(self) -> None: ...


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _and_clause(match: Record) -> str:
    """Render an equality match as a PostgREST ``and(...)`` group."""
    parts = ",".join(f"{column}.eq.{_filter_value(value)}" for column, value in match.items())
    return f"and({parts})"


def _record_from_payload(payload: dict[str, Any]) -> Record:
    """Extract the inserted row from a postgres_changes payload."""
    data = payload.get("data") or {}
    return data.get("record") or payload.get("new") or payload.get("record") or {}


def _to_store_error(error: PostgrestAPIError | httpx.HTTPError) -> StoreError:
    if isinstance(error, httpx.HTTPError):
        # Transport failure: the request never got a PostgREST answer
        return StoreError(message=str(error), code="network")
    return StoreError(message=error.message or str(error), code=error.code)


class _RealtimeSubscription:
    """Realtime channel bound to one insert watch."""

    def __init__(self, client: AsyncClient, channel: Any) -> None:
        self._client = client
        self._channel = channel
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._client.remove_channel(self._channel)


class SupabaseRecordStore:
    """Record store backed by Supabase.

    CRUD goes through the cached sync client (PostgREST). Insert
    notifications ride on Supabase Realtime ``postgres_changes`` channels,
    which require the async client. Reconnection is not attempted here;
    channel failures are reported through ``on_error`` and the caller
    decides whether to resubscribe.
    """

    def __init__(
        self,
        client: Client | None = None,
        realtime_client_factory: Callable[[], Any] = get_async_supabase_client,
    ) -> None:
        self.client = client or get_supabase_client()
        self._realtime_client_factory = realtime_client_factory

    async def insert(self, table: str, record: Record) -> Record:
        try:
            response = self.client.table(table).insert(record).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _to_store_error(e) from e

        if not response.data:
            raise StoreError(f"Insert into {table} returned no row")
        return response.data[0]

    async def query(
        self,
        table: str,
        match_any: list[Record] | None = None,
        order_by: list[str] | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        query = self.client.table(table).select("*")

        if match_any and len(match_any) == 1:
            for column, value in match_any[0].items():
                query = query.eq(column, value)
        elif match_any:
            query = query.or_(",".join(_and_clause(match) for match in match_any))

        for column in order_by or []:
            query = query.order(column, desc=descending)

        if limit is not None:
            query = query.limit(limit)

        try:
            response = query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _to_store_error(e) from e

        return response.data or []

    async def update(self, table: str, match: Record, patch: Record) -> int:
        # Single conditional UPDATE; the match is evaluated by Postgres.
        query = self.client.table(table).update(patch)
        for column, value in match.items():
            query = query.eq(column, value)

        try:
            response = query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _to_store_error(e) from e

        return len(response.data or [])

    async def count(self, table: str, match: Record) -> int:
        query = self.client.table(table).select("id", count="exact")
        for column, value in match.items():
            query = query.eq(column, value)

        try:
            response = query.execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _to_store_error(e) from e

        return response.count or 0

    async def subscribe_insert(self, table: str, on_record: OnRecord, on_error: OnError) -> StoreSubscription:
        client = await self._realtime_client_factory()
        channel = client.channel(f"public:{table}:{uuid4().hex[:8]}")
        subscription = _RealtimeSubscription(client, channel)

        def handle_insert(payload: dict[str, Any]) -> None:
            if not subscription.closed:
                on_record(_record_from_payload(payload))

        def handle_state(state: RealtimeSubscribeStates, error: Exception | None = None) -> None:
            if subscription.closed:
                return
            if state in (RealtimeSubscribeStates.CHANNEL_ERROR, RealtimeSubscribeStates.TIMED_OUT):
                logger.warning("Realtime channel for %s reported %s: %s", table, state, error)
                on_error(error or StoreError(f"Realtime channel {state}", code=str(state)))

        channel.on_postgres_changes("INSERT", schema="public", table=table, callback=handle_insert)
        await channel.subscribe(handle_state)
        logger.info("Subscribed to inserts on %s", table)
        return subscription

    async def ping(self) -> None:
        try:
            self.client.table(get_settings().users_table).select("id").limit(1).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise _to_store_error(e) from e


class _MemorySubscription:
    def __init__(self, store: "InMemoryRecordStore", table: str, key: int) -> None:
        self._store = store
        self._table = table
        self._key = key

    async def close(self) -> None:
        self._store._subscribers[self._table].pop(self._key, None)


class InMemoryRecordStore:
    """Process-local record store for development and tests.

    Assigns UUID ids and strictly increasing ``created_at`` values, and
    fans every insert out to subscribers synchronously in insertion order.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._tables: dict[str, list[Record]] = defaultdict(list)
        self._subscribers: dict[str, dict[int, tuple[OnRecord, OnError]]] = defaultdict(dict)
        self._sequence = itertools.count(1)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_created_at: datetime | None = None

    def _next_created_at(self) -> datetime:
        now = self._clock()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    @staticmethod
    def _matches(row: Record, match: Record) -> bool:
        return all(_filter_value(row.get(column)) == _filter_value(value) for column, value in match.items())

    @staticmethod
    def _public(row: Record) -> Record:
        return {key: value for key, value in row.items() if key != "_seq"}

    async def insert(self, table: str, record: Record) -> Record:
        row = dict(record)
        row.setdefault("id", str(uuid4()))
        row.setdefault("created_at", self._next_created_at())
        row["_seq"] = next(self._sequence)
        self._tables[table].append(row)

        created = self._public(row)
        for on_record, _ in list(self._subscribers[table].values()):
            on_record(dict(created))
        return dict(created)

    async def query(
        self,
        table: str,
        match_any: list[Record] | None = None,
        order_by: list[str] | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        rows = [
            row for row in self._tables[table]
            if not match_any or any(self._matches(row, match) for match in match_any)
        ]
        # Ids are issued in insertion order, so ordering by id follows _seq.
        # So does any column the rows do not carry.
        columns = order_by or []
        rows.sort(
            key=lambda row: (*(row[c] if c != "id" and c in row else row["_seq"] for c in columns), row["_seq"]),
            reverse=descending,
        )
        if limit is not None:
            rows = rows[:limit]
        return [self._public(row) for row in rows]

    async def update(self, table: str, match: Record, patch: Record) -> int:
        updated = 0
        for row in self._tables[table]:
            if self._matches(row, match):
                row.update(patch)
                updated += 1
        return updated

    async def count(self, table: str, match: Record) -> int:
        return sum(1 for row in self._tables[table] if self._matches(row, match))

    async def subscribe_insert(self, table: str, on_record: OnRecord, on_error: OnError) -> StoreSubscription:
        key = next(self._sequence)
        self._subscribers[table][key] = (on_record, on_error)
        return _MemorySubscription(self, table, key)

    async def ping(self) -> None:
        return None

    def subscriber_count(self, table: str) -> int:
        """Number of live insert watches on a table."""
        return len(self._subscribers[table])

    def disconnect_subscribers(self, table: str, error: Exception | None = None) -> None:
        """Drop every insert watch on a table, reporting the failure to each."""
        subscribers = list(self._subscribers[table].values())
        self._subscribers[table].clear()
        for _, on_error in subscribers:
            on_error(error or StoreError("Realtime channel closed", code="CHANNEL_ERROR"))

    def seed(self, table: str, rows: list[Record]) -> None:
        """Load rows without notifying subscribers."""
        for record in rows:
            row = dict(record)
            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", self._next_created_at())
            row["_seq"] = next(self._sequence)
            self._tables[table].append(row)


@lru_cache
def get_record_store() -> RecordStore:
    """Get the configured record store singleton.

    Returns:
        RecordStore: Supabase-backed store, or the in-memory store when
        ``STORE_BACKEND=memory``.
    """
    settings = get_settings()
    if settings.uses_memory_store:
        logger.info("Using in-memory record store")
        return InMemoryRecordStore()
    return SupabaseRecordStore()


async def check_store_connection() -> dict[str, Any]:
    """Check if the record store is reachable.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        await get_record_store().ping()
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
