"""Unit tests for record store backends."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from postgrest.exceptions import APIError as PostgrestAPIError
from realtime import RealtimeSubscribeStates

from src.api.middleware.error_handler import StoreError
from src.core.record_store import InMemoryRecordStore, SupabaseRecordStore, check_store_connection


@pytest.fixture
def mock_supabase() -> MagicMock:
    """Create a mock Supabase client."""
    return MagicMock()


@pytest.fixture
def supabase_store(mock_supabase: MagicMock) -> SupabaseRecordStore:
    return SupabaseRecordStore(client=mock_supabase, realtime_client_factory=AsyncMock())


def _response(data: list | None = None, count: int | None = None) -> MagicMock:
    response = MagicMock()
    response.data = data
    response.count = count
    return response


class TestSupabaseInsert:
    """Tests for SupabaseRecordStore.insert."""

    @pytest.mark.asyncio
    async def test_returns_created_row(self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock) -> None:
        row = {"id": "abc", "content": "hi"}
        mock_supabase.table.return_value.insert.return_value.execute.return_value = _response([row])

        result = await supabase_store.insert("messages", {"content": "hi"})

        assert result == row
        mock_supabase.table.assert_called_with("messages")

    @pytest.mark.asyncio
    async def test_wraps_postgrest_errors(self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock) -> None:
        mock_supabase.table.return_value.insert.return_value.execute.side_effect = PostgrestAPIError(
            {"message": "violates foreign key constraint", "code": "23503", "hint": None, "details": None}
        )

        with pytest.raises(StoreError) as exc_info:
            await supabase_store.insert("messages", {"content": "hi"})

        assert exc_info.value.code == "23503"
        assert "foreign key" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_empty_response_is_an_error(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        mock_supabase.table.return_value.insert.return_value.execute.return_value = _response([])

        with pytest.raises(StoreError):
            await supabase_store.insert("messages", {"content": "hi"})


class TestSupabaseQuery:
    """Tests for SupabaseRecordStore.query."""

    @pytest.mark.asyncio
    async def test_multiple_matches_become_or_of_and_groups(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        select = mock_supabase.table.return_value.select.return_value
        select.or_.return_value.order.return_value.order.return_value.execute.return_value = _response([{"id": "1"}])

        rows = await supabase_store.query(
            "messages",
            match_any=[{"sender_id": "a", "receiver_id": "b"}, {"sender_id": "b", "receiver_id": "a"}],
            order_by=["created_at", "id"],
        )

        assert rows == [{"id": "1"}]
        select.or_.assert_called_once_with(
            "and(sender_id.eq.a,receiver_id.eq.b),and(sender_id.eq.b,receiver_id.eq.a)"
        )
        select.or_.return_value.order.assert_called_once_with("created_at", desc=False)

    @pytest.mark.asyncio
    async def test_single_match_uses_eq_and_limit(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        select = mock_supabase.table.return_value.select.return_value
        select.eq.return_value.limit.return_value.execute.return_value = _response(None)

        rows = await supabase_store.query("users", match_any=[{"id": "u1"}], limit=1)

        assert rows == []
        select.eq.assert_called_once_with("id", "u1")
        select.eq.return_value.limit.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_boolean_filters_render_lowercase(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        select = mock_supabase.table.return_value.select.return_value
        select.or_.return_value.execute.return_value = _response([])

        await supabase_store.query("messages", match_any=[{"is_read": False}, {"is_read": True}])

        select.or_.assert_called_once_with("and(is_read.eq.false),and(is_read.eq.true)")


class TestSupabaseUpdateAndCount:
    """Tests for SupabaseRecordStore.update and count."""

    @pytest.mark.asyncio
    async def test_update_is_single_conditional_statement(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        update = mock_supabase.table.return_value.update.return_value
        update.eq.return_value.eq.return_value.eq.return_value.execute.return_value = _response([{}, {}])

        updated = await supabase_store.update(
            "messages",
            match={"sender_id": "b", "receiver_id": "a", "is_read": False},
            patch={"is_read": True},
        )

        assert updated == 2
        mock_supabase.table.return_value.update.assert_called_once_with({"is_read": True})
        update.eq.assert_called_once_with("sender_id", "b")

    @pytest.mark.asyncio
    async def test_count_uses_exact_count(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        select = mock_supabase.table.return_value.select.return_value
        select.eq.return_value.execute.return_value = _response([], count=4)

        assert await supabase_store.count("messages", {"receiver_id": "a"}) == 4
        mock_supabase.table.return_value.select.assert_called_once_with("id", count="exact")


class TestSupabaseNetworkErrors:
    """Tests for transport failures reaching the store."""

    @pytest.mark.asyncio
    async def test_query_connect_error_becomes_store_error(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        select = mock_supabase.table.return_value.select.return_value
        select.eq.return_value.execute.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(StoreError) as exc_info:
            await supabase_store.query("users", match_any=[{"id": "u1"}])

        assert exc_info.value.code == "network"
        assert exc_info.value.message == "connection refused"

    @pytest.mark.asyncio
    async def test_every_operation_maps_timeouts(
        self, supabase_store: SupabaseRecordStore, mock_supabase: MagicMock
    ) -> None:
        timeout = httpx.ReadTimeout("timed out")
        table = mock_supabase.table.return_value
        table.insert.return_value.execute.side_effect = timeout
        table.update.return_value.eq.return_value.execute.side_effect = timeout
        table.select.return_value.eq.return_value.execute.side_effect = timeout
        table.select.return_value.limit.return_value.execute.side_effect = timeout

        calls = [
            supabase_store.insert("messages", {"content": "hi"}),
            supabase_store.update("messages", {"receiver_id": "a"}, {"is_read": True}),
            supabase_store.count("messages", {"receiver_id": "a"}),
            supabase_store.ping(),
        ]
        for call in calls:
            with pytest.raises(StoreError) as exc_info:
                await call
            assert exc_info.value.code == "network"

    @pytest.mark.asyncio
    async def test_health_check_reports_network_failure(self, mock_supabase: MagicMock) -> None:
        store = SupabaseRecordStore(client=mock_supabase, realtime_client_factory=AsyncMock())
        mock_supabase.table.return_value.select.return_value.limit.return_value.execute.side_effect = (
            httpx.ConnectError("connection refused")
        )

        with patch("src.core.record_store.get_record_store", return_value=store):
            result = await check_store_connection()

        assert result == {"healthy": False, "error": "connection refused"}


class TestSupabaseSubscribe:
    """Tests for SupabaseRecordStore.subscribe_insert."""

    @pytest.mark.asyncio
    async def test_wires_postgres_changes_and_state_callbacks(self, mock_supabase: MagicMock) -> None:
        realtime = MagicMock()
        realtime.remove_channel = AsyncMock()
        channel = realtime.channel.return_value
        channel.subscribe = AsyncMock()
        store = SupabaseRecordStore(client=mock_supabase, realtime_client_factory=AsyncMock(return_value=realtime))
        records: list[dict] = []
        errors: list[Exception] = []

        subscription = await store.subscribe_insert("messages", records.append, errors.append)

        kwargs = channel.on_postgres_changes.call_args.kwargs
        assert channel.on_postgres_changes.call_args.args[0] == "INSERT"
        assert kwargs["table"] == "messages"

        kwargs["callback"]({"data": {"record": {"id": "m1"}, "type": "INSERT"}})
        assert records == [{"id": "m1"}]

        state_callback = channel.subscribe.call_args.args[0]
        state_callback(RealtimeSubscribeStates.SUBSCRIBED, None)
        state_callback(RealtimeSubscribeStates.CHANNEL_ERROR, None)
        assert len(errors) == 1

        await subscription.close()
        await subscription.close()
        realtime.remove_channel.assert_awaited_once_with(channel)

        kwargs["callback"]({"data": {"record": {"id": "m2"}}})
        assert records == [{"id": "m1"}]


class TestInMemoryRecordStore:
    """Tests for InMemoryRecordStore."""

    @pytest.mark.asyncio
    async def test_assigns_id_and_increasing_timestamps(self) -> None:
        fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
        store = InMemoryRecordStore(clock=lambda: fixed)

        first = await store.insert("t", {"v": 1})
        second = await store.insert("t", {"v": 2})

        assert first["id"] != second["id"]
        assert second["created_at"] > first["created_at"]
        assert "_seq" not in first

    @pytest.mark.asyncio
    async def test_query_match_any_and_order(self) -> None:
        store = InMemoryRecordStore()
        await store.insert("t", {"k": "a", "n": 3})
        await store.insert("t", {"k": "b", "n": 1})
        await store.insert("t", {"k": "c", "n": 2})

        rows = await store.query("t", match_any=[{"k": "a"}, {"k": "b"}], order_by=["n"])

        assert [r["k"] for r in rows] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_subscribers_receive_inserts_until_closed(self) -> None:
        store = InMemoryRecordStore()
        seen: list[dict] = []
        subscription = await store.subscribe_insert("t", seen.append, lambda e: None)

        await store.insert("t", {"v": 1})
        await subscription.close()
        await store.insert("t", {"v": 2})

        assert [r["v"] for r in seen] == [1]

    @pytest.mark.asyncio
    async def test_disconnect_reports_errors(self) -> None:
        store = InMemoryRecordStore()
        errors: list[Exception] = []
        await store.subscribe_insert("t", lambda r: None, errors.append)

        store.disconnect_subscribers("t")

        assert store.subscriber_count("t") == 0
        assert isinstance(errors[0], StoreError)


class TestCheckStoreConnection:
    """Tests for check_store_connection."""

    @pytest.mark.asyncio
    async def test_healthy_with_memory_store(self, memory_store: InMemoryRecordStore) -> None:
        assert await check_store_connection() == {"healthy": True}
