"""Live delivery of newly inserted messages."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings
from src.core.record_store import RecordStore, StoreSubscription, get_record_store
from src.schemas.chat import ChatMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ChatMessage], Awaitable[None] | None]
StatusHandler = Callable[["ChannelState"], Awaitable[None] | None]

_STOP = object()


class ChannelState(str, Enum):
    """Connection state of a live delivery subscription."""

    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class BackoffPolicy:
    """Bounded exponential backoff for resubscribing after a channel drop."""

    max_retries: int = 5
    base_seconds: float = 0.5
    max_seconds: float = 30.0

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        """Create policy from application settings."""
        settings = get_settings()
        return cls(
            max_retries=settings.realtime_max_retries,
            base_seconds=settings.realtime_backoff_base_seconds,
            max_seconds=settings.realtime_backoff_max_seconds,
        )

    def wait(self) -> wait_exponential:
        """Delay between attempts: ``base * 2**(n - 1)``, capped at ``max_seconds``."""
        return wait_exponential(multiplier=self.base_seconds, max=self.max_seconds)

    def retrying(self) -> AsyncRetrying:
        """Retry controller for one resubscribe cycle.

        The first attempt runs immediately. Cancellation is never retried.
        """
        return AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self.max_retries),
            wait=self.wait(),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """Disposable handle for one standing watch on message inserts.

    Records pushed by the store are queued and dispatched by a single
    consumer task, so handlers never run concurrently with each other.
    Status transitions go through the same queue, in order with messages.
    """

    def __init__(
        self,
        store: RecordStore,
        table: str,
        on_message: MessageHandler,
        on_status: StatusHandler | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self._store = store
        self._table = table
        self._on_message = on_message
        self._on_status = on_status
        self._backoff = backoff or BackoffPolicy()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._store_subscription: StoreSubscription | None = None
        self.state = ChannelState.CONNECTING
        self.closed = False

    async def start(self) -> None:
        """Start the consumer and establish the store watch."""
        self._consumer = asyncio.create_task(self._consume())
        try:
            await self._connect()
        except Exception:
            await self.unsubscribe()
            raise
        self._set_state(ChannelState.LIVE)

    async def _connect(self) -> None:
        self._store_subscription = await self._store.subscribe_insert(
            self._table, self._on_record, self._on_error
        )

    def _set_state(self, state: ChannelState) -> None:
        self.state = state
        if self._on_status is not None and not self.closed:
            self._queue.put_nowait(("status", state))

    def _on_record(self, record: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put_nowait(("message", record))

    def _on_error(self, error: Exception) -> None:
        if self.closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.warning("Live delivery on %s interrupted: %s", self._table, error)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        self._set_state(ChannelState.RECONNECTING)

        stale, self._store_subscription = self._store_subscription, None
        if stale is not None:
            await stale.close()

        attempts = 0
        try:
            async for attempt in self._backoff.retrying():
                if self.closed:
                    return
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._connect()
        except Exception as e:
            logger.error("Live delivery on %s failed after %d attempts: %s", self._table, attempts, e)
            self._set_state(ChannelState.FAILED)
            return

        logger.info("Live delivery on %s restored after %d attempt(s)", self._table, attempts)
        self._set_state(ChannelState.LIVE)

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                if not self.closed:
                    await self._dispatch(*item)
            except Exception:
                logger.exception("Live delivery handler failed on %s", self._table)
            finally:
                self._queue.task_done()

    async def _dispatch(self, kind: str, payload: Any) -> None:
        if kind == "status":
            await _call(self._on_status, payload)
            return

        try:
            message = ChatMessage.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning("Dropping malformed insert on %s: %s", self._table, e)
            return
        await _call(self._on_message, message)

    async def flush(self) -> None:
        """Wait until every event received so far has been handled."""
        if not self.closed:
            await self._queue.join()

    async def unsubscribe(self) -> None:
        """Stop delivery. No handler is invoked after this returns.

        Safe to call more than once, including from inside a handler.
        """
        if self.closed:
            return
        self.closed = True
        self.state = ChannelState.CLOSED

        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        if self._store_subscription is not None:
            await self._store_subscription.close()
            self._store_subscription = None

        self._queue.put_nowait(_STOP)
        if self._consumer is not None and self._consumer is not asyncio.current_task():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.unsubscribe()


class LiveDeliveryChannel:
    """Push every newly inserted message to registered listeners.

    The watch covers the whole messages table; narrowing it to one
    conversation is the listener's job.
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self.store = store or get_record_store()
        self.table = get_settings().messages_table
        self.backoff = backoff or BackoffPolicy.from_settings()

    async def subscribe(
        self,
        on_message: MessageHandler,
        on_status: StatusHandler | None = None,
    ) -> Subscription:
        """Start delivering inserts to ``on_message``.

        Args:
            on_message: Called once per inserted message, in feed order.
                May be a coroutine function.
            on_status: Optional listener for connection state changes.

        Returns:
            Subscription: Handle whose ``unsubscribe`` stops delivery.

        Raises:
            StoreError: If the initial watch cannot be established.
        """
        subscription = Subscription(self.store, self.table, on_message, on_status, self.backoff)
        await subscription.start()
        return subscription
