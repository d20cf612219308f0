"""Open conversation orchestration: history, read-state, and live transcript."""

import bisect
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import NotAuthenticatedError, StoreError
from src.schemas.auth import UserContext
from src.schemas.chat import ChatMessage, TranscriptEvent, TranscriptEventType
from src.services.live_delivery import ChannelState, LiveDeliveryChannel, Subscription
from src.services.message_store import MessageStore, parse_user_id

logger = logging.getLogger(__name__)

ChangeListener = Callable[[TranscriptEvent], Awaitable[None] | None]


class SessionState(str, Enum):
    """Lifecycle state of a conversation session."""

    IDLE = "idle"
    LOADING = "loading"
    ACTIVE = "active"
    FAILED = "failed"


class ConversationSession:
    """One open conversation between an actor and a contact.

    Keeps an in-memory transcript ordered by ``created_at`` that merges the
    initial history with live inserts. The live subscription is opened
    before history is fetched; every message is deduplicated by id, so an
    insert landing between the two is neither lost nor shown twice.

    Usage:
        async with ConversationSession(actor, contact_id) as session:
            await session.send("Homework due Friday")
    """

    def __init__(
        self,
        actor: UserContext | None,
        contact_id: UUID | str,
        messages: MessageStore | None = None,
        channel: LiveDeliveryChannel | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        if actor is None:
            raise NotAuthenticatedError()

        self.actor = actor
        self.contact_id = parse_user_id(contact_id, "contact_id")
        self.messages = messages or MessageStore()
        self.channel = channel or LiveDeliveryChannel()
        self.on_change = on_change

        self.state = SessionState.IDLE
        self.channel_state: ChannelState | None = None
        self.error: Exception | None = None
        self._transcript: list[ChatMessage] = []
        self._seen_ids: set[UUID] = set()
        self._subscription: Subscription | None = None

    @property
    def transcript(self) -> list[ChatMessage]:
        """Snapshot of the transcript, oldest first."""
        return list(self._transcript)

    async def open(self) -> None:
        """Subscribe, load history, mark incoming messages read, go active.

        Raises:
            RuntimeError: If the session is not idle.
            StoreError: If the subscription or history fetch fails. On this
                or any other failure the session is unsubscribed and left in
                the ``failed`` state with ``error`` set.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Cannot open a conversation in state {self.state.value}; close it first")

        self.state = SessionState.LOADING
        self.error = None
        try:
            self._subscription = await self.channel.subscribe(self._handle_incoming, self._handle_status)
            await self._load_history()
            await self._mark_read()
        except Exception as e:
            logger.error("Failed to open conversation %s <-> %s: %s", self.actor.user_id, self.contact_id, e)
            self.state = SessionState.FAILED
            self.error = e
            await self._unsubscribe()
            raise

        self.state = SessionState.ACTIVE
        await self._emit(TranscriptEvent(type=TranscriptEventType.TRANSCRIPT, messages=self.transcript))

    async def send(self, content: str) -> ChatMessage:
        """Send a message to the contact and append it immediately.

        The live echo of the same insert is dropped by id.
        """
        if self.state is not SessionState.ACTIVE:
            raise RuntimeError(f"Cannot send in state {self.state.value}")

        message = await self.messages.send(self.actor, self.contact_id, content)
        if self._merge(message):
            await self._emit(TranscriptEvent(type=TranscriptEventType.MESSAGE, message=message))
        return message

    async def close(self) -> None:
        """Stop live delivery and discard the transcript."""
        await self._unsubscribe()
        self._transcript.clear()
        self._seen_ids.clear()
        self.channel_state = None
        self.state = SessionState.IDLE

    async def flush(self) -> None:
        """Wait until all live events received so far have been applied."""
        if self._subscription is not None:
            await self._subscription.flush()

    async def _unsubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    def _merge(self, message: ChatMessage) -> bool:
        """Insert a message in created_at order unless already present."""
        if message.id in self._seen_ids:
            return False
        self._seen_ids.add(message.id)
        # insort_right keeps arrival order among equal timestamps
        bisect.insort_right(self._transcript, message, key=lambda m: m.created_at)
        return True

    async def _load_history(self) -> list[ChatMessage]:
        history = await self.messages.history(self.actor, self.contact_id)
        return [message for message in history if self._merge(message)]

    async def _mark_read(self) -> None:
        await self.messages.mark_read(self.actor, self.contact_id)
        for message in self._transcript:
            if message.sender_id == self.contact_id:
                message.is_read = True

    async def _handle_incoming(self, message: ChatMessage) -> None:
        if self.state not in (SessionState.LOADING, SessionState.ACTIVE):
            return
        if not message.is_between(self.actor.user_id, self.contact_id):
            return
        if not self._merge(message):
            return

        if message.sender_id == self.contact_id:
            await self._mark_read()

        if self.state is SessionState.ACTIVE:
            await self._emit(TranscriptEvent(type=TranscriptEventType.MESSAGE, message=message))

    async def _handle_status(self, state: ChannelState) -> None:
        previous, self.channel_state = self.channel_state, state

        if state is ChannelState.LIVE and previous is ChannelState.RECONNECTING:
            # Backfill whatever was inserted while the channel was down
            try:
                missed = await self._load_history()
            except StoreError as e:
                logger.warning("Backfill after reconnect failed: %s", e)
                missed = []
            if any(message.sender_id == self.contact_id for message in missed):
                await self._mark_read()
            for message in missed:
                await self._emit(TranscriptEvent(type=TranscriptEventType.MESSAGE, message=message))

        if self.state is SessionState.ACTIVE:
            await self._emit(TranscriptEvent(type=TranscriptEventType.STATUS, status=state.value))

    async def _emit(self, event: TranscriptEvent) -> None:
        if self.on_change is None:
            return
        result = self.on_change(event)
        if inspect.isawaitable(result):
            await result

    async def __aenter__(self) -> "ConversationSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
