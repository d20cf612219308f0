"""Direct message persistence: send, history, and read-state."""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import InvalidArgumentError, NotAuthenticatedError
from src.core.config import get_settings
from src.core.record_store import RecordStore, get_record_store
from src.models.message import Message, MessageCreate
from src.schemas.auth import UserContext
from src.schemas.chat import ChatMessage

logger = logging.getLogger(__name__)


def parse_user_id(value: UUID | str | None, field: str) -> UUID:
    """Coerce a user id argument, raising InvalidArgumentError when unusable."""
    if isinstance(value, UUID):
        return value
    if not value or not str(value).strip():
        raise InvalidArgumentError(f"{field} must not be empty")
    try:
        return UUID(str(value))
    except ValueError as e:
        raise InvalidArgumentError(f"{field} is not a valid user id") from e


@dataclass
class ConversationSummary:
    """Derived per-contact state shown in the contact list."""

    last_message: ChatMessage | None = None
    unread_count: int = 0


class MessageStore:
    """Typed access to the messages table.

    Every operation takes the acting user explicitly. A conversation between
    two users is the union of messages in both directions, ordered by
    ``created_at`` and then by the configured tie-break column.

    The default tie-break is ``id``. Supabase issues random UUIDs, so equal
    timestamps then sort arbitrarily but stably; point
    ``MESSAGES_ORDER_TIEBREAK`` at a serial or identity column to follow
    insertion order instead.
    """

    def __init__(self, store: RecordStore | None = None) -> None:
        """Initialize message store with the configured record store."""
        settings = get_settings()
        self.store = store or get_record_store()
        self.table = settings.messages_table
        self.history_limit = settings.chat_history_limit
        self.max_length = settings.chat_message_max_length
        self.history_order = ["created_at", settings.messages_order_tiebreak]

    @staticmethod
    def _conversation(actor_id: UUID, contact_id: UUID) -> list[dict[str, str]]:
        return [
            {"sender_id": str(actor_id), "receiver_id": str(contact_id)},
            {"sender_id": str(contact_id), "receiver_id": str(actor_id)},
        ]

    @staticmethod
    def _unread_from(actor_id: UUID, contact_id: UUID) -> dict[str, str | bool]:
        return {"sender_id": str(contact_id), "receiver_id": str(actor_id), "is_read": False}

    async def send(
        self,
        actor: UserContext | None,
        receiver_id: UUID | str | None,
        content: Any,
    ) -> ChatMessage:
        """Insert a new unread message from the actor to a receiver.

        Not idempotent: identical calls create distinct messages.

        Args:
            actor: The sending user.
            receiver_id: The receiving user's ID.
            content: Message text.

        Returns:
            ChatMessage: The stored message with its store-assigned id and timestamp.

        Raises:
            NotAuthenticatedError: If there is no actor.
            InvalidArgumentError: If the receiver or content is empty, or content is too long.
            StoreError: If the insert fails.
        """
        if actor is None:
            raise NotAuthenticatedError()

        receiver = parse_user_id(receiver_id, "receiver_id")
        if not isinstance(content, str):
            raise InvalidArgumentError("content must be a string")
        if not content.strip():
            raise InvalidArgumentError("content must not be empty")
        if len(content) > self.max_length:
            raise InvalidArgumentError(f"content exceeds {self.max_length} characters")

        message_data: MessageCreate = {
            "sender_id": str(actor.user_id),
            "receiver_id": str(receiver),
            "content": content,
            "is_read": False,
        }
        row: Message = await self.store.insert(self.table, message_data)

        message = ChatMessage.model_validate(row)
        logger.info("Message %s sent from %s to %s", message.id, actor.user_id, receiver)
        return message

    async def history(
        self,
        actor: UserContext | None,
        contact_id: UUID | str,
        limit: int | None = None,
    ) -> list[ChatMessage]:
        """Get the full transcript between the actor and a contact.

        Args:
            actor: The requesting user. No actor yields an empty list.
            contact_id: The other participant.
            limit: Optional ceiling; keeps the most recent messages.
                Falls back to the configured history limit.

        Returns:
            list[ChatMessage]: Messages ordered oldest first.
        """
        if actor is None:
            return []

        contact = parse_user_id(contact_id, "contact_id")
        ceiling = limit or self.history_limit

        if ceiling is None:
            rows = await self.store.query(
                self.table,
                match_any=self._conversation(actor.user_id, contact),
                order_by=self.history_order,
            )
        else:
            # Newest first, then reverse to get chronological order
            rows = await self.store.query(
                self.table,
                match_any=self._conversation(actor.user_id, contact),
                order_by=self.history_order,
                descending=True,
                limit=ceiling,
            )
            rows.reverse()

        return [ChatMessage.model_validate(row) for row in rows]

    async def mark_read(self, actor: UserContext | None, contact_id: UUID | str) -> int:
        """Flip every unread message from the contact to the actor to read.

        Issued as one conditional bulk update, so a message inserted while
        the update runs is either included or left unread, never lost.

        Args:
            actor: The reading user. No actor is a no-op.
            contact_id: The sender whose messages are being read.

        Returns:
            int: Number of messages flipped.
        """
        if actor is None:
            return 0

        contact = parse_user_id(contact_id, "contact_id")
        updated = await self.store.update(
            self.table,
            match=self._unread_from(actor.user_id, contact),
            patch={"is_read": True},
        )
        if updated:
            logger.debug("Marked %d messages from %s as read for %s", updated, contact, actor.user_id)
        return updated

    async def last_message(self, actor: UserContext, contact_id: UUID | str) -> ChatMessage | None:
        """Get the most recent message exchanged with a contact."""
        contact = parse_user_id(contact_id, "contact_id")
        rows = await self.store.query(
            self.table,
            match_any=self._conversation(actor.user_id, contact),
            order_by=self.history_order,
            descending=True,
            limit=1,
        )
        return ChatMessage.model_validate(rows[0]) if rows else None

    async def unread_count(self, actor: UserContext, contact_id: UUID | str) -> int:
        """Count messages from a contact the actor has not read yet."""
        contact = parse_user_id(contact_id, "contact_id")
        return await self.store.count(self.table, self._unread_from(actor.user_id, contact))

    async def summaries(self, actor: UserContext) -> dict[UUID, ConversationSummary]:
        """Summarize every conversation the actor takes part in.

        One query fetches the actor's messages newest first; the first row
        seen per contact is its last message and unread rows are counted on
        the way. Contacts with no messages are absent from the result.

        Args:
            actor: The user whose conversations are summarized.

        Returns:
            dict[UUID, ConversationSummary]: Summaries keyed by contact id.
        """
        actor_id = str(actor.user_id)
        rows = await self.store.query(
            self.table,
            match_any=[{"sender_id": actor_id}, {"receiver_id": actor_id}],
            order_by=self.history_order,
            descending=True,
        )

        summaries: dict[UUID, ConversationSummary] = {}
        for row in rows:
            message = ChatMessage.model_validate(row)
            contact = message.receiver_id if message.sender_id == actor.user_id else message.sender_id
            summary = summaries.get(contact)
            if summary is None:
                summary = summaries[contact] = ConversationSummary(last_message=message)
            if message.receiver_id == actor.user_id and message.sender_id == contact and not message.is_read:
                summary.unread_count += 1
        return summaries
