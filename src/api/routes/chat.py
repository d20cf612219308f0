"""Direct messaging API routes."""

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from src.api.deps import CurrentUser, WebSocketUser
from src.api.middleware.error_handler import APIError, InvalidArgumentError, StoreError
from src.schemas.chat import (
    ChatMessage,
    ContactListResponse,
    MarkReadResponse,
    MessageListResponse,
    SendMessageRequest,
    TranscriptEvent,
    TranscriptEventType,
)
from src.services.conversation_session import ConversationSession
from src.services.directory_service import ContactResolver
from src.services.message_store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _error_event(error: APIError) -> TranscriptEvent:
    return TranscriptEvent(type=TranscriptEventType.ERROR, error=error.to_payload())


@router.get(
    "/contacts",
    response_model=ContactListResponse,
    summary="List chat contacts",
    description="Returns the users the caller may message, with last message and unread count.",
)
async def list_contacts(
    user: CurrentUser,
    include_summary: bool = Query(default=True, description="Include last message and unread count"),
) -> ContactListResponse:
    """List the caller's contacts.

    Teachers see students; everyone else sees teachers.
    """
    resolver = ContactResolver()
    contacts = await resolver.resolve_contacts(user, include_summary=include_summary)
    return ContactListResponse(contacts=contacts)


@router.get(
    "/contacts/{contact_id}/messages",
    response_model=MessageListResponse,
    summary="Get conversation history",
    description="Returns every message exchanged with the contact, oldest first.",
)
async def get_messages(
    contact_id: UUID,
    user: CurrentUser,
    limit: int | None = Query(default=None, ge=1, le=1000, description="Only the most recent N messages"),
) -> MessageListResponse:
    """Get the transcript between the caller and a contact."""
    service = MessageStore()
    messages = await service.history(user, contact_id, limit=limit)
    return MessageListResponse(messages=messages)


@router.post(
    "/contacts/{contact_id}/messages",
    response_model=ChatMessage,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
    description="Sends a direct message to the contact.",
)
async def send_message(
    contact_id: UUID,
    data: SendMessageRequest,
    user: CurrentUser,
) -> ChatMessage:
    """Send a message to a contact."""
    service = MessageStore()
    return await service.send(user, contact_id, data.content)


@router.post(
    "/contacts/{contact_id}/read",
    response_model=MarkReadResponse,
    summary="Mark conversation read",
    description="Marks every unread message from the contact to the caller as read.",
)
async def mark_read(contact_id: UUID, user: CurrentUser) -> MarkReadResponse:
    """Mark the contact's messages to the caller as read."""
    service = MessageStore()
    updated = await service.mark_read(user, contact_id)
    return MarkReadResponse(updated=updated)


@router.websocket("/contacts/{contact_id}/ws")
async def conversation_socket(websocket: WebSocket, contact_id: UUID, user: WebSocketUser) -> None:
    """Stream one conversation to the client.

    Pushes a ``transcript`` frame once history is loaded, then ``message``
    and ``status`` frames as they happen. Clients send
    ``{"type": "send", "content": "..."}`` to post a message.
    """
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    async def forward(event: TranscriptEvent) -> None:
        await websocket.send_json(event.model_dump(mode="json", exclude_none=True))

    session = ConversationSession(user, contact_id, on_change=forward)
    try:
        await session.open()
    except Exception as e:
        if isinstance(e, APIError):
            error = e
        else:
            logger.exception("Unexpected error opening conversation %s <-> %s", user.user_id, contact_id)
            error = APIError("An unexpected error occurred")
        await forward(_error_event(error))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    logger.info("Conversation socket opened: %s <-> %s", user.user_id, contact_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await forward(_error_event(InvalidArgumentError("Frame is not valid JSON")))
                continue

            if not isinstance(frame, dict) or frame.get("type") != "send":
                await forward(_error_event(InvalidArgumentError("Unsupported frame type")))
                continue

            try:
                await session.send(frame.get("content"))
            except (InvalidArgumentError, StoreError) as e:
                await forward(_error_event(e))

    except WebSocketDisconnect:
        logger.info("Conversation socket closed: %s <-> %s", user.user_id, contact_id)
    finally:
        await session.close()
