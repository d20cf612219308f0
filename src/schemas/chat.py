"""Direct messaging Pydantic schemas for API request/response models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.user import UserRole


class ChatMessage(BaseModel):
    """A single direct message as shown in a transcript."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Message unique identifier")
    sender_id: UUID = Field(description="Sending user ID")
    receiver_id: UUID = Field(description="Receiving user ID")
    content: str = Field(description="Message text")
    created_at: datetime = Field(description="Store-assigned creation timestamp")
    is_read: bool = Field(default=False, description="Whether the receiver has read the message")

    def is_between(self, a: UUID, b: UUID) -> bool:
        """Check if this message belongs to the conversation between a and b."""
        return (self.sender_id, self.receiver_id) in ((a, b), (b, a))


class SendMessageRequest(BaseModel):
    """Schema for sending a message to a contact."""

    model_config = ConfigDict(from_attributes=True)

    content: str = Field(..., min_length=1, description="Message content")

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class ChatContact(BaseModel):
    """A directory entry the actor may message, with derived summary fields."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Contact user ID")
    name: str = Field(description="Contact display name")
    role: UserRole = Field(description="Contact role")
    last_message: ChatMessage | None = Field(
        default=None, description="Most recent message exchanged with the actor"
    )
    unread_count: int | None = Field(
        default=None, description="Messages from this contact the actor has not read"
    )


class ContactListResponse(BaseModel):
    """Schema for the contact list response."""

    model_config = ConfigDict(from_attributes=True)

    contacts: list[ChatContact] = Field(description="Contacts eligible for messaging")


class MessageListResponse(BaseModel):
    """Schema for a conversation history response."""

    model_config = ConfigDict(from_attributes=True)

    messages: list[ChatMessage] = Field(description="Messages ordered oldest first")


class MarkReadResponse(BaseModel):
    """Schema for the mark-as-read response."""

    model_config = ConfigDict(from_attributes=True)

    updated: int = Field(description="Number of messages flipped to read")


class TranscriptEventType(str, Enum):
    """Frame types pushed over the conversation websocket."""

    TRANSCRIPT = "transcript"
    MESSAGE = "message"
    STATUS = "status"
    ERROR = "error"


class TranscriptEvent(BaseModel):
    """A single frame pushed to a connected conversation client."""

    model_config = ConfigDict(from_attributes=True)

    type: TranscriptEventType = Field(description="Frame type")
    messages: list[ChatMessage] | None = Field(default=None, description="Full transcript (transcript frames)")
    message: ChatMessage | None = Field(default=None, description="Appended message (message frames)")
    status: str | None = Field(default=None, description="Live channel state (status frames)")
    error: dict[str, Any] | None = Field(default=None, description="Error payload (error frames)")
