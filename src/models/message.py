"""Direct message model type definitions for database operations."""

from datetime import datetime
from typing import TypedDict
from uuid import UUID


class Message(TypedDict):
    """Message table row representation.

    Represents one direct message between exactly one sender and one
    receiver. ``id`` and ``created_at`` are assigned by the store on insert.
    ``is_read`` only ever moves from False to True.
    """

    id: UUID
    sender_id: UUID
    receiver_id: UUID
    content: str
    created_at: datetime
    is_read: bool


class MessageCreate(TypedDict):
    """Data required to insert a new message."""

    sender_id: str
    receiver_id: str
    content: str
    is_read: bool
