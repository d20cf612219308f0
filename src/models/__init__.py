"""Database model type definitions."""

from src.models.message import Message, MessageCreate
from src.models.user import DirectoryEntry, UserRole

__all__ = [
    "Message",
    "MessageCreate",
    "DirectoryEntry",
    "UserRole",
]
