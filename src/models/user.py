"""Directory (users table) type definitions."""

from enum import Enum
from typing import TypedDict
from uuid import UUID


class UserRole(str, Enum):
    """User role values matching the users.role column."""

    TEACHER = "Teacher"
    STUDENT = "Student"
    PARENT = "Parent"
    SUPERVISOR = "Supervisor"
    ADMIN = "Admin"
    SECRETARY = "Secretary"


class DirectoryEntry(TypedDict):
    """Users table row as exposed to the chat subsystem."""

    id: UUID
    name: str
    role: UserRole
