"""Directory lookups and chat contact resolution."""

import logging
from uuid import UUID

from src.api.middleware.error_handler import NotAuthenticatedError
from src.core.config import get_settings
from src.core.record_store import RecordStore, get_record_store
from src.models.user import DirectoryEntry, UserRole
from src.schemas.auth import UserContext
from src.schemas.chat import ChatContact
from src.services.message_store import ConversationSummary, MessageStore

logger = logging.getLogger(__name__)

# Actor role -> role of the people that actor may message.
CONTACT_ROLE_PAIRINGS: dict[UserRole, UserRole] = {
    UserRole.TEACHER: UserRole.STUDENT,
    UserRole.STUDENT: UserRole.TEACHER,
}

# Used for unpaired roles and for actors without a role record.
# TODO: confirm with product whether a missing role record should deny contacts instead.
FALLBACK_CONTACT_ROLE = UserRole.TEACHER


class DirectoryService:
    """Read-only access to the users table."""

    def __init__(self, store: RecordStore | None = None) -> None:
        self.store = store or get_record_store()
        self.table = get_settings().users_table

    async def get_role(self, user_id: UUID) -> UserRole | None:
        """Get a user's role, or None if there is no usable role record."""
        rows = await self.store.query(self.table, match_any=[{"id": str(user_id)}], limit=1)
        if not rows:
            return None

        try:
            return UserRole(rows[0].get("role"))
        except ValueError:
            logger.warning("User %s has unknown role %r", user_id, rows[0].get("role"))
            return None

    async def list_by_role(self, role: UserRole) -> list[DirectoryEntry]:
        """List every user holding a role, ordered by name."""
        rows = await self.store.query(self.table, match_any=[{"role": role.value}], order_by=["name"])
        return [
            DirectoryEntry(id=UUID(str(row["id"])), name=row.get("name") or "", role=UserRole(row["role"]))
            for row in rows
        ]


class ContactResolver:
    """Resolve the people an actor may message.

    The policy is deliberately coarse: every teacher can message every
    student and vice versa, tenant-wide. Pairings live in
    ``CONTACT_ROLE_PAIRINGS``, so adding one is a data change.
    """

    def __init__(
        self,
        directory: DirectoryService | None = None,
        messages: MessageStore | None = None,
    ) -> None:
        self.directory = directory or DirectoryService()
        self.messages = messages or MessageStore()

    @staticmethod
    def contact_role_for(role: UserRole | None) -> UserRole:
        """Get the contact role for an actor role."""
        if role is None:
            return FALLBACK_CONTACT_ROLE
        return CONTACT_ROLE_PAIRINGS.get(role, FALLBACK_CONTACT_ROLE)

    async def resolve_contacts(
        self,
        actor: UserContext | None,
        include_summary: bool = True,
    ) -> list[ChatContact]:
        """Resolve the actor's contacts.

        Args:
            actor: The requesting user.
            include_summary: Attach ``last_message`` and ``unread_count``,
                recomputed from the messages table on every call with a
                single query.

        Returns:
            list[ChatContact]: Contacts ordered by name.

        Raises:
            NotAuthenticatedError: If there is no actor.
        """
        if actor is None:
            raise NotAuthenticatedError()

        role = await self.directory.get_role(actor.user_id)
        if role is None:
            logger.warning(
                "No role record for user %s; falling back to %s contacts",
                actor.user_id,
                FALLBACK_CONTACT_ROLE.value,
            )

        entries = await self.directory.list_by_role(self.contact_role_for(role))

        summaries = await self.messages.summaries(actor) if include_summary else {}

        contacts = []
        for entry in entries:
            contact = ChatContact(id=entry["id"], name=entry["name"], role=entry["role"])
            if include_summary:
                summary = summaries.get(contact.id) or ConversationSummary()
                contact.last_message = summary.last_message
                contact.unread_count = summary.unread_count
            contacts.append(contact)

        return contacts
