"""Repository interfaces used by the reconcilers and the state machine.

PostgreSQL implementations live in zapdesk.infra.repositories; tests use
in-memory fakes. Every method is scoped by organization_id and every write
is its own atomic unit (no batch-wide transaction).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol

from .models import (
    Contact,
    Conversation,
    Instance,
    Message,
    MessageStatus,
    NewMessage,
)


class ContactRepository(Protocol):
    def get(self, organization_id: str, contact_id: str) -> Contact | None: ...

    def find_by_phone(self, organization_id: str, phone_number: str) -> Contact | None: ...

    def create(
        self,
        organization_id: str,
        *,
        phone_number: str,
        name: str,
        external_id: str | None,
        metadata: dict[str, Any],
    ) -> tuple[Contact, bool]:
        """Insert, or return the row a concurrent writer created first.

        Returns:
            (contact, created)
        """
        ...

    def update(
        self,
        organization_id: str,
        contact_id: str,
        *,
        name: str | None,
        external_id: str | None,
        metadata: dict[str, Any],
    ) -> Contact:
        """Replace metadata with the given (already merged) dict.

        name/external_id of None leave the stored value untouched.
        """
        ...


class ConversationRepository(Protocol):
    def get(self, organization_id: str, conversation_id: str) -> Conversation | None: ...

    def find_by_contact_instance(
        self,
        organization_id: str,
        contact_id: str,
        instance_id: str,
    ) -> Conversation | None: ...

    def list(
        self,
        organization_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        assigned_to_id: str | None = None,
        instance_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Conversation], int]: ...

    def create(
        self,
        organization_id: str,
        *,
        contact_id: str,
        instance_id: str,
        title: str,
        external_id: str | None,
        last_message_at: datetime | None,
        created_by_id: str | None,
        metadata: dict[str, Any],
    ) -> tuple[Conversation, bool]:
        """Insert with status OPEN / priority MEDIUM, or return the existing row."""
        ...

    def update_sync_fields(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        title: str | None,
        last_message_at: datetime | None,
        metadata: dict[str, Any],
    ) -> Conversation:
        """Write only Gateway-mirrored columns; operator-owned columns are untouched."""
        ...

    def advance_last_message_at(
        self,
        organization_id: str,
        conversation_id: str,
        last_message_at: datetime,
    ) -> None:
        """Set last_message_at unless the stored value is already newer."""
        ...

    def compare_and_set(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Conversation | None:
        """Atomically apply changes if every expected column still matches.

        Returns:
            The updated conversation, or None if no row matched (missing
            conversation or a guard that no longer holds).
        """
        ...

    def add_tag(self, organization_id: str, conversation_id: str, tag: str) -> Conversation | None: ...

    def remove_tag(
        self, organization_id: str, conversation_id: str, tag: str
    ) -> Conversation | None: ...


class MessageRepository(Protocol):
    def find_by_external_id(
        self,
        organization_id: str,
        conversation_id: str,
        external_id: str,
    ) -> Message | None: ...

    def find_by_external_id_in_organization(
        self,
        organization_id: str,
        external_id: str,
    ) -> Message | None: ...

    def create(
        self,
        organization_id: str,
        conversation_id: str,
        message: NewMessage,
    ) -> tuple[Message, bool]:
        """Insert, or return the existing (conversation_id, external_id) row."""
        ...

    def upgrade_status(
        self,
        organization_id: str,
        message_id: str,
        status: MessageStatus,
    ) -> Message | None:
        """Set status only if the stored one ranks lower; None if unchanged."""
        ...

    def list_for_conversation(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        limit: int = 50,
    ) -> list[Message]: ...

    def list_page(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        limit: int,
        offset: int = 0,
    ) -> tuple[list[Message], int]:
        """Oldest-first page of the timeline and the total message count."""
        ...


class InstanceRepository(Protocol):
    def get(self, organization_id: str, instance_id: str) -> Instance | None: ...

    def find_by_instance_name(self, instance_name: str) -> Instance | None:
        """Global lookup (instance_name is unique); used by webhooks only."""
        ...


class UserRepository(Protocol):
    def exists(self, organization_id: str, user_id: str) -> bool: ...

    def find_any_user_id(self, organization_id: str) -> str | None:
        """Any user of the organization, used as placeholder author."""
        ...
