"""Conversation reconciliation - mirror Gateway chats into conversations.

Upsert key: (organization_id, contact_id, instance_id).

Only Gateway-mirrored columns are written here (title, last_message_at,
external_id, window metadata). status, priority, assignment, tags, notes and
the archive flag belong to operators and are changed exclusively by
zapdesk.domain.conversation_state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.whatsapp.models import ChatRecord

from .contacts import merge_metadata
from .models import Contact, Conversation, Instance, ItemOutcome
from .repositories import ConversationRepository, UserRepository

logger = get_logger(__name__)


def default_conversation_title(phone_number: str) -> str:
    return f"Conversa com {phone_number}"


def upsert_conversation(
    conversations: ConversationRepository,
    users: UserRepository,
    *,
    organization_id: str,
    contact: Contact,
    instance: Instance,
    title: str | None,
    external_id: str | None,
    last_message_at: datetime | None,
    window_metadata: dict[str, Any],
) -> tuple[Conversation, bool]:
    """Find-or-create the conversation for (contact, instance).

    Returns:
        (conversation, created)
    """
    existing = conversations.find_by_contact_instance(organization_id, contact.id, instance.id)

    if existing is None:
        # Gateway events have no human actor: any member of the
        # organization stands in as author.
        created_by_id = users.find_any_user_id(organization_id)
        conversation, created = conversations.create(
            organization_id,
            contact_id=contact.id,
            instance_id=instance.id,
            title=title or default_conversation_title(contact.phone_number),
            external_id=external_id,
            last_message_at=last_message_at,
            created_by_id=created_by_id,
            metadata=dict(window_metadata),
        )
        if created:
            return conversation, True
        existing = conversation

    updated = conversations.update_sync_fields(
        organization_id,
        existing.id,
        title=title or None,
        last_message_at=last_message_at,
        metadata=merge_metadata(existing.metadata, window_metadata),
    )
    return updated, False


def reconcile_conversation(
    conversations: ConversationRepository,
    users: UserRepository,
    *,
    organization_id: str,
    chat: ChatRecord,
    contact: Contact,
    instance: Instance,
) -> tuple[ItemOutcome, Conversation | None]:
    """Upsert the conversation behind one chat record.

    Record-level failures become an "error" outcome; they never raise.
    """
    try:
        conversation, created = upsert_conversation(
            conversations,
            users,
            organization_id=organization_id,
            contact=contact,
            instance=instance,
            title=chat.push_name,
            external_id=chat.id,
            last_message_at=chat.updated_at,
            window_metadata=chat.window_metadata(),
        )
    except Exception as exc:
        logger.warning(
            "conversation reconciliation failed",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    chat_id=chat.id,
                    contact_id=contact.id,
                    instance_id=instance.id,
                    error=exc,
                )
            },
        )
        return ItemOutcome(key=chat.key, action="error", error=str(exc)), None

    action = "created" if created else "updated"
    return ItemOutcome(key=chat.key, action=action, entity_id=conversation.id), conversation
