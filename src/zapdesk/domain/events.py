"""Event Emitter boundary.

The core announces state changes here; fan-out to UI clients (websockets)
is someone else's job. The production emitter appends to the outbox table
(zapdesk.infra.repositories.outbox_repository).
"""

from __future__ import annotations

from typing import Any, Protocol

CONVERSATION_ASSIGNED = "CONVERSATION_ASSIGNED"
CONVERSATION_TRANSFERRED = "CONVERSATION_TRANSFERRED"
CONVERSATION_CLOSED = "CONVERSATION_CLOSED"
CONVERSATION_REOPENED = "CONVERSATION_REOPENED"
CONVERSATION_ARCHIVED = "CONVERSATION_ARCHIVED"
CONVERSATION_UNARCHIVED = "CONVERSATION_UNARCHIVED"
CONVERSATION_UPDATED = "CONVERSATION_UPDATED"
CHATS_SYNCED = "CHATS_SYNCED"
MESSAGES_SYNCED = "MESSAGES_SYNCED"
MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
MESSAGE_STATUS_UPDATED = "MESSAGE_STATUS_UPDATED"
MESSAGE_SENT = "MESSAGE_SENT"


class EventEmitter(Protocol):
    def emit(
        self,
        *,
        organization_id: str,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> None: ...

