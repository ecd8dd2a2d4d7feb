"""CRM domain entities and vocabularies.

Entities are plain dataclasses; repositories build them from rows and the
reconcilers / state machine consume them. Every entity carries its
organization_id, and no code path compares entities across organizations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


# ── Vocabularies ──────────────────────────────────────────


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING = "WAITING"
    CLOSED = "CLOSED"
    # Reported for archived conversations; never stored in conversations.status
    ARCHIVED = "ARCHIVED"


class ConversationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


# Delivery progress; FAILED is terminal and never overwritten by a sync
MESSAGE_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


def statuses_below(status: MessageStatus) -> list[MessageStatus]:
    """Statuses a row may hold for an upgrade to status to apply."""
    rank = MESSAGE_STATUS_RANK.get(status)
    if rank is None:
        return []
    return [s for s, r in MESSAGE_STATUS_RANK.items() if r < rank]


# ── Entities ──────────────────────────────────────────────


@dataclass(frozen=True)
class Instance:
    """A Gateway-side WhatsApp session owned by an organization."""

    id: str
    organization_id: str
    name: str
    instance_name: str
    status: str | None = None


@dataclass
class Contact:
    id: str
    organization_id: str
    phone_number: str
    name: str
    external_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "name": self.name,
            "external_id": self.external_id,
            "metadata": self.metadata,
        }


@dataclass
class Conversation:
    """The unit of operator work.

    status and is_archived are orthogonal: archiving keeps the work status
    and remembers it in archived_from_status so unarchive restores it exactly.
    """

    id: str
    organization_id: str
    contact_id: str
    instance_id: str
    title: str
    status: ConversationStatus = ConversationStatus.OPEN
    priority: ConversationPriority = ConversationPriority.MEDIUM
    assigned_to_id: str | None = None
    created_by_id: str | None = None
    tags: list[str] = field(default_factory=list)
    notes: str | None = None
    last_message_at: datetime | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_archived: bool = False
    archived_from_status: ConversationStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def display_status(self) -> ConversationStatus:
        return ConversationStatus.ARCHIVED if self.is_archived else self.status

    def to_dict(self) -> dict[str, Any]:
        """Snapshot used by API responses and emitted events."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "contact_id": self.contact_id,
            "instance_id": self.instance_id,
            "title": self.title,
            "status": self.status.value,
            "display_status": self.display_status.value,
            "priority": self.priority.value,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "tags": list(self.tags),
            "notes": self.notes,
            "last_message_at": _iso(self.last_message_at),
            "external_id": self.external_id,
            "metadata": self.metadata,
            "is_archived": self.is_archived,
            "archived_from_status": (
                self.archived_from_status.value if self.archived_from_status else None
            ),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Message:
    id: str
    organization_id: str
    conversation_id: str
    content: str
    type: MessageType
    direction: MessageDirection
    status: MessageStatus
    external_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        # metadata.raw is kept for debugging, not exposed
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "type": self.type.value,
            "direction": self.direction.value,
            "status": self.status.value,
            "external_id": self.external_id,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class NewMessage:
    """A classified Gateway message, ready to persist."""

    external_id: str
    content: str
    type: MessageType
    direction: MessageDirection
    status: MessageStatus
    sent_at: datetime | None
    metadata: dict[str, Any]


# ── Batch outcomes ────────────────────────────────────────

OutcomeAction = Literal["created", "updated", "unchanged", "error"]


@dataclass(frozen=True)
class ItemOutcome:
    """What happened to one record of a reconciliation batch."""

    key: str
    action: OutcomeAction
    entity_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"key": self.key, "action": self.action}
        if self.entity_id is not None:
            data["entity_id"] = self.entity_id
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BatchResult:
    """Ordered per-item outcomes of one batch, in Gateway order."""

    outcomes: list[ItemOutcome] = field(default_factory=list)

    def add(self, outcome: ItemOutcome) -> ItemOutcome:
        self.outcomes.append(outcome)
        return outcome

    def count(self, action: OutcomeAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action)

    @property
    def created(self) -> int:
        return self.count("created")

    @property
    def updated(self) -> int:
        return self.count("updated")

    @property
    def unchanged(self) -> int:
        return self.count("unchanged")

    @property
    def errors(self) -> int:
        return self.count("error")

    @property
    def failed(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.action == "error"]

    def counts(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "errors": self.errors,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
