"""Conversation state machine - operator-driven lifecycle transitions.

    OPEN --assign--> IN_PROGRESS --close--> CLOSED --reopen--> IN_PROGRESS
                     IN_PROGRESS --transfer--> IN_PROGRESS (new assignee)

Archiving is an overlay flag, not a state: archive remembers the current
status in archived_from_status and unarchive restores it. While archived,
only unarchive and the field edits (priority, tags, notes) are allowed.

Each transition is ONE conditional update whose WHERE clause re-checks the
guard (compare-and-set), so two operators racing to assign the same
conversation cannot both win.
"""

from __future__ import annotations

from typing import Any, Mapping

from zapdesk.observability.correlation import get_correlation_id
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context

from . import events
from .events import EventEmitter
from .models import Conversation, ConversationPriority, ConversationStatus
from .repositories import ConversationRepository, UserRepository

logger = get_logger(__name__)

MAX_TAG_LENGTH = 50

# archive re-reads the status once if it lost a race on it
ARCHIVE_ATTEMPTS = 2

CONCURRENT_MODIFICATION = "conversation was modified concurrently, retry"


class ConversationNotFoundError(Exception):
    """Raised when the conversation does not exist in the organization."""

    pass


class UserNotFoundError(Exception):
    """Raised when a target user does not belong to the organization."""

    pass


class InvalidTransitionError(Exception):
    """Raised when an operation's precondition does not hold."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Cannot {operation} conversation: {reason}")


class ConversationStateMachine:
    """Guarded operator operations over one organization's conversations."""

    def __init__(
        self,
        conversations: ConversationRepository,
        users: UserRepository,
        emitter: EventEmitter,
    ) -> None:
        self._conversations = conversations
        self._users = users
        self._emitter = emitter

    # ── Lifecycle ────────────────────────────────────────

    def assign(self, organization_id: str, conversation_id: str, *, acting_user_id: str) -> Conversation:
        """Take an open, unassigned conversation."""
        return self._transition(
            organization_id,
            conversation_id,
            operation="assign",
            event_type=events.CONVERSATION_ASSIGNED,
            expected={
                "status": ConversationStatus.OPEN,
                "assigned_to_id": None,
                "is_archived": False,
            },
            changes={
                "assigned_to_id": acting_user_id,
                "status": ConversationStatus.IN_PROGRESS,
            },
            actor_id=acting_user_id,
        )

    def transfer(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        target_user_id: str,
        acting_user_id: str | None = None,
    ) -> Conversation:
        """Hand an in-progress conversation to another operator.

        Raises:
            UserNotFoundError: If target_user_id is not in the organization.
        """
        if not self._users.exists(organization_id, target_user_id):
            raise UserNotFoundError(f"User {target_user_id} not found")

        return self._transition(
            organization_id,
            conversation_id,
            operation="transfer",
            event_type=events.CONVERSATION_TRANSFERRED,
            expected={"status": ConversationStatus.IN_PROGRESS, "is_archived": False},
            changes={"assigned_to_id": target_user_id},
            actor_id=acting_user_id,
        )

    def close(
        self, organization_id: str, conversation_id: str, *, acting_user_id: str | None = None
    ) -> Conversation:
        return self._transition(
            organization_id,
            conversation_id,
            operation="close",
            event_type=events.CONVERSATION_CLOSED,
            expected={"status": ConversationStatus.IN_PROGRESS, "is_archived": False},
            changes={"status": ConversationStatus.CLOSED},
            actor_id=acting_user_id,
        )

    def reopen(
        self, organization_id: str, conversation_id: str, *, acting_user_id: str | None = None
    ) -> Conversation:
        return self._transition(
            organization_id,
            conversation_id,
            operation="reopen",
            event_type=events.CONVERSATION_REOPENED,
            expected={"status": ConversationStatus.CLOSED, "is_archived": False},
            changes={"status": ConversationStatus.IN_PROGRESS},
            actor_id=acting_user_id,
        )

    def archive(
        self, organization_id: str, conversation_id: str, *, acting_user_id: str | None = None
    ) -> Conversation:
        """Archive from any status; the status is remembered for unarchive.

        The status read here is guarded by the update. If another operator
        changes it in between, the read and update run once more.
        """
        current = self._require(organization_id, conversation_id)
        for _ in range(ARCHIVE_ATTEMPTS):
            try:
                return self._transition(
                    organization_id,
                    conversation_id,
                    operation="archive",
                    event_type=events.CONVERSATION_ARCHIVED,
                    expected={"is_archived": False, "status": current.status},
                    changes={"is_archived": True, "archived_from_status": current.status},
                    actor_id=acting_user_id,
                )
            except InvalidTransitionError:
                current = self._require(organization_id, conversation_id)
                if current.is_archived:
                    raise
        raise InvalidTransitionError("archive", CONCURRENT_MODIFICATION)

    def unarchive(
        self, organization_id: str, conversation_id: str, *, acting_user_id: str | None = None
    ) -> Conversation:
        """Clear the archive flag and restore the status held before archiving."""
        current = self._require(organization_id, conversation_id)
        restored = current.archived_from_status or current.status
        return self._transition(
            organization_id,
            conversation_id,
            operation="unarchive",
            event_type=events.CONVERSATION_UNARCHIVED,
            expected={
                "is_archived": True,
                "archived_from_status": current.archived_from_status,
            },
            changes={
                "is_archived": False,
                "archived_from_status": None,
                "status": restored,
            },
            actor_id=acting_user_id,
        )

    # ── Operator-owned field edits ───────────────────────

    def set_priority(
        self,
        organization_id: str,
        conversation_id: str,
        priority: ConversationPriority,
        *,
        acting_user_id: str | None = None,
    ) -> Conversation:
        return self._transition(
            organization_id,
            conversation_id,
            operation="set priority of",
            event_type=events.CONVERSATION_UPDATED,
            expected={},
            changes={"priority": priority},
            actor_id=acting_user_id,
        )

    def update_notes(
        self,
        organization_id: str,
        conversation_id: str,
        notes: str | None,
        *,
        acting_user_id: str | None = None,
    ) -> Conversation:
        return self._transition(
            organization_id,
            conversation_id,
            operation="update notes of",
            event_type=events.CONVERSATION_UPDATED,
            expected={},
            changes={"notes": notes or None},
            actor_id=acting_user_id,
        )

    def add_tag(
        self,
        organization_id: str,
        conversation_id: str,
        tag: str,
        *,
        acting_user_id: str | None = None,
    ) -> Conversation:
        tag = _normalize_tag(tag, operation="tag")
        updated = self._conversations.add_tag(organization_id, conversation_id, tag)
        if updated is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        self._notify(updated, events.CONVERSATION_UPDATED, operation="tag", actor_id=acting_user_id)
        return updated

    def remove_tag(
        self,
        organization_id: str,
        conversation_id: str,
        tag: str,
        *,
        acting_user_id: str | None = None,
    ) -> Conversation:
        tag = _normalize_tag(tag, operation="untag")
        updated = self._conversations.remove_tag(organization_id, conversation_id, tag)
        if updated is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        self._notify(updated, events.CONVERSATION_UPDATED, operation="untag", actor_id=acting_user_id)
        return updated

    # ── Internals ────────────────────────────────────────

    def _require(self, organization_id: str, conversation_id: str) -> Conversation:
        current = self._conversations.get(organization_id, conversation_id)
        if current is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return current

    def _transition(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        operation: str,
        event_type: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        actor_id: str | None,
    ) -> Conversation:
        updated = self._conversations.compare_and_set(
            organization_id,
            conversation_id,
            expected=expected,
            changes=changes,
        )

        if updated is None:
            # Nothing matched: either gone or a guard failed. Re-read to say which.
            current = self._require(organization_id, conversation_id)
            reason = describe_violation(current, expected)
            logger.info(
                "conversation transition rejected",
                extra={
                    "extra_fields": safe_log_context(
                        organization_id=organization_id,
                        conversation_id=conversation_id,
                        operation=operation,
                        reason=reason,
                    )
                },
            )
            raise InvalidTransitionError(operation, reason)

        self._notify(updated, event_type, operation=operation, actor_id=actor_id)
        return updated

    def _notify(
        self,
        conversation: Conversation,
        event_type: str,
        *,
        operation: str,
        actor_id: str | None,
    ) -> None:
        """Announce the new snapshot. The transition is already committed."""
        logger.info(
            "conversation transition applied",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=conversation.organization_id,
                    conversation_id=conversation.id,
                    operation=operation,
                    status=conversation.status.value,
                    is_archived=conversation.is_archived,
                )
            },
        )
        try:
            self._emitter.emit(
                organization_id=conversation.organization_id,
                event_type=event_type,
                aggregate_type="conversation",
                aggregate_id=conversation.id,
                payload={
                    "actor_id": actor_id,
                    "correlation_id": get_correlation_id() or None,
                    "conversation": conversation.to_dict(),
                },
            )
        except Exception:
            # Clients fall back to polling; the committed change stands
            logger.exception(
                "conversation event emission failed",
                extra={
                    "extra_fields": safe_log_context(
                        conversation_id=conversation.id,
                        event_type=event_type,
                    )
                },
            )


def describe_violation(current: Conversation, expected: Mapping[str, Any]) -> str:
    """Human-readable reason why `current` does not satisfy `expected`."""
    if "is_archived" in expected and current.is_archived != expected["is_archived"]:
        return "conversation is archived" if current.is_archived else "conversation is not archived"

    if "status" in expected and current.status != expected["status"]:
        wanted = ConversationStatus(expected["status"]).value
        return f"status is {current.status.value}, expected {wanted}"

    if "assigned_to_id" in expected and current.assigned_to_id != expected["assigned_to_id"]:
        if expected["assigned_to_id"] is None:
            return "conversation is already assigned"
        return "conversation is assigned to someone else"

    # Guard held on re-read: another writer changed and restored it in between
    return CONCURRENT_MODIFICATION


def _normalize_tag(tag: str, *, operation: str) -> str:
    tag = (tag or "").strip()
    if not tag:
        raise InvalidTransitionError(operation, "tag must not be empty")
    if len(tag) > MAX_TAG_LENGTH:
        raise InvalidTransitionError(operation, f"tag longer than {MAX_TAG_LENGTH} characters")
    return tag
