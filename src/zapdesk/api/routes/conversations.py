"""Conversations (inbox) endpoints.

Read endpoints list and show conversations and their message timeline;
write endpoints drive the conversation state machine, operator replies and
the per-conversation message sync. Every query is scoped by the acting
operator's organization.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from zapdesk.api.auth import CurrentUser, get_current_user
from zapdesk.api.sync_responses import sync_response
from zapdesk.domain.conversation_state import (
    ConversationNotFoundError,
    ConversationStateMachine,
    InvalidTransitionError,
    UserNotFoundError,
)
from zapdesk.domain.models import Conversation, ConversationPriority, ConversationStatus
from zapdesk.domain.repositories import ConversationRepository, MessageRepository
from zapdesk.services.sync_service import SyncService, build_sync_service

router = APIRouter(prefix="/conversations", tags=["conversations"])

_state_machine: ConversationStateMachine | None = None
_sync_service: SyncService | None = None


def _get_conversation_repository() -> ConversationRepository:
    """Get conversations repository (allows override in tests)."""
    from zapdesk.infra.repositories.conversations_repository import PgConversationRepository

    return PgConversationRepository()


def _get_message_repository() -> MessageRepository:
    """Get messages repository (allows override in tests)."""
    from zapdesk.infra.repositories.messages_repository import PgMessageRepository

    return PgMessageRepository()


def _get_state_machine() -> ConversationStateMachine:
    """Get state machine (allows override in tests)."""
    global _state_machine
    if _state_machine is None:
        from zapdesk.infra.repositories.directory_repository import PgUserRepository
        from zapdesk.infra.repositories.outbox_repository import OutboxEventEmitter

        _state_machine = ConversationStateMachine(
            _get_conversation_repository(), PgUserRepository(), OutboxEventEmitter()
        )
    return _state_machine


def _get_sync_service() -> SyncService:
    """Get sync service (allows override in tests)."""
    global _sync_service
    if _sync_service is None:
        _sync_service = build_sync_service()
    return _sync_service


# ── Request bodies ───────────────────────────────────────


class TransferRequest(BaseModel):
    """Request body for POST /conversations/{id}/transfer."""

    user_id: str = Field(..., min_length=1)


class UpdateConversationRequest(BaseModel):
    """Request body for PATCH /conversations/{id}. Omitted fields are untouched."""

    priority: ConversationPriority | None = None
    notes: str | None = None


class TagRequest(BaseModel):
    tag: str = Field(..., min_length=1, max_length=50)


class SyncMessagesRequest(BaseModel):
    remote_jid: str | None = None


class SendMessageRequest(BaseModel):
    """Request body for POST /conversations/{id}/messages."""

    text: str = Field(..., min_length=1, max_length=4096)


# ── Helpers ──────────────────────────────────────────────


def _run(operation, *args, **kwargs) -> dict:
    """Invoke a state machine operation and map its errors to HTTP."""
    try:
        conversation: Conversation = operation(*args, **kwargs)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"conversation": conversation.to_dict()}


# ── Read endpoints ───────────────────────────────────────


@router.get("")
def list_conversations(
    status: ConversationStatus | None = Query(None),
    priority: ConversationPriority | None = Query(None),
    assigned_to: str | None = Query(None),
    instance_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """List conversations, newest activity first.

    status=ARCHIVED selects archived conversations; any other status (or
    none) lists only non-archived ones.
    """
    conversations, total = _get_conversation_repository().list(
        user.organization_id,
        status=status.value if status else None,
        priority=priority.value if priority else None,
        assigned_to_id=assigned_to,
        instance_id=instance_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "conversations": [c.to_dict() for c in conversations],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Conversation detail with its most recent messages."""
    conversation = _get_conversation_repository().get(user.organization_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = _get_message_repository().list_for_conversation(
        user.organization_id, conversation_id
    )
    return {
        **conversation.to_dict(),
        "messages": [m.to_dict() for m in reversed(messages)],
    }


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: str = Path(..., description="Conversation UUID"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Full message timeline, oldest first, one page at a time."""
    if _get_conversation_repository().get(user.organization_id, conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages, total = _get_message_repository().list_page(
        user.organization_id,
        conversation_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "messages": [m.to_dict() for m in messages],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


# ── Lifecycle ────────────────────────────────────────────


@router.post("/{conversation_id}/assign")
def assign_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Take an open, unassigned conversation (409 if someone got it first)."""
    return _run(
        _get_state_machine().assign,
        user.organization_id,
        conversation_id,
        acting_user_id=user.id,
    )


@router.post("/{conversation_id}/transfer")
def transfer_conversation(
    body: TransferRequest,
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().transfer,
        user.organization_id,
        conversation_id,
        target_user_id=body.user_id,
        acting_user_id=user.id,
    )


@router.post("/{conversation_id}/close")
def close_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().close,
        user.organization_id,
        conversation_id,
        acting_user_id=user.id,
    )


@router.post("/{conversation_id}/reopen")
def reopen_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().reopen,
        user.organization_id,
        conversation_id,
        acting_user_id=user.id,
    )


@router.post("/{conversation_id}/archive")
def archive_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().archive,
        user.organization_id,
        conversation_id,
        acting_user_id=user.id,
    )


@router.post("/{conversation_id}/unarchive")
def unarchive_conversation(
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().unarchive,
        user.organization_id,
        conversation_id,
        acting_user_id=user.id,
    )


# ── Operator-owned fields ────────────────────────────────


@router.patch("/{conversation_id}")
def update_conversation(
    body: UpdateConversationRequest,
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=422, detail="Nothing to update")

    machine = _get_state_machine()
    response: dict = {}
    if "priority" in fields:
        if body.priority is None:
            raise HTTPException(status_code=422, detail="priority cannot be null")
        response = _run(
            machine.set_priority,
            user.organization_id,
            conversation_id,
            body.priority,
            acting_user_id=user.id,
        )
    if "notes" in fields:
        response = _run(
            machine.update_notes,
            user.organization_id,
            conversation_id,
            body.notes,
            acting_user_id=user.id,
        )
    return response


@router.post("/{conversation_id}/tags")
def add_tag(
    body: TagRequest,
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().add_tag,
        user.organization_id,
        conversation_id,
        body.tag,
        acting_user_id=user.id,
    )


@router.delete("/{conversation_id}/tags/{tag}")
def remove_tag(
    conversation_id: str = Path(..., description="Conversation UUID"),
    tag: str = Path(..., max_length=50),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _run(
        _get_state_machine().remove_tag,
        user.organization_id,
        conversation_id,
        tag,
        acting_user_id=user.id,
    )


# ── Gateway sync and replies ─────────────────────────────


@router.post("/{conversation_id}/sync-messages")
def sync_messages(
    body: SyncMessagesRequest | None = None,
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Import the conversation's message history from the Gateway.

    Returns:
        200 with counts, 200 with reason=not_configured, 404 if the
        conversation/instance is unknown, 502 on Gateway failure.
    """
    result = _get_sync_service().sync_messages(
        user.organization_id,
        conversation_id,
        remote_jid=body.remote_jid if body else None,
    )
    return sync_response(result)


@router.post("/{conversation_id}/messages")
def send_message(
    body: SendMessageRequest,
    conversation_id: str = Path(..., description="Conversation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Reply to the contact through the Gateway.

    Returns:
        200 with the stored message, 200 with reason=not_configured, 404 if
        the conversation/instance/contact is unknown, 502 if the Gateway
        rejects the send (nothing is stored then).
    """
    if not body.text.strip():
        raise HTTPException(status_code=422, detail="text cannot be blank")

    result = _get_sync_service().send_message(
        user.organization_id,
        conversation_id,
        body.text,
        sent_by_id=user.id,
    )
    return sync_response(result)
