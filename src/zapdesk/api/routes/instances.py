"""Instance-level Gateway endpoints (chat sync and read-through lookups)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from fastapi.responses import JSONResponse

from zapdesk.api.auth import CurrentUser, get_current_user
from zapdesk.api.sync_responses import sync_response
from zapdesk.services.sync_service import SyncService, build_sync_service

router = APIRouter(prefix="/instances", tags=["instances"])

_sync_service: SyncService | None = None


def _get_sync_service() -> SyncService:
    """Get sync service (allows override in tests)."""
    global _sync_service
    if _sync_service is None:
        _sync_service = build_sync_service()
    return _sync_service


@router.post("/{instance_id}/sync-chats")
def sync_chats(
    instance_id: str = Path(..., description="Instance UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Mirror the instance's Gateway chats into contacts and conversations."""
    return sync_response(_get_sync_service().sync_chats(user.organization_id, instance_id))


@router.get("/{instance_id}/contacts")
def list_gateway_contacts(
    instance_id: str = Path(..., description="Instance UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    return sync_response(_get_sync_service().get_contacts(user.organization_id, instance_id))


@router.get("/{instance_id}/messages/{remote_jid}/{message_id}/status")
def get_message_status(
    instance_id: str = Path(..., description="Instance UUID"),
    remote_jid: str = Path(...),
    message_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    return sync_response(
        _get_sync_service().get_message_status(
            user.organization_id, instance_id, remote_jid, message_id
        )
    )
