"""HTTP translation of SyncResult envelopes."""

from fastapi.responses import JSONResponse

from zapdesk.services.sync_service import GATEWAY_ERROR, NOT_FOUND, SyncResult

# "not configured" is a normal answer for the UI (it shows the setup screen)
_STATUS_BY_REASON = {
    NOT_FOUND: 404,
    GATEWAY_ERROR: 502,
}


def sync_response(result: SyncResult) -> JSONResponse:
    status_code = _STATUS_BY_REASON.get(result.reason, 200)
    return JSONResponse(status_code=status_code, content=result.to_dict())
