"""Evolution API webhook endpoint.

Security:
- Shared secret in X-Webhook-Secret, compared in constant time
- Fail closed: without EVOLUTION_WEBHOOK_SECRET every call is rejected,
  unless WEBHOOK_SECRET_OPTIONAL=true (local dev only)
- Logs contain NO PII (no remote_jid, push names or message text)
"""

import hmac
import os
from typing import Any

from fastapi import APIRouter, Header, Path, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from zapdesk.observability.correlation import get_correlation_id
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.services.webhook_service import (
    InstanceNotFoundError,
    WebhookService,
    build_webhook_service,
)
from zapdesk.whatsapp.evolution_adapter import InvalidPayloadError, normalize_webhook

router = APIRouter(prefix="/webhooks/evolution", tags=["webhooks"])

logger = get_logger(__name__)

_webhook_service: WebhookService | None = None


def _get_webhook_service() -> WebhookService:
    """Get webhook service (allows override in tests)."""
    global _webhook_service
    if _webhook_service is None:
        _webhook_service = build_webhook_service()
    return _webhook_service


def _secret_is_optional() -> bool:
    return os.environ.get("WEBHOOK_SECRET_OPTIONAL", "").lower() in ("1", "true", "yes")


def _check_secret(provided: str | None) -> bool:
    """Validate the webhook secret (fail closed)."""
    correlation_id = get_correlation_id()
    expected = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")

    if not expected:
        if _secret_is_optional():
            logger.warning(
                "EVOLUTION_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False

    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


@router.post("/{instance_name}")
async def evolution_webhook(
    request: Request,
    instance_name: str = Path(..., description="Gateway instance name"),
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Response:
    """Receive an Evolution API event for one instance.

    Returns:
        200 with per-record counts (or ignored=true for unhandled events).
        400 if the body is not JSON or has no event name.
        401 if secret validation fails.
        404 if the instance is unknown.
    """
    if not _check_secret(x_webhook_secret):
        return Response(status_code=401, content="unauthorized")

    try:
        payload: Any = await request.json()
    except ValueError:
        return Response(status_code=400, content="invalid json")

    try:
        event = normalize_webhook(instance_name, payload)
    except InvalidPayloadError:
        logger.warning(
            "invalid evolution payload shape",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return Response(status_code=400, content="invalid payload shape")

    try:
        # handle() does blocking psycopg2 work; keep it off the event loop
        result = await run_in_threadpool(_get_webhook_service().handle, event)
    except InstanceNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Instância não encontrada"})

    if result is None:
        return JSONResponse({"success": True, "event": event.event, "ignored": True})
    return JSONResponse({"success": True, "event": event.event, **result.counts()})
