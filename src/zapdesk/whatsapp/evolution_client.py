"""Evolution API HTTP client (the Gateway).

Use as a context manager so the underlying requests.Session is closed:

    with EvolutionClient(config) as client:
        chats = client.find_chats(instance_name)

Security: NEVER log remote_jid or message bodies. Only paths, status codes,
durations and hashed identifiers.
"""

import os
import time
from typing import Any

import requests

from zapdesk.infra.gateway_settings import GatewayConfig
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import hash_identifier, safe_log_context

from .evolution_adapter import (
    InvalidPayloadError,
    extract_list,
    extract_message_page,
    message_key,
)

logger = get_logger(__name__)

# Timeout for each Gateway HTTP call (seconds)
DEFAULT_HTTP_TIMEOUT = 10.0

# Retry config (network errors and 5xx only)
MAX_RETRIES = 1
RETRY_DELAY = 0.2

# findMessages page size
MESSAGES_PAGE_SIZE = 50

# Longest Gateway error body kept in exception messages
_ERROR_BODY_LIMIT = 200


class GatewayError(Exception):
    """Network failure, timeout, non-2xx or unreadable Gateway response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _timeout_from_env() -> float:
    raw = os.environ.get("GATEWAY_HTTP_TIMEOUT", "")
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_HTTP_TIMEOUT
    return value if value > 0 else DEFAULT_HTTP_TIMEOUT


class EvolutionClient:
    """Thin client over the chat and sendText endpoints the CRM consumes.

    One client is bound to one tenant's GatewayConfig.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout if timeout is not None else _timeout_from_env()
        self._owns_session = session is None
        self._session = session or requests.Session()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "EvolutionClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def find_chats(self, instance_name: str) -> list[Any]:
        payload = self._post(f"/chat/findChats/{instance_name}", {})
        try:
            return extract_list(payload)
        except InvalidPayloadError as exc:
            raise GatewayError(f"Unexpected findChats response: {exc}") from exc

    def find_contacts(self, instance_name: str) -> list[Any]:
        payload = self._post(f"/chat/findContacts/{instance_name}", {"where": {}})
        try:
            return extract_list(payload)
        except InvalidPayloadError as exc:
            raise GatewayError(f"Unexpected findContacts response: {exc}") from exc

    def find_messages(
        self,
        instance_name: str,
        remote_jid: str,
        *,
        page: int = 1,
        page_size: int = MESSAGES_PAGE_SIZE,
    ) -> tuple[list[dict[str, Any]], int | None]:
        """Fetch one page of a chat's messages.

        Returns:
            (records, total_pages); total_pages is None if the Gateway
            does not report it.
        """
        body = {
            "where": {"key": {"remoteJid": remote_jid}},
            "page": page,
            "offset": page_size,
        }
        payload = self._post(f"/chat/findMessages/{instance_name}", body)
        try:
            return extract_message_page(payload)
        except InvalidPayloadError as exc:
            raise GatewayError(f"Unexpected findMessages response: {exc}") from exc

    def find_status_message(
        self,
        instance_name: str,
        remote_jid: str,
        message_id: str,
    ) -> Any:
        body = {"where": {"remoteJid": remote_jid, "id": message_id}}
        return self._post(f"/chat/findStatusMessage/{instance_name}", body)

    def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        """Send a text message; returns the Gateway's record of it.

        Not retried: a send that timed out may still have been delivered.

        Raises:
            GatewayError: On any failure, or if the response carries no key id.
        """
        payload = self._post(
            f"/message/sendText/{instance_name}",
            {"number": number, "text": text},
            retries=0,
        )
        if not isinstance(payload, dict):
            raise GatewayError("Unexpected sendText response: not an object")
        try:
            message_key(payload)
        except InvalidPayloadError as exc:
            raise GatewayError(f"Unexpected sendText response: {exc}") from exc
        return payload

    def _post(self, path: str, body: dict[str, Any], *, retries: int = MAX_RETRIES) -> Any:
        """POST JSON with bounded timeout, retrying network errors and 5xx.

        Raises:
            GatewayError: On timeout, network error, non-2xx or invalid JSON.
        """
        url = f"{self._config.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "apikey": self._config.api_key,
        }
        log_ctx = {
            "endpoint": path.rsplit("/", 1)[0],
            "instance_hash": hash_identifier(path.rsplit("/", 1)[-1]),
        }

        for attempt in range(retries + 1):
            started = time.monotonic()
            try:
                resp = self._session.post(url, json=body, headers=headers, timeout=self._timeout)
            except requests.Timeout as exc:
                error: GatewayError = GatewayError(
                    f"Gateway timed out after {self._timeout:g}s"
                )
                retryable = True
                cause: Exception = exc
            except requests.RequestException as exc:
                error = GatewayError(f"Gateway unreachable: {type(exc).__name__}: {exc}")
                retryable = True
                cause = exc
            else:
                duration_ms = int((time.monotonic() - started) * 1000)
                if 200 <= resp.status_code < 300:
                    logger.info(
                        "gateway call ok",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx,
                                status_code=resp.status_code,
                                duration_ms=duration_ms,
                                attempt=attempt,
                            )
                        },
                    )
                    return _decode(resp)

                error = GatewayError(
                    f"Gateway returned HTTP {resp.status_code}: {_error_text(resp)}",
                    status_code=resp.status_code,
                )
                retryable = resp.status_code >= 500
                cause = error

            if attempt < retries and retryable:
                logger.warning(
                    "gateway call failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx,
                            attempt=attempt,
                            status_code=error.status_code,
                            error_type=type(cause).__name__,
                        )
                    },
                )
                time.sleep(RETRY_DELAY)
                continue

            logger.error(
                "gateway call failed",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx,
                        attempt=attempt,
                        status_code=error.status_code,
                        error_type=type(cause).__name__,
                    )
                },
            )
            if cause is error:
                raise error
            raise error from cause

        # Loop always returns or raises
        raise GatewayError("Gateway call failed")


def _decode(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as exc:
        raise GatewayError("Gateway returned invalid JSON", status_code=resp.status_code) from exc


def _error_text(resp: requests.Response) -> str:
    """Best-effort error description from a Gateway error body."""
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or resp.reason or "").strip()[:_ERROR_BODY_LIMIT]

    if isinstance(data, dict):
        response = data.get("response")
        message = data.get("message") or data.get("error")
        if isinstance(response, dict) and response.get("message"):
            message = response["message"]
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)[:_ERROR_BODY_LIMIT]
    return str(data)[:_ERROR_BODY_LIMIT]
