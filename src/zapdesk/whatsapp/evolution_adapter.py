"""Evolution API adapter - validate and normalize Gateway payloads."""

from typing import Any

from zapdesk.infra.time import parse_timestamp

from .models import ChatRecord, WebhookEvent


class InvalidPayloadError(Exception):
    """Raised when a Gateway payload has an invalid shape."""

    pass


def phone_from_jid(remote_jid: str) -> str:
    """Strip the @domain suffix (and any :device part) from a JID."""
    user = remote_jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def jid_from_phone(phone_number: str) -> str:
    """Personal-chat JID for a bare phone number."""
    return f"{phone_number}@s.whatsapp.net"


def parse_chat(raw: Any) -> ChatRecord:
    """Validate one findChats entry.

    Raises:
        InvalidPayloadError: If the entry is not an object or has no remoteJid.
    """
    if not isinstance(raw, dict):
        raise InvalidPayloadError("chat entry is not an object")

    remote_jid = raw.get("remoteJid") or raw.get("id")
    if not remote_jid or not isinstance(remote_jid, str) or "@" not in remote_jid:
        raise InvalidPayloadError("missing remoteJid")

    chat_id = raw.get("id")
    window_active = raw.get("windowActive")

    return ChatRecord(
        id=str(chat_id) if chat_id else remote_jid,
        remote_jid=remote_jid,
        push_name=_clean(raw.get("pushName")),
        profile_pic_url=_clean(raw.get("profilePicUrl")),
        updated_at=parse_timestamp(raw.get("updatedAt")),
        window_start=raw.get("windowStart"),
        window_expires=raw.get("windowExpires"),
        window_active=window_active if isinstance(window_active, bool) else None,
    )


def extract_list(payload: Any) -> list[Any]:
    """Accept either a bare list or the common {"records": [...]} wrappers."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("records", "chats", "contacts", "data"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    raise InvalidPayloadError("expected a list")


def extract_message_page(payload: Any) -> tuple[list[dict[str, Any]], int | None]:
    """Extract (records, total_pages) from a findMessages response.

    The documented shape is {"messages": {"records": [...], "pages": N}};
    older Gateway builds return a bare list.
    """
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)], None

    if not isinstance(payload, dict):
        raise InvalidPayloadError("unexpected findMessages response")

    messages = payload.get("messages", payload)
    if isinstance(messages, list):
        return [r for r in messages if isinstance(r, dict)], None
    if not isinstance(messages, dict):
        raise InvalidPayloadError("unexpected findMessages response")

    records = messages.get("records", [])
    if not isinstance(records, list):
        raise InvalidPayloadError("messages.records is not a list")

    pages = messages.get("pages")
    total_pages = pages if isinstance(pages, int) and pages >= 0 else None
    return [r for r in records if isinstance(r, dict)], total_pages


def normalize_webhook(instance_name: str, payload: Any) -> WebhookEvent:
    """Normalize an Evolution webhook body.

    Event names arrive either dotted ("messages.upsert") or upper snake case
    ("MESSAGES_UPSERT") depending on Gateway settings.

    Raises:
        InvalidPayloadError: If the body has no event name.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("webhook body is not an object")

    event = payload.get("event")
    if not event or not isinstance(event, str):
        raise InvalidPayloadError("missing event")

    data = payload.get("data")
    if isinstance(data, list):
        data = {"items": data}
    elif not isinstance(data, dict):
        data = {}

    return WebhookEvent(
        event=event.strip().lower().replace("_", "."),
        instance_name=instance_name,
        data=data,
    )


def message_key(record: dict[str, Any]) -> tuple[str, str, bool]:
    """Return (message_id, remote_jid, from_me) of a Gateway message record.

    Raises:
        InvalidPayloadError: If the key or its id is missing.
    """
    key = record.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing message key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    return message_id, str(key.get("remoteJid") or ""), bool(key.get("fromMe"))


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None
