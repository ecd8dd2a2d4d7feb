"""Message import - pull a chat's messages from the Gateway and persist them.

Steps per Gateway record:
1. classify the payload (text, media, fallback placeholder)
2. derive delivery status from the last MessageUpdate entry
3. persist once per (conversation_id, external_id); a re-sync only ever
   upgrades the stored delivery status (SENT < DELIVERED < READ)

Items are committed one by one. A failing item is logged and counted; it
never aborts the rest of the page.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from zapdesk.infra.time import parse_timestamp, utc_now
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.whatsapp.evolution_adapter import message_key
from zapdesk.whatsapp.evolution_client import MESSAGES_PAGE_SIZE, EvolutionClient, GatewayError

from .models import (
    MESSAGE_STATUS_RANK,
    BatchResult,
    ItemOutcome,
    MessageDirection,
    MessageStatus,
    MessageType,
    NewMessage,
)
from .repositories import ConversationRepository, MessageRepository

logger = get_logger(__name__)

# Upper bound on findMessages pages per import (50 * 20 = 1000 messages)
MAX_PAGES = 20

UNSUPPORTED_PLACEHOLDER = "[Mensagem não suportada]"

# Gateway update status -> local delivery status; anything else stays SENT
_UPDATE_STATUS_MAP: dict[str, MessageStatus] = {
    "READ": MessageStatus.READ,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
}


@dataclass
class ImportResult(BatchResult):
    """BatchResult plus pagination bookkeeping."""

    pages_fetched: int = 0
    truncated: bool = False
    gateway_error: str | None = None


def classify_content(message: Any) -> tuple[str, MessageType]:
    """Map a Gateway message payload to (content, type).

    Variants are checked in a fixed priority order; the first one present wins.
    """
    if not isinstance(message, dict):
        return UNSUPPORTED_PLACEHOLDER, MessageType.TEXT

    conversation = message.get("conversation")
    if isinstance(conversation, str) and conversation:
        return conversation, MessageType.TEXT

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return str(extended["text"]), MessageType.TEXT

    image = message.get("imageMessage")
    if isinstance(image, dict):
        return _caption(image) or "[Imagem]", MessageType.IMAGE

    document = message.get("documentMessage") or _unwrap_document_with_caption(message)
    if isinstance(document, dict):
        file_name = document.get("fileName") or document.get("title")
        content = f"[Documento] {file_name}" if file_name else "[Documento]"
        caption = _caption(document)
        if caption and caption != file_name:
            content = f"{content}\n{caption}"
        return content, MessageType.DOCUMENT

    audio = message.get("audioMessage")
    if isinstance(audio, dict):
        return "[Áudio]", MessageType.AUDIO

    video = message.get("videoMessage")
    if isinstance(video, dict):
        return _caption(video) or "[Vídeo]", MessageType.VIDEO

    return UNSUPPORTED_PLACEHOLDER, MessageType.TEXT


def map_update_status(value: Any) -> MessageStatus:
    """Map one Gateway update status string to a local delivery status."""
    if isinstance(value, str):
        return _UPDATE_STATUS_MAP.get(value.upper(), MessageStatus.SENT)
    return MessageStatus.SENT


def derive_status(record: dict[str, Any]) -> MessageStatus:
    """Delivery status from the LAST MessageUpdate entry (default SENT)."""
    updates = record.get("MessageUpdate")
    if not isinstance(updates, list) or not updates:
        return MessageStatus.SENT
    last = updates[-1]
    if not isinstance(last, dict):
        return MessageStatus.SENT
    return map_update_status(last.get("status"))


def is_status_upgrade(current: MessageStatus, new: MessageStatus) -> bool:
    """True if new is further along the delivery path than current.

    FAILED is never replaced, and nothing downgrades to FAILED via sync.
    """
    if current == MessageStatus.FAILED or new == MessageStatus.FAILED:
        return False
    return MESSAGE_STATUS_RANK[new] > MESSAGE_STATUS_RANK[current]


def to_new_message(record: dict[str, Any]) -> NewMessage:
    """Build the persistable form of one Gateway message record.

    Raises:
        InvalidPayloadError: If the record has no key/id.
    """
    message_id, remote_jid, from_me = message_key(record)
    content, message_type = classify_content(record.get("message"))

    return NewMessage(
        external_id=message_id,
        content=content,
        type=message_type,
        direction=MessageDirection.OUTBOUND if from_me else MessageDirection.INBOUND,
        status=derive_status(record),
        sent_at=parse_timestamp(record.get("messageTimestamp")),
        metadata={
            "externalId": message_id,
            "remoteJid": remote_jid,
            "pushName": record.get("pushName"),
            # Full payload kept for debugging
            "raw": record,
        },
    )


def to_outbound_message(
    sent: dict[str, Any], text: str, *, sent_by_id: str | None = None
) -> NewMessage:
    """Persistable form of a reply the Gateway just accepted via sendText."""
    message_id, remote_jid, _ = message_key(sent)
    return NewMessage(
        external_id=message_id,
        content=text,
        type=MessageType.TEXT,
        direction=MessageDirection.OUTBOUND,
        status=MessageStatus.SENT,
        sent_at=parse_timestamp(sent.get("messageTimestamp")) or utc_now(),
        metadata={
            "externalId": message_id,
            "remoteJid": remote_jid,
            "sentById": sent_by_id,
            "raw": sent,
        },
    )


def store_message(
    messages: MessageRepository,
    *,
    organization_id: str,
    conversation_id: str,
    new_message: NewMessage,
) -> ItemOutcome:
    """Persist one classified message (dedup on external id)."""
    key = new_message.external_id

    existing = messages.find_by_external_id(organization_id, conversation_id, key)
    if existing is None:
        stored, created = messages.create(organization_id, conversation_id, new_message)
        if created:
            return ItemOutcome(key=key, action="created", entity_id=stored.id)
        existing = stored

    if is_status_upgrade(existing.status, new_message.status):
        upgraded = messages.upgrade_status(organization_id, existing.id, new_message.status)
        if upgraded is not None:
            return ItemOutcome(key=key, action="updated", entity_id=existing.id)

    return ItemOutcome(key=key, action="unchanged", entity_id=existing.id)


def import_message_record(
    messages: MessageRepository,
    *,
    organization_id: str,
    conversation_id: str,
    record: Any,
) -> tuple[ItemOutcome, NewMessage | None]:
    """Classify and persist one raw record. Never raises."""
    key = _record_key(record)
    try:
        if not isinstance(record, dict):
            raise ValueError("message record is not an object")
        new_message = to_new_message(record)
        outcome = store_message(
            messages,
            organization_id=organization_id,
            conversation_id=conversation_id,
            new_message=new_message,
        )
    except Exception as exc:
        logger.warning(
            "message import failed",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    conversation_id=conversation_id,
                    message_id=key,
                    error=exc,
                )
            },
        )
        return ItemOutcome(key=key, action="error", error=str(exc)), None

    return outcome, new_message


def import_messages(
    client: EvolutionClient,
    messages: MessageRepository,
    conversations: ConversationRepository,
    *,
    organization_id: str,
    instance_name: str,
    conversation_id: str,
    remote_jid: str,
    max_pages: int = MAX_PAGES,
    page_size: int = MESSAGES_PAGE_SIZE,
) -> ImportResult:
    """Import every Gateway message of one chat into a local conversation.

    Pages are fetched until an empty or short page, the Gateway-reported
    page count, or max_pages. A Gateway failure stops paging; items already
    stored stay stored and the error is reported in result.gateway_error.
    """
    result = ImportResult()
    newest = None

    for page in range(1, max_pages + 1):
        try:
            records, total_pages = client.find_messages(
                instance_name, remote_jid, page=page, page_size=page_size
            )
        except GatewayError as exc:
            result.gateway_error = str(exc)
            break

        result.pages_fetched = page
        if not records:
            break

        for record in records:
            outcome, new_message = import_message_record(
                messages,
                organization_id=organization_id,
                conversation_id=conversation_id,
                record=record,
            )
            result.add(outcome)
            if new_message is not None and new_message.sent_at is not None:
                if newest is None or new_message.sent_at > newest:
                    newest = new_message.sent_at

        if total_pages is not None and page >= total_pages:
            break
        if len(records) < page_size:
            break
    else:
        result.truncated = True
        logger.warning(
            "message import stopped at page cap",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    conversation_id=conversation_id,
                    max_pages=max_pages,
                )
            },
        )

    if newest is not None:
        conversations.advance_last_message_at(organization_id, conversation_id, newest)

    logger.info(
        "message import finished",
        extra={
            "extra_fields": safe_log_context(
                organization_id=organization_id,
                conversation_id=conversation_id,
                pages=result.pages_fetched,
                gateway_error=result.gateway_error is not None,
                **result.counts(),
            )
        },
    )
    return result


def _caption(media: dict[str, Any]) -> str | None:
    caption = media.get("caption")
    if isinstance(caption, str) and caption.strip():
        return caption.strip()
    return None


def _unwrap_document_with_caption(message: dict[str, Any]) -> Any:
    # Documents sent with a caption arrive wrapped one level deeper
    wrapper = message.get("documentWithCaptionMessage")
    if isinstance(wrapper, dict):
        inner = wrapper.get("message")
        if isinstance(inner, dict):
            return inner.get("documentMessage")
    return None


def _record_key(record: Any) -> str:
    if isinstance(record, dict):
        key = record.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])
        if record.get("id"):
            return str(record["id"])
    return "<unknown>"
