"""Webhook service: apply Evolution webhook events to local state.

Handled events:
- messages.upsert: contact + conversation reconciliation, then the message
  goes through the same dedup path as a history import
- messages.update: delivery status upgrade by external message id
- contacts.update: name / metadata refresh of known contacts

Anything else is acknowledged and ignored. Each record is processed on its
own; one bad record does not stop the rest of the delivery.

Security: NEVER log remote_jid, push names or message bodies.
"""

from __future__ import annotations

from typing import Any

from zapdesk.domain import events
from zapdesk.domain.contacts import chat_metadata, merge_metadata, reconcile_contact
from zapdesk.domain.conversations import reconcile_conversation
from zapdesk.domain.events import EventEmitter
from zapdesk.domain.messages import import_message_record, is_status_upgrade, map_update_status
from zapdesk.domain.models import BatchResult, Instance, ItemOutcome
from zapdesk.domain.repositories import (
    ContactRepository,
    ConversationRepository,
    InstanceRepository,
    MessageRepository,
    UserRepository,
)
from zapdesk.infra.time import parse_timestamp, utc_now
from zapdesk.observability.correlation import get_correlation_id
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.whatsapp.evolution_adapter import InvalidPayloadError, message_key, phone_from_jid
from zapdesk.whatsapp.models import ChatRecord, WebhookEvent

logger = get_logger(__name__)

MESSAGES_UPSERT = "messages.upsert"
MESSAGES_UPDATE = "messages.update"
CONTACTS_UPDATE = "contacts.update"


class InstanceNotFoundError(Exception):
    """Raised when a webhook names an instance we do not know."""

    pass


class WebhookService:
    def __init__(
        self,
        *,
        contacts: ContactRepository,
        conversations: ConversationRepository,
        messages: MessageRepository,
        instances: InstanceRepository,
        users: UserRepository,
        emitter: EventEmitter,
    ) -> None:
        self._contacts = contacts
        self._conversations = conversations
        self._messages = messages
        self._instances = instances
        self._users = users
        self._emitter = emitter

    def handle(self, event: WebhookEvent) -> BatchResult | None:
        """Dispatch one normalized webhook event.

        Returns:
            Per-record outcomes, or None if the event type is ignored.

        Raises:
            InstanceNotFoundError: If instance_name is unknown.
        """
        instance = self._instances.find_by_instance_name(event.instance_name)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {event.instance_name} not found")

        handler = {
            MESSAGES_UPSERT: self._handle_messages_upsert,
            MESSAGES_UPDATE: self._handle_messages_update,
            CONTACTS_UPDATE: self._handle_contacts_update,
        }.get(event.event)

        if handler is None:
            logger.info(
                "webhook event ignored",
                extra={"extra_fields": safe_log_context(event=event.event, instance_id=instance.id)},
            )
            return None

        result = handler(instance, event.data)
        logger.info(
            "webhook event processed",
            extra={
                "extra_fields": safe_log_context(
                    event=event.event,
                    organization_id=instance.organization_id,
                    instance_id=instance.id,
                    **result.counts(),
                )
            },
        )
        return result

    # ── messages.upsert ──────────────────────────────────

    def _handle_messages_upsert(self, instance: Instance, data: dict[str, Any]) -> BatchResult:
        result = BatchResult()
        for record in _records(data, "messages"):
            result.add(self._upsert_message(instance, record))
        return result

    def _upsert_message(self, instance: Instance, record: dict[str, Any]) -> ItemOutcome:
        organization_id = instance.organization_id
        try:
            message_id, remote_jid, from_me = message_key(record)
        except InvalidPayloadError as exc:
            return ItemOutcome(key="<unknown>", action="error", error=str(exc))

        # pushName on our own outbound messages is the operator's, not the contact's
        push_name = None if from_me else _clean(record.get("pushName"))
        chat = ChatRecord(
            id=remote_jid,
            remote_jid=remote_jid,
            push_name=push_name,
            updated_at=parse_timestamp(record.get("messageTimestamp")),
        )

        contact_outcome, contact = reconcile_contact(
            self._contacts, organization_id=organization_id, chat=chat
        )
        if contact is None:
            return ItemOutcome(key=message_id, action="error", error=contact_outcome.error)

        conversation_outcome, conversation = reconcile_conversation(
            self._conversations,
            self._users,
            organization_id=organization_id,
            chat=chat,
            contact=contact,
            instance=instance,
        )
        if conversation is None:
            return ItemOutcome(key=message_id, action="error", error=conversation_outcome.error)

        outcome, new_message = import_message_record(
            self._messages,
            organization_id=organization_id,
            conversation_id=conversation.id,
            record=record,
        )
        if new_message is not None and new_message.sent_at is not None:
            self._conversations.advance_last_message_at(
                organization_id, conversation.id, new_message.sent_at
            )

        if outcome.action == "created":
            self._emit(
                organization_id,
                events.MESSAGE_RECEIVED,
                aggregate_type="conversation",
                aggregate_id=conversation.id,
                payload={
                    "message_id": outcome.entity_id,
                    "direction": new_message.direction.value if new_message else None,
                },
            )
        return outcome

    # ── messages.update ──────────────────────────────────

    def _handle_messages_update(self, instance: Instance, data: dict[str, Any]) -> BatchResult:
        result = BatchResult()
        for record in _records(data, "messages"):
            result.add(self._update_message_status(instance, record))
        return result

    def _update_message_status(self, instance: Instance, record: dict[str, Any]) -> ItemOutcome:
        organization_id = instance.organization_id
        external_id = _update_message_id(record)
        if not external_id:
            return ItemOutcome(key="<unknown>", action="error", error="missing message id")

        update = record.get("update")
        raw_status = update.get("status") if isinstance(update, dict) else record.get("status")
        new_status = map_update_status(raw_status)

        try:
            message = self._messages.find_by_external_id_in_organization(
                organization_id, external_id
            )
            if message is None or not is_status_upgrade(message.status, new_status):
                return ItemOutcome(
                    key=external_id,
                    action="unchanged",
                    entity_id=message.id if message else None,
                )
            updated = self._messages.upgrade_status(organization_id, message.id, new_status)
            if updated is None:
                # A concurrent writer already stored this status or a later one
                return ItemOutcome(key=external_id, action="unchanged", entity_id=message.id)
        except Exception as exc:
            logger.warning(
                "message status update failed",
                extra={
                    "extra_fields": safe_log_context(
                        organization_id=organization_id,
                        message_id=external_id,
                        error=exc,
                    )
                },
            )
            return ItemOutcome(key=external_id, action="error", error=str(exc))

        self._emit(
            organization_id,
            events.MESSAGE_STATUS_UPDATED,
            aggregate_type="message",
            aggregate_id=updated.id,
            payload={
                "conversation_id": updated.conversation_id,
                "status": updated.status.value,
            },
        )
        return ItemOutcome(key=external_id, action="updated", entity_id=updated.id)

    # ── contacts.update ──────────────────────────────────

    def _handle_contacts_update(self, instance: Instance, data: dict[str, Any]) -> BatchResult:
        result = BatchResult()
        for record in _records(data, "contacts"):
            result.add(self._update_contact(instance, record))
        return result

    def _update_contact(self, instance: Instance, record: dict[str, Any]) -> ItemOutcome:
        organization_id = instance.organization_id
        remote_jid = record.get("remoteJid") or record.get("id")
        if not isinstance(remote_jid, str) or "@" not in remote_jid:
            return ItemOutcome(key="<unknown>", action="error", error="missing remoteJid")

        try:
            contact = self._contacts.find_by_phone(organization_id, phone_from_jid(remote_jid))
            if contact is None:
                # Unknown numbers are created by the next message or chat sync
                return ItemOutcome(key=remote_jid, action="unchanged")

            chat = ChatRecord(
                id=remote_jid,
                remote_jid=remote_jid,
                push_name=_clean(record.get("pushName")) or _clean(record.get("name")),
                profile_pic_url=_clean(record.get("profilePicUrl")),
            )
            incoming = dict(chat_metadata(chat), lastUpdated=utc_now().isoformat())
            updated = self._contacts.update(
                organization_id,
                contact.id,
                name=chat.push_name,
                external_id=None,
                metadata=merge_metadata(contact.metadata, incoming),
            )
        except Exception as exc:
            logger.warning(
                "contact update failed",
                extra={
                    "extra_fields": safe_log_context(
                        organization_id=organization_id,
                        error=exc,
                    )
                },
            )
            return ItemOutcome(key=remote_jid, action="error", error=str(exc))

        return ItemOutcome(key=remote_jid, action="updated", entity_id=updated.id)

    # ── Internals ────────────────────────────────────────

    def _emit(
        self,
        organization_id: str,
        event_type: str,
        *,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            self._emitter.emit(
                organization_id=organization_id,
                event_type=event_type,
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                payload={**payload, "correlation_id": get_correlation_id() or None},
            )
        except Exception:
            logger.exception(
                "webhook event emission failed",
                extra={"extra_fields": safe_log_context(event_type=event_type)},
            )


def build_webhook_service() -> WebhookService:
    """WebhookService wired to the PostgreSQL repositories and the outbox."""
    from zapdesk.infra.repositories.contacts_repository import PgContactRepository
    from zapdesk.infra.repositories.conversations_repository import PgConversationRepository
    from zapdesk.infra.repositories.directory_repository import (
        PgInstanceRepository,
        PgUserRepository,
    )
    from zapdesk.infra.repositories.messages_repository import PgMessageRepository
    from zapdesk.infra.repositories.outbox_repository import OutboxEventEmitter

    return WebhookService(
        contacts=PgContactRepository(),
        conversations=PgConversationRepository(),
        messages=PgMessageRepository(),
        instances=PgInstanceRepository(),
        users=PgUserRepository(),
        emitter=OutboxEventEmitter(),
    )


def _records(data: dict[str, Any], list_key: str) -> list[dict[str, Any]]:
    """Records of a webhook body.

    Older Gateway builds wrap records in a list under list_key; newer ones
    send a single record as data (or a bare list, normalized to "items").
    """
    for key in (list_key, "items"):
        value = data.get(key)
        if isinstance(value, list):
            return [r for r in value if isinstance(r, dict)]
    return [data] if data else []


def _update_message_id(record: dict[str, Any]) -> str | None:
    key = record.get("key")
    if isinstance(key, dict) and isinstance(key.get("id"), str):
        return key["id"]
    for field_name in ("keyId", "messageId"):
        value = record.get(field_name)
        if isinstance(value, str) and value:
            return value
    return None


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None
