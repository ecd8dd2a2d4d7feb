"""Sync service: CRM-facing Gateway operations.

Operations:
- sync_chats: findChats -> contact reconciler -> conversation reconciler
- sync_messages: paginated findMessages -> message importer
- get_contacts: raw findContacts listing
- get_message_status: raw findStatusMessage detail
- send_message: sendText -> OUTBOUND message stored under the Gateway key id

Every operation resolves the organization's Gateway config first and answers
with a SyncResult envelope instead of raising for expected failures
(not configured, unknown instance/conversation, Gateway error).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from zapdesk.domain import events
from zapdesk.domain.contacts import reconcile_contact
from zapdesk.domain.conversations import reconcile_conversation
from zapdesk.domain.events import EventEmitter
from zapdesk.domain.messages import MAX_PAGES, import_messages, to_outbound_message
from zapdesk.domain.models import BatchResult, ItemOutcome
from zapdesk.domain.repositories import (
    ContactRepository,
    ConversationRepository,
    InstanceRepository,
    MessageRepository,
    UserRepository,
)
from zapdesk.infra.gateway_settings import GatewayConfig, get_gateway_config
from zapdesk.observability.correlation import get_correlation_id
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.whatsapp.evolution_adapter import InvalidPayloadError, jid_from_phone, parse_chat
from zapdesk.whatsapp.evolution_client import EvolutionClient, GatewayError

logger = get_logger(__name__)

NOT_CONFIGURED = "not_configured"
NOT_FOUND = "not_found"
GATEWAY_ERROR = "gateway_error"

NOT_CONFIGURED_MESSAGE = "Evolution API não configurada para esta organização"


@dataclass
class SyncResult:
    """Envelope returned by every sync operation."""

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data:
            body["data"] = self.data
        if self.reason:
            body["reason"] = self.reason
        return body


class SyncService:
    def __init__(
        self,
        *,
        contacts: ContactRepository,
        conversations: ConversationRepository,
        messages: MessageRepository,
        instances: InstanceRepository,
        users: UserRepository,
        emitter: EventEmitter,
        config_resolver: Callable[[str], GatewayConfig | None] = get_gateway_config,
        client_factory: Callable[[GatewayConfig], EvolutionClient] = EvolutionClient,
        max_pages: int = MAX_PAGES,
    ) -> None:
        self._contacts = contacts
        self._conversations = conversations
        self._messages = messages
        self._instances = instances
        self._users = users
        self._emitter = emitter
        self._config_resolver = config_resolver
        self._client_factory = client_factory
        self._max_pages = max_pages

    # ── syncChats ────────────────────────────────────────

    def sync_chats(self, organization_id: str, instance_id: str) -> SyncResult:
        """Mirror every Gateway chat of an instance into contacts + conversations.

        Each chat is reconciled in its own units of work; a failing chat is
        reported in data["items"] and the batch carries on. A Gateway failure
        on findChats aborts before anything is written.
        """
        config = self._config_resolver(organization_id)
        if config is None:
            return _not_configured()

        instance = self._instances.get(organization_id, instance_id)
        if instance is None:
            return SyncResult(False, "Instância não encontrada", reason=NOT_FOUND)

        try:
            with self._client_factory(config) as client:
                chats = client.find_chats(instance.instance_name)
        except GatewayError as exc:
            return _gateway_failure("sync_chats", organization_id, exc)

        contact_results = BatchResult()
        conversation_results = BatchResult()
        items: list[dict[str, Any]] = []

        for raw in chats:
            try:
                chat = parse_chat(raw)
            except InvalidPayloadError as exc:
                outcome = ItemOutcome(key=_raw_chat_key(raw), action="error", error=str(exc))
                contact_results.add(outcome)
                items.append({"chat": outcome.key, "contact": outcome.to_dict()})
                continue

            contact_outcome, contact = reconcile_contact(
                self._contacts, organization_id=organization_id, chat=chat
            )
            contact_results.add(contact_outcome)
            item: dict[str, Any] = {"chat": chat.key, "contact": contact_outcome.to_dict()}

            if contact is not None:
                conversation_outcome, _ = reconcile_conversation(
                    self._conversations,
                    self._users,
                    organization_id=organization_id,
                    chat=chat,
                    contact=contact,
                    instance=instance,
                )
                conversation_results.add(conversation_outcome)
                item["conversation"] = conversation_outcome.to_dict()

            items.append(item)

        data = {
            "contacts": contact_results.counts(),
            "conversations": conversation_results.counts(),
            "items": items,
        }
        logger.info(
            "chats synced",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    instance_id=instance_id,
                    chats=len(chats),
                    contacts_created=contact_results.created,
                    contact_errors=contact_results.errors,
                    conversations_created=conversation_results.created,
                    conversation_errors=conversation_results.errors,
                )
            },
        )
        self._emit(
            organization_id,
            events.CHATS_SYNCED,
            aggregate_type="instance",
            aggregate_id=instance_id,
            payload={"contacts": data["contacts"], "conversations": data["conversations"]},
        )
        return SyncResult(
            True,
            f"{len(chats)} conversas sincronizadas",
            data=data,
        )

    # ── syncMessages ─────────────────────────────────────

    def sync_messages(
        self,
        organization_id: str,
        conversation_id: str,
        remote_jid: str | None = None,
    ) -> SyncResult:
        """Import a conversation's Gateway history.

        remote_jid defaults to the remoteJid stored on the contact.
        """
        config = self._config_resolver(organization_id)
        if config is None:
            return _not_configured()

        conversation = self._conversations.get(organization_id, conversation_id)
        if conversation is None:
            return SyncResult(False, "Conversa não encontrada", reason=NOT_FOUND)

        instance = self._instances.get(organization_id, conversation.instance_id)
        if instance is None:
            return SyncResult(False, "Instância não encontrada", reason=NOT_FOUND)

        if not remote_jid:
            contact = self._contacts.get(organization_id, conversation.contact_id)
            if contact is not None:
                remote_jid = contact.metadata.get("remoteJid")
        if not remote_jid:
            return SyncResult(
                False, "remoteJid do contato desconhecido", reason=NOT_FOUND
            )

        with self._client_factory(config) as client:
            result = import_messages(
                client,
                self._messages,
                self._conversations,
                organization_id=organization_id,
                instance_name=instance.instance_name,
                conversation_id=conversation_id,
                remote_jid=remote_jid,
                max_pages=self._max_pages,
            )

        data = {
            **result.counts(),
            "pages": result.pages_fetched,
            "truncated": result.truncated,
            "items": [o.to_dict() for o in result.failed],
        }

        if result.gateway_error is not None and not result.outcomes:
            return SyncResult(
                False,
                result.gateway_error,
                data=data,
                reason=GATEWAY_ERROR,
            )

        self._emit(
            organization_id,
            events.MESSAGES_SYNCED,
            aggregate_type="conversation",
            aggregate_id=conversation_id,
            payload=result.counts(),
        )

        if result.gateway_error is not None:
            # Partial import: whatever was stored stays stored
            data["gateway_error"] = result.gateway_error
            return SyncResult(
                False,
                f"{result.created} mensagens importadas antes da falha: {result.gateway_error}",
                data=data,
                reason=GATEWAY_ERROR,
            )

        return SyncResult(
            True,
            f"{result.created} mensagens importadas",
            data=data,
        )

    # ── sendMessage ──────────────────────────────────────

    def send_message(
        self,
        organization_id: str,
        conversation_id: str,
        text: str,
        *,
        sent_by_id: str | None = None,
    ) -> SyncResult:
        """Send an operator reply through the Gateway and store it.

        The stored row carries the Gateway key id as external_id, so the
        fromMe echo delivered later by messages.upsert deduplicates onto it.
        Nothing is stored if the Gateway rejects the send.
        """
        config = self._config_resolver(organization_id)
        if config is None:
            return _not_configured()

        conversation = self._conversations.get(organization_id, conversation_id)
        if conversation is None:
            return SyncResult(False, "Conversa não encontrada", reason=NOT_FOUND)

        instance = self._instances.get(organization_id, conversation.instance_id)
        if instance is None:
            return SyncResult(False, "Instância não encontrada", reason=NOT_FOUND)

        contact = self._contacts.get(organization_id, conversation.contact_id)
        if contact is None:
            return SyncResult(False, "Contato não encontrado", reason=NOT_FOUND)
        remote_jid = contact.metadata.get("remoteJid") or jid_from_phone(contact.phone_number)

        try:
            with self._client_factory(config) as client:
                sent = client.send_text(instance.instance_name, remote_jid, text)
        except GatewayError as exc:
            return _gateway_failure("send_message", organization_id, exc)

        new_message = to_outbound_message(sent, text, sent_by_id=sent_by_id)
        stored, _ = self._messages.create(organization_id, conversation_id, new_message)
        if stored.sent_at is not None:
            self._conversations.advance_last_message_at(
                organization_id, conversation_id, stored.sent_at
            )

        logger.info(
            "message sent",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    conversation_id=conversation_id,
                    message_id=stored.id,
                    text_len=len(text),
                )
            },
        )
        self._emit(
            organization_id,
            events.MESSAGE_SENT,
            aggregate_type="conversation",
            aggregate_id=conversation_id,
            payload={"message_id": stored.id, "sent_by_id": sent_by_id},
        )
        return SyncResult(True, "Mensagem enviada", data={"message": stored.to_dict()})

    # ── Read-through queries ─────────────────────────────

    def get_contacts(self, organization_id: str, instance_id: str) -> SyncResult:
        config = self._config_resolver(organization_id)
        if config is None:
            return _not_configured()

        instance = self._instances.get(organization_id, instance_id)
        if instance is None:
            return SyncResult(False, "Instância não encontrada", reason=NOT_FOUND)

        try:
            with self._client_factory(config) as client:
                contacts = client.find_contacts(instance.instance_name)
        except GatewayError as exc:
            return _gateway_failure("get_contacts", organization_id, exc)

        return SyncResult(
            True,
            f"{len(contacts)} contatos encontrados",
            data={"contacts": contacts},
        )

    def get_message_status(
        self,
        organization_id: str,
        instance_id: str,
        remote_jid: str,
        message_id: str,
    ) -> SyncResult:
        config = self._config_resolver(organization_id)
        if config is None:
            return _not_configured()

        instance = self._instances.get(organization_id, instance_id)
        if instance is None:
            return SyncResult(False, "Instância não encontrada", reason=NOT_FOUND)

        try:
            with self._client_factory(config) as client:
                status = client.find_status_message(
                    instance.instance_name, remote_jid, message_id
                )
        except GatewayError as exc:
            return _gateway_failure("get_message_status", organization_id, exc)

        return SyncResult(True, "Status obtido", data={"status": status})

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
                "sync event emission failed",
                extra={"extra_fields": safe_log_context(event_type=event_type)},
            )


def build_sync_service() -> SyncService:
    """SyncService wired to the PostgreSQL repositories and the outbox."""
    from zapdesk.infra.repositories.contacts_repository import PgContactRepository
    from zapdesk.infra.repositories.conversations_repository import PgConversationRepository
    from zapdesk.infra.repositories.directory_repository import (
        PgInstanceRepository,
        PgUserRepository,
    )
    from zapdesk.infra.repositories.messages_repository import PgMessageRepository
    from zapdesk.infra.repositories.outbox_repository import OutboxEventEmitter

    return SyncService(
        contacts=PgContactRepository(),
        conversations=PgConversationRepository(),
        messages=PgMessageRepository(),
        instances=PgInstanceRepository(),
        users=PgUserRepository(),
        emitter=OutboxEventEmitter(),
    )


def _not_configured() -> SyncResult:
    return SyncResult(False, NOT_CONFIGURED_MESSAGE, reason=NOT_CONFIGURED)


def _gateway_failure(operation: str, organization_id: str, exc: GatewayError) -> SyncResult:
    logger.warning(
        "gateway operation failed",
        extra={
            "extra_fields": safe_log_context(
                organization_id=organization_id,
                operation=operation,
                status_code=exc.status_code,
                error=exc,
            )
        },
    )
    return SyncResult(False, str(exc), reason=GATEWAY_ERROR)


def _raw_chat_key(raw: Any) -> str:
    if isinstance(raw, dict):
        for key in ("id", "remoteJid"):
            if raw.get(key):
                return str(raw[key])
    return "<unknown>"
