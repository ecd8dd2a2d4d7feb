"""Tests for SyncService (syncChats, syncMessages, sendMessage and read-through queries)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fakes import OPERATOR_ID, FakeGatewayClient
from zapdesk.domain import events
from zapdesk.domain.models import ConversationStatus, MessageDirection, MessageStatus
from zapdesk.infra.gateway_settings import GatewayConfig
from zapdesk.services.sync_service import SyncService
from zapdesk.services.webhook_service import WebhookService
from zapdesk.whatsapp.evolution_client import GatewayError
from zapdesk.whatsapp.models import WebhookEvent

CONFIG = GatewayConfig(base_url="https://evo.example.com", api_key="k")

ANA_CHAT = {
    "id": "chat-ana",
    "remoteJid": "5511999@s.whatsapp.net",
    "pushName": "Ana",
    "updatedAt": "2026-03-01T12:00:00.000Z",
}


def _service(contacts, conversations, messages, instances, users, emitter, client, config=CONFIG):
    return SyncService(
        contacts=contacts,
        conversations=conversations,
        messages=messages,
        instances=instances,
        users=users,
        emitter=emitter,
        config_resolver=lambda organization_id: config,
        client_factory=lambda cfg: client,
    )


@pytest.fixture
def make_service(contacts, conversations, messages, instances, users, emitter):
    def factory(client=None, config=CONFIG):
        return _service(
            contacts,
            conversations,
            messages,
            instances,
            users,
            emitter,
            client or FakeGatewayClient(),
            config,
        )

    return factory


class TestSyncChats:
    def test_new_chat_creates_contact_and_open_conversation(
        self, make_service, contacts, conversations, org_id, emitter
    ):
        service = make_service(FakeGatewayClient(chats=[ANA_CHAT]))

        result = service.sync_chats(org_id, "inst-1")

        assert result.success is True
        assert result.data["contacts"]["created"] == 1
        assert result.data["conversations"]["created"] == 1
        (contact,) = contacts.rows.values()
        (conversation,) = conversations.rows.values()
        assert contact.phone_number == "5511999"
        assert contact.name == "Ana"
        assert conversation.contact_id == contact.id
        assert conversation.status == ConversationStatus.OPEN
        assert events.CHATS_SYNCED in emitter.types()

    def test_second_sync_changes_nothing_but_updates(
        self, make_service, contacts, conversations, org_id
    ):
        service = make_service(FakeGatewayClient(chats=[ANA_CHAT]))
        service.sync_chats(org_id, "inst-1")

        result = service.sync_chats(org_id, "inst-1")

        assert result.data["contacts"] == {"created": 0, "updated": 1, "unchanged": 0, "errors": 0}
        assert result.data["conversations"]["updated"] == 1
        assert len(contacts.rows) == 1
        assert len(conversations.rows) == 1

    def test_bad_chat_is_reported_and_rest_continue(
        self, make_service, contacts, org_id
    ):
        chats = [{"id": "broken", "remoteJid": "no-domain"}, "garbage", ANA_CHAT]
        service = make_service(FakeGatewayClient(chats=chats))

        result = service.sync_chats(org_id, "inst-1")

        assert result.success is True
        assert result.data["contacts"]["errors"] == 2
        assert result.data["contacts"]["created"] == 1
        assert [i["chat"] for i in result.data["items"]] == ["broken", "<unknown>", "chat-ana"]
        assert len(contacts.rows) == 1

    def test_gateway_failure_creates_nothing(
        self, make_service, contacts, conversations, org_id, emitter
    ):
        client = FakeGatewayClient(
            error=GatewayError("Gateway returned HTTP 500: instance not connected", 500)
        )
        service = make_service(client)

        result = service.sync_chats(org_id, "inst-1")

        assert result.success is False
        assert result.reason == "gateway_error"
        assert "instance not connected" in result.message
        assert contacts.rows == {}
        assert conversations.rows == {}
        assert emitter.events == []

    def test_not_configured(self, make_service, org_id):
        client = FakeGatewayClient(chats=[ANA_CHAT])
        service = make_service(client, config=None)

        result = service.sync_chats(org_id, "inst-1")

        assert result.success is False
        assert result.reason == "not_configured"
        assert client.calls == []

    def test_instance_of_other_organization_is_not_found(self, make_service):
        result = make_service(FakeGatewayClient(chats=[ANA_CHAT])).sync_chats("org-2", "inst-1")

        assert result.success is False
        assert result.reason == "not_found"


class TestSyncMessages:
    def _seed(self, service, org_id, conversations):
        service.sync_chats(org_id, "inst-1")
        (conversation,) = conversations.rows.values()
        return conversation

    def test_imports_using_contact_remote_jid(
        self, make_service, conversations, messages, org_id, emitter
    ):
        record = {
            "key": {"id": "m1", "remoteJid": "5511999@s.whatsapp.net", "fromMe": False},
            "message": {"conversation": "oi"},
            "messageTimestamp": 1767268800,
            "MessageUpdate": [{"status": "READ"}],
        }
        client = FakeGatewayClient(chats=[ANA_CHAT], message_pages=[[record]])
        service = make_service(client)
        conversation = self._seed(service, org_id, conversations)

        result = service.sync_messages(org_id, conversation.id)

        assert result.success is True
        assert result.data["created"] == 1
        assert client.calls[-1] == (
            "find_messages",
            "atendimento-01",
            "5511999@s.whatsapp.net",
            1,
        )
        (message,) = messages.rows.values()
        assert message.status == MessageStatus.READ
        assert emitter.types()[-1] == events.MESSAGES_SYNCED

    def test_unknown_conversation(self, make_service, org_id):
        result = make_service().sync_messages(org_id, "missing")
        assert result.reason == "not_found"

    def test_first_page_failure_is_gateway_error(self, make_service, conversations, org_id):
        client = FakeGatewayClient(chats=[ANA_CHAT], fail_on_page=1)
        service = make_service(client)
        conversation = self._seed(service, org_id, conversations)

        result = service.sync_messages(org_id, conversation.id)

        assert result.success is False
        assert result.reason == "gateway_error"
        assert "HTTP 500" in result.message

    def test_not_configured(self, make_service, org_id):
        result = make_service(config=None).sync_messages(org_id, "whatever")
        assert result.reason == "not_configured"


class TestReadThrough:
    def test_get_contacts(self, make_service, org_id):
        client = FakeGatewayClient(contacts=[{"id": "5511999@s.whatsapp.net"}])

        result = make_service(client).get_contacts(org_id, "inst-1")

        assert result.success is True
        assert result.data == {"contacts": [{"id": "5511999@s.whatsapp.net"}]}

    def test_get_message_status(self, make_service, org_id):
        client = FakeGatewayClient(status=[{"status": "READ"}])

        result = make_service(client).get_message_status(
            org_id, "inst-1", "5511999@s.whatsapp.net", "m1"
        )

        assert result.success is True
        assert result.data == {"status": [{"status": "READ"}]}
        assert client.calls == [
            ("find_status_message", "atendimento-01", "5511999@s.whatsapp.net", "m1")
        ]

    def test_get_contacts_gateway_error(self, make_service, org_id):
        client = FakeGatewayClient(error=GatewayError("Gateway unreachable: ConnectionError"))

        result = make_service(client).get_contacts(org_id, "inst-1")

        assert result.to_dict() == {
            "success": False,
            "message": "Gateway unreachable: ConnectionError",
            "reason": "gateway_error",
        }


class TestClientLifecycle:
    def test_every_operation_closes_its_client(self, make_service, conversations, org_id):
        client = FakeGatewayClient(chats=[ANA_CHAT])
        service = make_service(client)

        service.sync_chats(org_id, "inst-1")
        (conversation,) = conversations.rows.values()
        service.sync_messages(org_id, conversation.id)
        service.get_contacts(org_id, "inst-1")
        service.get_message_status(org_id, "inst-1", "5511999@s.whatsapp.net", "m1")

        assert client.closed == 4

    def test_client_closed_on_gateway_error(self, make_service, org_id):
        client = FakeGatewayClient(error=GatewayError("Gateway unreachable: ConnectionError"))

        make_service(client).sync_chats(org_id, "inst-1")

        assert client.closed == 1


SENT = {
    "key": {"id": "3EB0REPLY", "remoteJid": "5511999@s.whatsapp.net", "fromMe": True},
    "message": {"conversation": "Olá!"},
    "messageTimestamp": 1780272000,
    "status": "PENDING",
}


class TestSendMessage:
    def _seed(self, service, org_id, conversations):
        service.sync_chats(org_id, "inst-1")
        (conversation,) = conversations.rows.values()
        return conversation

    def test_sends_and_stores_outbound_message(
        self, make_service, conversations, messages, org_id, emitter
    ):
        client = FakeGatewayClient(chats=[ANA_CHAT], sent=SENT)
        service = make_service(client)
        conversation = self._seed(service, org_id, conversations)

        result = service.send_message(org_id, conversation.id, "Olá!", sent_by_id=OPERATOR_ID)

        assert result.success is True
        assert client.calls[-1] == (
            "send_text",
            "atendimento-01",
            "5511999@s.whatsapp.net",
            "Olá!",
        )
        (message,) = messages.rows.values()
        assert message.external_id == "3EB0REPLY"
        assert message.direction == MessageDirection.OUTBOUND
        assert message.status == MessageStatus.SENT
        assert message.content == "Olá!"
        assert message.metadata["sentById"] == OPERATOR_ID
        assert result.data["message"]["id"] == message.id
        assert conversations.rows[conversation.id].last_message_at == datetime(
            2026, 6, 1, tzinfo=timezone.utc
        )
        assert emitter.types()[-1] == events.MESSAGE_SENT

    def test_webhook_echo_is_deduplicated(
        self, make_service, contacts, conversations, messages, instances, users, emitter, org_id
    ):
        service = make_service(FakeGatewayClient(chats=[ANA_CHAT], sent=SENT))
        conversation = self._seed(service, org_id, conversations)
        service.send_message(org_id, conversation.id, "Olá!", sent_by_id=OPERATOR_ID)

        webhooks = WebhookService(
            contacts=contacts,
            conversations=conversations,
            messages=messages,
            instances=instances,
            users=users,
            emitter=emitter,
        )
        result = webhooks.handle(
            WebhookEvent(event="messages.upsert", instance_name="atendimento-01", data=SENT)
        )

        assert result.unchanged == 1
        assert len(messages.rows) == 1

    def test_falls_back_to_phone_number_jid(
        self, make_service, contacts, conversations, org_id
    ):
        client = FakeGatewayClient(chats=[ANA_CHAT], sent=SENT)
        service = make_service(client)
        conversation = self._seed(service, org_id, conversations)
        (contact,) = contacts.rows.values()
        contact.metadata.pop("remoteJid")

        service.send_message(org_id, conversation.id, "Olá!")

        assert client.calls[-1][2] == "5511999@s.whatsapp.net"

    def test_gateway_failure_stores_nothing(
        self, make_service, conversations, messages, org_id, emitter
    ):
        client = FakeGatewayClient(chats=[ANA_CHAT])
        service = make_service(client)
        conversation = self._seed(service, org_id, conversations)
        client.error = GatewayError("Gateway returned HTTP 400: number not on WhatsApp", 400)

        result = service.send_message(org_id, conversation.id, "Olá!")

        assert result.reason == "gateway_error"
        assert messages.rows == {}
        assert events.MESSAGE_SENT not in emitter.types()

    def test_unknown_conversation(self, make_service, org_id):
        result = make_service().send_message(org_id, "missing", "Olá!")
        assert result.reason == "not_found"

    def test_not_configured_sends_nothing(self, make_service, org_id):
        client = FakeGatewayClient(sent=SENT)

        result = make_service(client, config=None).send_message(org_id, "whatever", "Olá!")

        assert result.reason == "not_configured"
        assert client.calls == []
