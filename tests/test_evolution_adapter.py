"""Tests for Evolution payload parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from zapdesk.whatsapp.evolution_adapter import (
    InvalidPayloadError,
    extract_list,
    extract_message_page,
    message_key,
    normalize_webhook,
    parse_chat,
    phone_from_jid,
)


class TestPhoneFromJid:
    @pytest.mark.parametrize(
        "jid,phone",
        [
            ("5511999@s.whatsapp.net", "5511999"),
            ("5511999:7@s.whatsapp.net", "5511999"),
            ("120363025246125888@g.us", "120363025246125888"),
        ],
    )
    def test_strips_domain(self, jid, phone):
        assert phone_from_jid(jid) == phone


class TestParseChat:
    def test_full_record(self):
        chat = parse_chat(
            {
                "id": "clx1",
                "remoteJid": "5511999@s.whatsapp.net",
                "pushName": "  Ana ",
                "profilePicUrl": "",
                "updatedAt": "2026-03-01T12:00:00.000Z",
                "windowActive": True,
            }
        )

        assert chat.id == "clx1"
        assert chat.push_name == "Ana"
        assert chat.profile_pic_url is None
        assert chat.updated_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert chat.window_metadata() == {"windowActive": True}

    def test_id_only_record_uses_jid(self):
        chat = parse_chat({"id": "5511999@s.whatsapp.net"})
        assert chat.remote_jid == "5511999@s.whatsapp.net"
        assert chat.key == "5511999@s.whatsapp.net"

    @pytest.mark.parametrize("raw", [None, "x", {}, {"remoteJid": "no-at"}, {"remoteJid": 5}])
    def test_invalid(self, raw):
        with pytest.raises(InvalidPayloadError):
            parse_chat(raw)


class TestExtract:
    def test_list_wrappers(self):
        assert extract_list([1]) == [1]
        assert extract_list({"records": [2]}) == [2]
        with pytest.raises(InvalidPayloadError):
            extract_list({"status": 200})

    def test_message_page_shapes(self):
        assert extract_message_page({"messages": {"records": [{"a": 1}], "pages": 2}}) == (
            [{"a": 1}],
            2,
        )
        assert extract_message_page([{"a": 1}, "junk"]) == ([{"a": 1}], None)
        with pytest.raises(InvalidPayloadError):
            extract_message_page({"messages": {"records": "nope"}})


class TestWebhook:
    def test_upper_snake_event_is_normalized(self):
        event = normalize_webhook("inst-a", {"event": "MESSAGES_UPSERT", "data": {"key": {}}})
        assert event.event == "messages.upsert"
        assert event.instance_name == "inst-a"

    def test_list_data_is_wrapped(self):
        event = normalize_webhook("inst-a", {"event": "contacts.update", "data": [{"id": "x"}]})
        assert event.data == {"items": [{"id": "x"}]}

    def test_missing_event(self):
        with pytest.raises(InvalidPayloadError):
            normalize_webhook("inst-a", {"data": {}})


def test_message_key():
    assert message_key({"key": {"id": "m1", "remoteJid": "j@s.whatsapp.net", "fromMe": True}}) == (
        "m1",
        "j@s.whatsapp.net",
        True,
    )
    with pytest.raises(InvalidPayloadError):
        message_key({"key": {"remoteJid": "j@s.whatsapp.net"}})
