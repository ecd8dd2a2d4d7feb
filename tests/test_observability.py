"""Tests for observability utilities."""

import json
import logging

from zapdesk.observability.correlation import (
    accept_or_generate,
    reset_correlation_id,
    set_correlation_id,
)
from zapdesk.observability.logging import JsonFormatter
from zapdesk.observability.redaction import (
    hash_identifier,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_jid(self):
        result = redact_string("chat 5511999998888@s.whatsapp.net synced")
        assert "5511999998888" not in result
        assert result == "chat [REDACTED] synced"

    def test_redact_group_jid(self):
        assert "120363" not in redact_string("120363025246125888@g.us")

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"remoteJid": "5511999@s.whatsapp.net", "pushName": "Ana"})
        assert "Ana" not in result
        assert "remoteJid" in result

    def test_redact_value_list_only_len(self):
        assert redact_value(["a", "b", "c"]) == "list(len=3)"

    def test_redact_exception_message(self):
        exc = ValueError("bad jid 5511999998888@s.whatsapp.net")
        assert redact_value(exc) == "ValueError: bad jid [REDACTED]"

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+5511999998888", count=42, ok=True, missing=None)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"
        assert ctx["ok"] == "true"
        assert ctx["missing"] == "null"

    def test_hash_identifier_is_stable_and_short(self):
        assert hash_identifier("x@s.whatsapp.net") == hash_identifier("x@s.whatsapp.net")
        assert len(hash_identifier("x@s.whatsapp.net")) == 12


class TestCorrelation:
    def test_accepts_sane_incoming_id(self):
        assert accept_or_generate("req-123") == "req-123"

    def test_replaces_oversized_or_unprintable(self):
        assert accept_or_generate("x" * 500) != "x" * 500
        assert accept_or_generate("bad\nid") != "bad\nid"
        assert len(accept_or_generate(None)) == 36


class TestJsonFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("zapdesk.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_service_and_extra_fields(self):
        line = JsonFormatter().format(self._record(extra_fields={"conversation_id": "c1"}))
        data = json.loads(line)

        assert data["service"] == "zapdesk"
        assert data["message"] == "hello"
        assert data["conversation_id"] == "c1"

    def test_includes_correlation_id(self):
        token = set_correlation_id("cid-1")
        try:
            data = json.loads(JsonFormatter().format(self._record()))
        finally:
            reset_correlation_id(token)
        assert data["correlationId"] == "cid-1"
