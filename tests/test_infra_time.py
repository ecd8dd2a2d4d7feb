"""Tests for time utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from zapdesk.infra.time import parse_timestamp, utc_now


class TestUtcNow:
    def test_returns_utc_datetime(self):
        assert utc_now().tzinfo == timezone.utc

    def test_returns_current_time(self):
        before = datetime.now(timezone.utc)
        now = utc_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestParseTimestamp:
    EXPECTED = datetime(2026, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "value",
        [
            1767225600,
            "1767225600",
            1767225600000,
            "2026-01-01T00:00:00Z",
            "2026-01-01T00:00:00.000Z",
            "2026-01-01T00:00:00",
            datetime(2026, 1, 1),
        ],
    )
    def test_supported_shapes(self, value):
        assert parse_timestamp(value) == self.EXPECTED

    def test_offset_is_preserved_as_instant(self):
        parsed = parse_timestamp("2026-01-01T00:00:00-03:00")
        assert parsed == self.EXPECTED + timedelta(hours=3)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"ts": 1}])
    def test_unparseable_is_none(self, value):
        assert parse_timestamp(value) is None
