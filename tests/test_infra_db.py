"""Tests for the database layer."""

import os
from unittest.mock import MagicMock, patch

import pytest


class TestGetConnPasswordFallback:
    """DB_PASSWORD handling in get_conn() (no real DB needed)."""

    @pytest.mark.parametrize(
        "dsn",
        ["dbname=db user=u host=h port=5432", "postgres://u@h/db"],
    )
    def test_db_password_used_when_dsn_has_none(self, dsn):
        from zapdesk.infra.db import get_conn

        env = {"DATABASE_URL": dsn, "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("zapdesk.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with(dsn, password="from-env")

    @pytest.mark.parametrize(
        "dsn",
        ["dbname=db user=u password=from-dsn host=h", "postgres://u:p@h/db"],
    )
    def test_db_password_ignored_when_dsn_has_one(self, dsn):
        from zapdesk.infra.db import get_conn

        env = {"DATABASE_URL": dsn, "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("zapdesk.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with(dsn)

    def test_missing_database_url(self):
        from zapdesk.infra.db import get_conn

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL"):
                get_conn()


class TestTxnWithoutDatabase:
    def test_commits_on_success(self):
        from zapdesk.infra.db import txn

        conn = MagicMock()
        with txn(conn) as cur:
            cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_not_called()

    def test_rolls_back_and_reraises(self):
        from zapdesk.infra.db import txn

        conn = MagicMock()
        with pytest.raises(ValueError):
            with txn(conn):
                raise ValueError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_owned_connection_is_closed(self):
        from zapdesk.infra.db import txn

        conn = MagicMock()
        with patch("zapdesk.infra.db.get_conn", return_value=conn):
            with txn():
                pass
        conn.close.assert_called_once()


_skip_no_db = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


@_skip_no_db
class TestHelpers:
    def test_fetchone(self):
        from zapdesk.infra.db import fetchone, txn

        with txn() as cur:
            row = fetchone(cur, "SELECT %s::text", ("hello",))
            assert row[0] == "hello"

    def test_fetchall(self):
        from zapdesk.infra.db import fetchall, txn

        with txn() as cur:
            rows = fetchall(cur, "SELECT generate_series(1, 3)")
            assert [r[0] for r in rows] == [1, 2, 3]

    def test_as_json_roundtrip(self):
        from zapdesk.infra.db import as_json, fetchone, txn

        with txn() as cur:
            row = fetchone(cur, "SELECT %s::jsonb", (as_json({"a": 1}),))
            assert row[0] == {"a": 1}


class TestUuidGuard:
    """Malformed path ids never reach a UUID column (no real DB needed)."""

    @pytest.mark.parametrize(
        "value,expected",
        [("3f1c7d2e-8a4b-4c55-9e0f-1a2b3c4d5e6f", True), ("conv-1", False), ("", False)],
    )
    def test_is_uuid(self, value, expected):
        from zapdesk.infra.db import is_uuid

        assert is_uuid(value) is expected

    def test_repositories_short_circuit(self):
        from zapdesk.infra.repositories.conversations_repository import PgConversationRepository
        from zapdesk.infra.repositories.directory_repository import (
            PgInstanceRepository,
            PgUserRepository,
        )

        with patch("zapdesk.infra.db.get_conn") as get_conn:
            assert PgConversationRepository().get("org", "nope") is None
            assert PgConversationRepository().add_tag("org", "nope", "vip") is None
            assert PgConversationRepository().list("org", assigned_to_id="nope") == ([], 0)
            assert PgInstanceRepository().get("org", "nope") is None
            assert PgUserRepository().exists("org", "nope") is False
        get_conn.assert_not_called()


class TestMessageStatusUpgrade:
    """upgrade_status only matches rows still below the target status."""

    MESSAGE_ID = "3f1c7d2e-8a4b-4c55-9e0f-1a2b3c4d5e6f"

    def _conn(self, row=None):
        conn = MagicMock()
        cur = conn.cursor.return_value.__enter__.return_value
        cur.fetchone.return_value = row
        return conn, cur

    def test_guards_on_lower_statuses(self):
        from zapdesk.domain.models import MessageStatus
        from zapdesk.infra.repositories.messages_repository import PgMessageRepository

        conn, cur = self._conn()
        with patch("zapdesk.infra.db.get_conn", return_value=conn):
            result = PgMessageRepository().upgrade_status(
                "org", self.MESSAGE_ID, MessageStatus.DELIVERED
            )

        assert result is None
        sql, params = cur.execute.call_args[0]
        assert "status = ANY(%s)" in sql
        assert params == ("DELIVERED", "org", self.MESSAGE_ID, ["SENT"])

    def test_read_accepts_sent_and_delivered(self):
        from zapdesk.domain.models import MessageStatus
        from zapdesk.infra.repositories.messages_repository import PgMessageRepository

        conn, cur = self._conn()
        with patch("zapdesk.infra.db.get_conn", return_value=conn):
            PgMessageRepository().upgrade_status("org", self.MESSAGE_ID, MessageStatus.READ)

        _, params = cur.execute.call_args[0]
        assert params[-1] == ["SENT", "DELIVERED"]

    @pytest.mark.parametrize("status", ["SENT", "FAILED"])
    def test_nothing_to_upgrade_skips_the_database(self, status):
        from zapdesk.domain.models import MessageStatus
        from zapdesk.infra.repositories.messages_repository import PgMessageRepository

        with patch("zapdesk.infra.db.get_conn") as get_conn:
            result = PgMessageRepository().upgrade_status(
                "org", self.MESSAGE_ID, MessageStatus(status)
            )

        assert result is None
        get_conn.assert_not_called()
