"""Messages repository - persisted Gateway messages.

Uses raw SQL with psycopg2 (no ORM).

At most one row per (conversation_id, external_id): enforced by a partial
unique index, so a repeated sync never duplicates messages.
"""

from __future__ import annotations

from typing import Any

from zapdesk.domain.models import (
    Message,
    MessageDirection,
    MessageStatus,
    MessageType,
    NewMessage,
    statuses_below,
)
from zapdesk.infra.db import as_json, fetchall, fetchone, is_uuid, txn

_COLUMNS = """
    id, organization_id, conversation_id, content, type, direction, status,
    external_id, metadata, sent_at, created_at
"""


def _row_to_message(row: tuple[Any, ...]) -> Message:
    return Message(
        id=str(row[0]),
        organization_id=str(row[1]),
        conversation_id=str(row[2]),
        content=row[3],
        type=MessageType(row[4]),
        direction=MessageDirection(row[5]),
        status=MessageStatus(row[6]),
        external_id=row[7],
        metadata=row[8] if isinstance(row[8], dict) else {},
        sent_at=row[9],
        created_at=row[10],
    )


class PgMessageRepository:
    """MessageRepository over the messages table."""

    def find_by_external_id(
        self,
        organization_id: str,
        conversation_id: str,
        external_id: str,
    ) -> Message | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE organization_id = %s AND conversation_id = %s AND external_id = %s
                """,
                (organization_id, conversation_id, external_id),
            )
        return _row_to_message(row) if row else None

    def find_by_external_id_in_organization(
        self,
        organization_id: str,
        external_id: str,
    ) -> Message | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE organization_id = %s AND external_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (organization_id, external_id),
            )
        return _row_to_message(row) if row else None

    def create(
        self,
        organization_id: str,
        conversation_id: str,
        message: NewMessage,
    ) -> tuple[Message, bool]:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                INSERT INTO messages (
                    organization_id, conversation_id, content, type, direction,
                    status, external_id, metadata, sent_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id, external_id) WHERE external_id IS NOT NULL
                DO NOTHING
                RETURNING {_COLUMNS}
                """,
                (
                    organization_id,
                    conversation_id,
                    message.content,
                    message.type.value,
                    message.direction.value,
                    message.status.value,
                    message.external_id,
                    as_json(message.metadata),
                    message.sent_at,
                ),
            )
            if row is not None:
                return _row_to_message(row), True

            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE organization_id = %s AND conversation_id = %s AND external_id = %s
                """,
                (organization_id, conversation_id, message.external_id),
            )
        if row is None:
            raise RuntimeError("message insert conflicted but no row found")
        return _row_to_message(row), False

    def upgrade_status(
        self,
        organization_id: str,
        message_id: str,
        status: MessageStatus,
    ) -> Message | None:
        """Move a message forward on the delivery path.

        Only rows whose current status ranks below status are touched, so a
        concurrent writer that already stored a later status wins. Returns
        None when nothing changed.
        """
        lower = [s.value for s in statuses_below(status)]
        if not lower or not is_uuid(message_id):
            return None
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE messages
                SET status = %s, updated_at = now()
                WHERE organization_id = %s AND id = %s AND status = ANY(%s)
                RETURNING {_COLUMNS}
                """,
                (status.value, organization_id, message_id, lower),
            )
        return _row_to_message(row) if row else None

    def list_for_conversation(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        limit: int = 50,
    ) -> list[Message]:
        """Most recent messages first."""
        with txn() as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE organization_id = %s AND conversation_id = %s
                ORDER BY COALESCE(sent_at, created_at) DESC
                LIMIT %s
                """,
                (organization_id, conversation_id, limit),
            )
        return [_row_to_message(r) for r in rows]

    def list_page(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        limit: int,
        offset: int = 0,
    ) -> tuple[list[Message], int]:
        """One page of a conversation's timeline, oldest first, plus the total."""
        if not is_uuid(conversation_id):
            return [], 0
        with txn() as cur:
            total_row = fetchone(
                cur,
                """
                SELECT count(*) FROM messages
                WHERE organization_id = %s AND conversation_id = %s
                """,
                (organization_id, conversation_id),
            )
            rows = fetchall(
                cur,
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE organization_id = %s AND conversation_id = %s
                ORDER BY COALESCE(sent_at, created_at) ASC, id ASC
                LIMIT %s OFFSET %s
                """,
                (organization_id, conversation_id, limit, offset),
            )
        return [_row_to_message(r) for r in rows], total_row[0]
