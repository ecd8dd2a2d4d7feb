"""Conversations repository - PostgreSQL implementation.

Uses raw SQL with psycopg2 (no ORM). Each public method is one short
transaction; nothing here spans a whole sync batch.

Write paths are split on purpose:
- update_sync_fields() is the only write reconciliation uses and lists
  Gateway-mirrored columns only
- compare_and_set() is the state machine's atomic guarded update
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from psycopg2.extensions import cursor as PgCursor

from zapdesk.domain.models import Conversation, ConversationPriority, ConversationStatus
from zapdesk.infra.db import as_json, fetchall, fetchone, is_uuid, txn

_COLUMNS = """
    id, organization_id, contact_id, instance_id, title, status, priority,
    assigned_to_id, created_by_id, tags, notes, last_message_at, external_id,
    metadata, is_archived, archived_from_status, created_at, updated_at
"""

# Columns compare_and_set() may guard on or write
_CAS_COLUMNS = frozenset(
    {
        "status",
        "priority",
        "assigned_to_id",
        "notes",
        "is_archived",
        "archived_from_status",
    }
)


def _row_to_conversation(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=str(row[0]),
        organization_id=str(row[1]),
        contact_id=str(row[2]),
        instance_id=str(row[3]),
        title=row[4],
        status=ConversationStatus(row[5]),
        priority=ConversationPriority(row[6]),
        assigned_to_id=str(row[7]) if row[7] else None,
        created_by_id=str(row[8]) if row[8] else None,
        tags=list(row[9] or []),
        notes=row[10],
        last_message_at=row[11],
        external_id=row[12],
        metadata=row[13] if isinstance(row[13], dict) else {},
        is_archived=bool(row[14]),
        archived_from_status=ConversationStatus(row[15]) if row[15] else None,
        created_at=row[16],
        updated_at=row[17],
    )


def _param(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _select_one(cur: PgCursor, organization_id: str, conversation_id: str) -> Conversation | None:
    row = fetchone(
        cur,
        f"SELECT {_COLUMNS} FROM conversations WHERE organization_id = %s AND id = %s",
        (organization_id, conversation_id),
    )
    return _row_to_conversation(row) if row else None


class PgConversationRepository:
    """ConversationRepository over the conversations table."""

    def get(self, organization_id: str, conversation_id: str) -> Conversation | None:
        if not is_uuid(conversation_id):
            return None
        with txn() as cur:
            return _select_one(cur, organization_id, conversation_id)

    def find_by_contact_instance(
        self,
        organization_id: str,
        contact_id: str,
        instance_id: str,
    ) -> Conversation | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM conversations
                WHERE organization_id = %s AND contact_id = %s AND instance_id = %s
                """,
                (organization_id, contact_id, instance_id),
            )
        return _row_to_conversation(row) if row else None

    def list(
        self,
        organization_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
        assigned_to_id: str | None = None,
        instance_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Conversation], int]:
        """List conversations, newest activity first.

        Archived conversations only show up under status=ARCHIVED.
        """
        conditions = ["organization_id = %s"]
        params: list[Any] = [organization_id]

        if status == ConversationStatus.ARCHIVED.value:
            conditions.append("is_archived = TRUE")
        else:
            conditions.append("is_archived = FALSE")
            if status:
                conditions.append("status = %s")
                params.append(status)

        if priority:
            conditions.append("priority = %s")
            params.append(priority)

        if assigned_to_id:
            conditions.append("assigned_to_id = %s")
            params.append(assigned_to_id)

        if instance_id:
            conditions.append("instance_id = %s")
            params.append(instance_id)

        for value in (assigned_to_id, instance_id):
            if value and not is_uuid(value):
                return [], 0

        where_clause = " AND ".join(conditions)

        with txn() as cur:
            total = fetchone(cur, f"SELECT count(*) FROM conversations WHERE {where_clause}", params)
            rows = fetchall(
                cur,
                f"""
                SELECT {_COLUMNS} FROM conversations
                WHERE {where_clause}
                ORDER BY last_message_at DESC NULLS LAST, created_at DESC
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            )

        return [_row_to_conversation(r) for r in rows], int(total[0]) if total else 0

    def create(
        self,
        organization_id: str,
        *,
        contact_id: str,
        instance_id: str,
        title: str,
        external_id: str | None,
        last_message_at: datetime | None,
        created_by_id: str | None,
        metadata: dict[str, Any],
    ) -> tuple[Conversation, bool]:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                INSERT INTO conversations (
                    organization_id, contact_id, instance_id, title,
                    status, priority, external_id, last_message_at,
                    created_by_id, metadata
                )
                VALUES (%s, %s, %s, %s, 'OPEN', 'MEDIUM', %s, %s, %s, %s)
                ON CONFLICT (organization_id, contact_id, instance_id) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                (
                    organization_id,
                    contact_id,
                    instance_id,
                    title,
                    external_id,
                    last_message_at,
                    created_by_id,
                    as_json(metadata),
                ),
            )
            if row is not None:
                return _row_to_conversation(row), True

            # Concurrent sync created it first
            row = fetchone(
                cur,
                f"""
                SELECT {_COLUMNS} FROM conversations
                WHERE organization_id = %s AND contact_id = %s AND instance_id = %s
                """,
                (organization_id, contact_id, instance_id),
            )
        if row is None:
            raise RuntimeError("conversation insert conflicted but no row found")
        return _row_to_conversation(row), False

    def update_sync_fields(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        title: str | None,
        last_message_at: datetime | None,
        metadata: dict[str, Any],
    ) -> Conversation:
        # GREATEST ignores NULL, so a record without updatedAt keeps the old value
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE conversations
                SET title           = COALESCE(%s, title),
                    last_message_at = GREATEST(last_message_at, %s::timestamptz),
                    metadata        = COALESCE(metadata, '{{}}'::jsonb) || %s,
                    updated_at      = now()
                WHERE organization_id = %s AND id = %s
                RETURNING {_COLUMNS}
                """,
                (title, last_message_at, as_json(metadata), organization_id, conversation_id),
            )
        if row is None:
            raise LookupError(f"conversation {conversation_id} disappeared during sync")
        return _row_to_conversation(row)

    def advance_last_message_at(
        self,
        organization_id: str,
        conversation_id: str,
        last_message_at: datetime,
    ) -> None:
        with txn() as cur:
            cur.execute(
                """
                UPDATE conversations
                SET last_message_at = GREATEST(last_message_at, %s::timestamptz),
                    updated_at      = now()
                WHERE organization_id = %s AND id = %s
                """,
                (last_message_at, organization_id, conversation_id),
            )

    def compare_and_set(
        self,
        organization_id: str,
        conversation_id: str,
        *,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Conversation | None:
        """Single UPDATE ... WHERE <guards> RETURNING; None if no row matched."""
        unknown = (set(expected) | set(changes)) - _CAS_COLUMNS
        if unknown:
            raise ValueError(f"compare_and_set on unsupported columns: {sorted(unknown)}")
        if not changes:
            raise ValueError("compare_and_set needs at least one change")
        if not is_uuid(conversation_id):
            return None

        set_parts = [f"{column} = %s" for column in changes]
        set_params = [_param(v) for v in changes.values()]

        guards = ["organization_id = %s", "id = %s"]
        guard_params: list[Any] = [organization_id, conversation_id]
        for column, value in expected.items():
            if value is None:
                guards.append(f"{column} IS NULL")
            else:
                guards.append(f"{column} = %s")
                guard_params.append(_param(value))

        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE conversations
                SET {", ".join(set_parts)}, updated_at = now()
                WHERE {" AND ".join(guards)}
                RETURNING {_COLUMNS}
                """,
                [*set_params, *guard_params],
            )
        return _row_to_conversation(row) if row else None

    def add_tag(self, organization_id: str, conversation_id: str, tag: str) -> Conversation | None:
        if not is_uuid(conversation_id):
            return None
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE conversations
                SET tags = CASE WHEN %s = ANY(tags) THEN tags ELSE array_append(tags, %s) END,
                    updated_at = now()
                WHERE organization_id = %s AND id = %s
                RETURNING {_COLUMNS}
                """,
                (tag, tag, organization_id, conversation_id),
            )
        return _row_to_conversation(row) if row else None

    def remove_tag(self, organization_id: str, conversation_id: str, tag: str) -> Conversation | None:
        if not is_uuid(conversation_id):
            return None
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE conversations
                SET tags = array_remove(tags, %s),
                    updated_at = now()
                WHERE organization_id = %s AND id = %s
                RETURNING {_COLUMNS}
                """,
                (tag, organization_id, conversation_id),
            )
        return _row_to_conversation(row) if row else None
