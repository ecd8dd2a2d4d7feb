"""Instances and users lookups.

Uses raw SQL with psycopg2 (no ORM). Both tables are managed elsewhere
(instance provisioning, user administration); the CRM core only reads them.
"""

from __future__ import annotations

from typing import Any

from zapdesk.domain.models import Instance
from zapdesk.infra.db import fetchone, is_uuid, txn

_INSTANCE_COLUMNS = "id, organization_id, name, instance_name, status"


def _row_to_instance(row: tuple[Any, ...]) -> Instance:
    return Instance(
        id=str(row[0]),
        organization_id=str(row[1]),
        name=row[2],
        instance_name=row[3],
        status=row[4],
    )


class PgInstanceRepository:
    """InstanceRepository over the instances table."""

    def get(self, organization_id: str, instance_id: str) -> Instance | None:
        if not is_uuid(instance_id):
            return None
        with txn() as cur:
            row = fetchone(
                cur,
                f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE organization_id = %s AND id = %s",
                (organization_id, instance_id),
            )
        return _row_to_instance(row) if row else None

    def find_by_instance_name(self, instance_name: str) -> Instance | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE instance_name = %s",
                (instance_name,),
            )
        return _row_to_instance(row) if row else None


class PgUserRepository:
    """UserRepository over the users table."""

    def exists(self, organization_id: str, user_id: str) -> bool:
        if not is_uuid(user_id):
            return False
        with txn() as cur:
            row = fetchone(
                cur,
                "SELECT 1 FROM users WHERE organization_id = %s AND id = %s",
                (organization_id, user_id),
            )
        return row is not None

    def find_any_user_id(self, organization_id: str) -> str | None:
        with txn() as cur:
            row = fetchone(
                cur,
                """
                SELECT id FROM users
                WHERE organization_id = %s
                ORDER BY created_at
                LIMIT 1
                """,
                (organization_id,),
            )
        return str(row[0]) if row else None
