"""Contacts repository - identity resolution by phone number.

Uses raw SQL with psycopg2 (no ORM).

Contacts are unique per (organization_id, phone_number). Creation uses
INSERT ... ON CONFLICT DO NOTHING so two syncs racing on the same chat end
up with one row; the loser re-reads and reports created=False.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from zapdesk.domain.models import Contact
from zapdesk.infra.db import as_json, fetchone, txn

_COLUMNS = "id, organization_id, phone_number, name, external_id, metadata, created_at, updated_at"


def _row_to_contact(row: tuple[Any, ...]) -> Contact:
    return Contact(
        id=str(row[0]),
        organization_id=str(row[1]),
        phone_number=row[2],
        name=row[3],
        external_id=row[4],
        metadata=row[5] if isinstance(row[5], dict) else {},
        created_at=row[6],
        updated_at=row[7],
    )


def _select_by_phone(cur: PgCursor, organization_id: str, phone_number: str) -> Contact | None:
    row = fetchone(
        cur,
        f"SELECT {_COLUMNS} FROM contacts WHERE organization_id = %s AND phone_number = %s",
        (organization_id, phone_number),
    )
    return _row_to_contact(row) if row else None


class PgContactRepository:
    """ContactRepository over the contacts table."""

    def get(self, organization_id: str, contact_id: str) -> Contact | None:
        with txn() as cur:
            row = fetchone(
                cur,
                f"SELECT {_COLUMNS} FROM contacts WHERE organization_id = %s AND id = %s",
                (organization_id, contact_id),
            )
        return _row_to_contact(row) if row else None

    def find_by_phone(self, organization_id: str, phone_number: str) -> Contact | None:
        with txn() as cur:
            return _select_by_phone(cur, organization_id, phone_number)

    def create(
        self,
        organization_id: str,
        *,
        phone_number: str,
        name: str,
        external_id: str | None,
        metadata: dict[str, Any],
    ) -> tuple[Contact, bool]:
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                INSERT INTO contacts (organization_id, phone_number, name, external_id, metadata)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (organization_id, phone_number) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                (organization_id, phone_number, name, external_id, as_json(metadata)),
            )
            if row is not None:
                return _row_to_contact(row), True

            existing = _select_by_phone(cur, organization_id, phone_number)
        if existing is None:
            raise RuntimeError("contact insert conflicted but no row found")
        return existing, False

    def update(
        self,
        organization_id: str,
        contact_id: str,
        *,
        name: str | None,
        external_id: str | None,
        metadata: dict[str, Any],
    ) -> Contact:
        # jsonb || keeps keys another writer added since our read
        with txn() as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE contacts
                SET name        = COALESCE(%s, name),
                    external_id = COALESCE(external_id, %s),
                    metadata    = COALESCE(metadata, '{{}}'::jsonb) || %s,
                    updated_at  = now()
                WHERE organization_id = %s AND id = %s
                RETURNING {_COLUMNS}
                """,
                (name, external_id, as_json(metadata), organization_id, contact_id),
            )
        if row is None:
            raise LookupError(f"contact {contact_id} disappeared during sync")
        return _row_to_contact(row)
