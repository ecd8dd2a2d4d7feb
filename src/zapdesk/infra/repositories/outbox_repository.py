"""Outbox repository - persisted conversation events for the realtime fan-out.

Uses raw SQL with psycopg2 (no ORM).

The CRM core writes here; a separate dispatcher (not part of this package)
pushes rows to connected operators.
"""

import json

from psycopg2.extensions import cursor as PgCursor

from zapdesk.infra.db import txn
from zapdesk.observability.correlation import get_correlation_id


def emit_event(
    cur: PgCursor,
    *,
    organization_id: str,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Append an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        organization_id: Tenant the event belongs to.
        event_type: Event type (e.g., CONVERSATION_ASSIGNED).
        aggregate_type: Aggregate type (e.g., conversation).
        aggregate_id: Aggregate ID (e.g., conversation UUID).
        payload: Optional JSON payload.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload, default=str) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            organization_id, event_type, aggregate_type,
            aggregate_id, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            organization_id,
            event_type,
            aggregate_type,
            aggregate_id,
            payload_json,
            correlation_id,
        ),
    )
    return cur.fetchone()[0]


class OutboxEventEmitter:
    """EventEmitter that appends each event in its own transaction."""

    def emit(
        self,
        *,
        organization_id: str,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict,
    ) -> None:
        with txn() as cur:
            emit_event(
                cur,
                organization_id=organization_id,
                event_type=event_type,
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                payload=payload,
                correlation_id=get_correlation_id() or None,
            )
