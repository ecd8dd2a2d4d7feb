"""CRM schema: organizations, operators, Gateway instances, contacts,
conversations, messages and the event outbox.

Archiving is a flag (is_archived + archived_from_status) orthogonal to
status, so status never holds ARCHIVED.

Revision ID: 001_crm_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op

revision = "001_crm_schema"
down_revision = None
branch_labels = None
depends_on = None

_SQL = """
CREATE TABLE organizations (
    id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name        TEXT NOT NULL,
    settings    JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE users (
    id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id   UUID NOT NULL REFERENCES organizations(id),
    external_subject  TEXT NOT NULL UNIQUE,
    email             TEXT,
    name              TEXT,
    role              TEXT NOT NULL DEFAULT 'AGENT',
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX idx_users_organization ON users (organization_id, created_at);

CREATE TABLE instances (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id  UUID NOT NULL REFERENCES organizations(id),
    name             TEXT NOT NULL,
    instance_name    TEXT NOT NULL UNIQUE,
    status           TEXT,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX idx_instances_organization ON instances (organization_id);

CREATE TABLE contacts (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id  UUID NOT NULL REFERENCES organizations(id),
    phone_number     TEXT NOT NULL,
    name             TEXT NOT NULL,
    external_id      TEXT,
    metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_contacts_org_phone UNIQUE (organization_id, phone_number)
);

CREATE TABLE conversations (
    id                    UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id       UUID NOT NULL REFERENCES organizations(id),
    contact_id            UUID NOT NULL REFERENCES contacts(id),
    instance_id           UUID NOT NULL REFERENCES instances(id),
    title                 TEXT NOT NULL,
    status                TEXT NOT NULL DEFAULT 'OPEN'
        CHECK (status IN ('OPEN', 'IN_PROGRESS', 'WAITING', 'CLOSED')),
    priority              TEXT NOT NULL DEFAULT 'MEDIUM'
        CHECK (priority IN ('LOW', 'MEDIUM', 'HIGH', 'URGENT')),
    assigned_to_id        UUID REFERENCES users(id),
    created_by_id         UUID REFERENCES users(id),
    tags                  TEXT[] NOT NULL DEFAULT '{}',
    notes                 TEXT,
    last_message_at       TIMESTAMPTZ,
    external_id           TEXT,
    metadata              JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_archived           BOOLEAN NOT NULL DEFAULT FALSE,
    archived_from_status  TEXT
        CHECK (archived_from_status IN ('OPEN', 'IN_PROGRESS', 'WAITING', 'CLOSED')),
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_conversations_contact_instance UNIQUE (organization_id, contact_id, instance_id)
);
CREATE INDEX idx_conversations_inbox
    ON conversations (organization_id, is_archived, status, last_message_at DESC NULLS LAST);
CREATE INDEX idx_conversations_assignee
    ON conversations (organization_id, assigned_to_id)
    WHERE assigned_to_id IS NOT NULL;

CREATE TABLE messages (
    id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    organization_id  UUID NOT NULL REFERENCES organizations(id),
    conversation_id  UUID NOT NULL REFERENCES conversations(id),
    content          TEXT NOT NULL,
    type             TEXT NOT NULL
        CHECK (type IN ('TEXT', 'IMAGE', 'DOCUMENT', 'AUDIO', 'VIDEO')),
    direction        TEXT NOT NULL CHECK (direction IN ('INBOUND', 'OUTBOUND')),
    status           TEXT NOT NULL DEFAULT 'SENT'
        CHECK (status IN ('SENT', 'DELIVERED', 'READ', 'FAILED')),
    external_id      TEXT,
    metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
    sent_at          TIMESTAMPTZ,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX uq_messages_conversation_external
    ON messages (conversation_id, external_id)
    WHERE external_id IS NOT NULL;
CREATE INDEX idx_messages_org_external ON messages (organization_id, external_id);
CREATE INDEX idx_messages_timeline ON messages (conversation_id, sent_at DESC);

CREATE TABLE outbox_events (
    id               BIGSERIAL PRIMARY KEY,
    organization_id  UUID NOT NULL REFERENCES organizations(id),
    event_type       TEXT NOT NULL,
    aggregate_type   TEXT NOT NULL,
    aggregate_id     TEXT NOT NULL,
    payload          JSONB,
    correlation_id   TEXT,
    occurred_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX idx_outbox_events_org_occurred ON outbox_events (organization_id, occurred_at);
"""


def upgrade() -> None:
    op.execute(_SQL)


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
