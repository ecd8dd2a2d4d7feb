"""Contact reconciliation - mirror Gateway chats into local contacts.

Upsert key: (organization_id, phone_number). Metadata is shallow-merged so
keys written by other code paths survive a sync, and a record that lacks a
field never erases what we already know.
"""

from __future__ import annotations

from typing import Any

from zapdesk.infra.time import utc_now
from zapdesk.observability.logging import get_logger
from zapdesk.observability.redaction import safe_log_context
from zapdesk.whatsapp.evolution_adapter import phone_from_jid
from zapdesk.whatsapp.models import ChatRecord

from .models import Contact, ItemOutcome
from .repositories import ContactRepository

logger = get_logger(__name__)


def default_contact_name(phone_number: str) -> str:
    return f"Contato {phone_number}"


def chat_metadata(chat: ChatRecord) -> dict[str, Any]:
    """Contact metadata carried by a chat record (None values dropped)."""
    fields = {
        "remoteJid": chat.remote_jid,
        "pushName": chat.push_name,
        "profilePicUrl": chat.profile_pic_url,
    }
    return {k: v for k, v in fields.items() if v is not None}


def merge_metadata(current: dict[str, Any] | None, incoming: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge, last write wins on overlapping keys."""
    merged = dict(current or {})
    merged.update({k: v for k, v in incoming.items() if v is not None})
    return merged


def upsert_contact(
    contacts: ContactRepository,
    *,
    organization_id: str,
    phone_number: str,
    name: str | None,
    external_id: str | None,
    metadata: dict[str, Any],
) -> tuple[Contact, bool]:
    """Find-or-create a contact and apply the name/metadata rules.

    Returns:
        (contact, created)
    """
    stamped = dict(metadata, lastUpdated=utc_now().isoformat())

    existing = contacts.find_by_phone(organization_id, phone_number)
    if existing is None:
        contact, created = contacts.create(
            organization_id,
            phone_number=phone_number,
            name=name or default_contact_name(phone_number),
            external_id=external_id,
            metadata=stamped,
        )
        if created:
            return contact, True
        # Lost a creation race; fall through and update the winner's row
        existing = contact

    updated = contacts.update(
        organization_id,
        existing.id,
        # Never overwrite a known name with emptiness
        name=name or None,
        external_id=external_id if not existing.external_id else None,
        metadata=merge_metadata(existing.metadata, stamped),
    )
    return updated, False


def reconcile_contact(
    contacts: ContactRepository,
    *,
    organization_id: str,
    chat: ChatRecord,
) -> tuple[ItemOutcome, Contact | None]:
    """Upsert the contact behind one chat record.

    Never raises for record-level problems: failures become an "error"
    outcome so the caller can move on to the next record.
    """
    try:
        phone_number = phone_from_jid(chat.remote_jid)
        if not phone_number:
            raise ValueError("remoteJid has no phone part")

        contact, created = upsert_contact(
            contacts,
            organization_id=organization_id,
            phone_number=phone_number,
            name=chat.push_name,
            external_id=chat.id,
            metadata=chat_metadata(chat),
        )
    except Exception as exc:
        logger.warning(
            "contact reconciliation failed",
            extra={
                "extra_fields": safe_log_context(
                    organization_id=organization_id,
                    chat_id=chat.id,
                    error=exc,
                )
            },
        )
        return ItemOutcome(key=chat.key, action="error", error=str(exc)), None

    action = "created" if created else "updated"
    return ItemOutcome(key=chat.key, action=action, entity_id=contact.id), contact
