"""Gateway (Evolution API) wire models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ChatRecord:
    """One entry of a findChats listing.

    ATTENTION PII: remote_jid and push_name identify a person.
    Log only chat id or hash_identifier(remote_jid).
    """

    id: str
    remote_jid: str
    push_name: str | None = None
    profile_pic_url: str | None = None
    updated_at: datetime | None = None
    window_start: Any = None
    window_expires: Any = None
    window_active: bool | None = None

    @property
    def key(self) -> str:
        """Identifier used in batch outcomes and logs."""
        return self.id or self.remote_jid

    def window_metadata(self) -> dict[str, Any]:
        """Session-window fields the record actually carries."""
        fields = {
            "windowStart": self.window_start,
            "windowExpires": self.window_expires,
            "windowActive": self.window_active,
        }
        return {k: v for k, v in fields.items() if v is not None}


@dataclass(frozen=True)
class WebhookEvent:
    """Normalized Evolution webhook envelope."""

    event: str
    instance_name: str
    data: dict[str, Any] = field(default_factory=dict)
