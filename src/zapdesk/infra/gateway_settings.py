"""Per-organization Gateway (Evolution API) configuration.

Credentials live in organizations.settings -> 'evolution':
    {"baseUrl": "https://evo.example.com", "apiKey": "..."}

Fails closed: a missing or empty field means "not configured". There is no
environment fallback, so one tenant can never borrow another's Gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .db import fetchone, txn


@dataclass(frozen=True)
class GatewayConfig:
    """Resolved Gateway credentials for one organization."""

    base_url: str
    api_key: str

    def __repr__(self) -> str:
        # api_key must never end up in logs or tracebacks
        return f"GatewayConfig(base_url={self.base_url!r}, api_key='***')"


def get_gateway_config(organization_id: str) -> GatewayConfig | None:
    """Resolve Gateway credentials for an organization.

    Returns:
        GatewayConfig, or None if the organization does not exist or has no
        complete Gateway configuration.
    """
    return parse_gateway_settings(_load_settings(organization_id))


def parse_gateway_settings(settings: Any) -> GatewayConfig | None:
    """Extract GatewayConfig from an organizations.settings document."""
    if not isinstance(settings, dict):
        return None

    evolution = settings.get("evolution")
    if not isinstance(evolution, dict):
        return None

    base_url = evolution.get("baseUrl")
    api_key = evolution.get("apiKey")
    if not isinstance(base_url, str) or not isinstance(api_key, str):
        return None

    base_url = base_url.strip().rstrip("/")
    api_key = api_key.strip()
    if not base_url or not api_key:
        return None

    return GatewayConfig(base_url=base_url, api_key=api_key)


def _load_settings(organization_id: str) -> dict[str, Any]:
    """Load organizations.settings (empty dict if missing)."""
    with txn() as cur:
        row = fetchone(
            cur,
            "SELECT settings FROM organizations WHERE id = %s",
            (organization_id,),
        )
    if row and isinstance(row[0], dict):
        return row[0]
    return {}
