import logging
from dataclasses import dataclass

import httpx

from betblocker.config import Config
from betblocker.domains import normalize_domain
from betblocker.errors import ProtocolError, ValidationError
from betblocker.nextdns import NextDNSAPI, profile_path

logger = logging.getLogger("betblocker.denylist")


@dataclass(frozen=True)
class DenylistEntry:
    host: str
    active: bool = True

    def to_dict(self) -> dict:
        return {"host": self.host, "active": self.active}


def _require_profile_id(profile_id: str) -> str:
    if not profile_id or not isinstance(profile_id, str):
        raise ValidationError("Missing required query parameter: profileId")
    return profile_id


def _parse_entries(data) -> list[DenylistEntry]:
    """Accept either a bare array or a {"data": [...]} envelope."""
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        items = data["data"]
    elif isinstance(data, list):
        items = data
    elif data is None:
        items = []
    else:
        raise ProtocolError("NextDNS returned an unexpected denylist payload")

    entries = []
    for item in items:
        if isinstance(item, dict) and item.get("id"):
            entries.append(DenylistEntry(host=str(item["id"]), active=bool(item.get("active", True))))
        elif isinstance(item, str) and item:
            entries.append(DenylistEntry(host=item))
    return entries


class DenylistClient:
    """List, add and remove denylist entries on a NextDNS profile."""

    def __init__(self, config: Config, transport: httpx.BaseTransport | None = None) -> None:
        self.api = NextDNSAPI(config, transport=transport)

    def list(self, profile_id: str) -> list[DenylistEntry]:
        _require_profile_id(profile_id)
        data = self.api.request(
            "GET",
            profile_path(profile_id, "denylist"),
            error_message="Failed to fetch blocklist from NextDNS",
        )
        return _parse_entries(data)

    def add(self, profile_id: str, domain: str) -> str:
        _require_profile_id(profile_id)
        normalized = normalize_domain(domain)
        if not normalized:
            raise ValidationError("Request body must include a 'domain' string")
        self.api.request(
            "POST",
            profile_path(profile_id, "denylist"),
            payload={"id": normalized, "active": True},
            error_message="Failed to add domain to NextDNS blocklist",
        )
        logger.info("Blocked %s on profile %s", normalized, profile_id)
        return f"Domain {normalized} added to blocklist."

    def remove(self, profile_id: str, domain: str) -> str:
        _require_profile_id(profile_id)
        if not domain or not isinstance(domain, str) or not domain.strip():
            raise ValidationError("Request body must include a 'domain' string")
        domain = domain.strip()
        self.api.request(
            "DELETE",
            profile_path(profile_id, "denylist", domain),
            error_message="Failed to remove domain from NextDNS blocklist",
        )
        logger.info("Unblocked %s on profile %s", domain, profile_id)
        return f"Domain {domain} removed from blocklist."
