import logging
import secrets
import time
from dataclasses import dataclass

import httpx

from betblocker.config import Config
from betblocker.errors import ConfigurationError, ProtocolError
from betblocker.nextdns import MISSING_KEY_MESSAGE, NextDNSAPI

logger = logging.getLogger("betblocker.provisioner")


@dataclass(frozen=True)
class FilterProfile:
    id: str
    name: str

    def to_dict(self) -> dict:
        return {"profileId": self.id, "name": self.name}


def default_profile_name() -> str:
    """Random component plus a millisecond timestamp, unique per call."""
    return f"betblocker_{secrets.token_hex(3)}_{int(time.time() * 1000)}"


class ProfileProvisioner:
    """Creates one NextDNS profile per caller under the server's account."""

    def __init__(self, config: Config, transport: httpx.BaseTransport | None = None) -> None:
        self.api = NextDNSAPI(config, transport=transport)

    def create(self, label: str | None = None) -> FilterProfile:
        if not self.api.configured:
            raise ConfigurationError(MISSING_KEY_MESSAGE)

        name = label.strip() if isinstance(label, str) and label.strip() else default_profile_name()
        data = self.api.request(
            "POST",
            "/profiles",
            payload={"name": name},
            error_message="Failed to create NextDNS profile",
        )

        profile = data.get("data", data) if isinstance(data, dict) else None
        profile_id = profile.get("id") if isinstance(profile, dict) else None
        if not profile_id:
            raise ProtocolError(
                "NextDNS API responded without a profile id. Check your API key and permissions."
            )

        created = FilterProfile(id=str(profile_id), name=profile.get("name") or name)
        logger.info("Created NextDNS profile %s (%s)", created.id, created.name)
        return created
