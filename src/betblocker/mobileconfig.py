"""Apple configuration profile (.mobileconfig) generation.

The document is a Configuration payload wrapping a managed DNS-settings
payload that points the device at the profile's NextDNS DoH endpoint. When
a removal password is given, a profile-removal-password payload is added
and the consent text repeats the password for the accountability partner.
"""

import logging
import re
import uuid
from xml.sax.saxutils import escape

from betblocker.config import Config
from betblocker.errors import ConfigurationError, ValidationError

logger = logging.getLogger("betblocker.mobileconfig")

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
# Characters XML 1.0 cannot carry, escaped or not
_XML_ILLEGAL_CHARS = re.compile("[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")

CONSENT_TEXT = (
    "This profile routes all DNS lookups on this device through BetBlocker "
    "so that blocked gambling sites stop loading. Only remove it together "
    "with your accountability partner."
)

CONSENT_TEXT_WITH_PASSWORD = (
    "This profile routes all DNS lookups on this device through BetBlocker "
    "so that blocked gambling sites stop loading. Removing it requires the "
    "removal password: {password}. Keep this password with your "
    "accountability partner, not on this device."
)


def sanitize_profile_id(profile_id) -> str:
    """Drop every character outside [A-Za-z0-9_-]."""
    return _UNSAFE_ID_CHARS.sub("", str(profile_id))


def profile_filename(profile_id) -> str:
    return f"betblocker-{sanitize_profile_id(profile_id)}.mobileconfig"


def _removal_password_payload(prefix: str, safe_id: str, password: str) -> str:
    return f"""
    <dict>
      <key>PayloadType</key>
      <string>com.apple.profileRemovalPassword</string>
      <key>PayloadVersion</key>
      <integer>1</integer>
      <key>PayloadIdentifier</key>
      <string>{prefix}.removal.{safe_id}</string>
      <key>PayloadUUID</key>
      <string>{str(uuid.uuid4())}</string>
      <key>PayloadDisplayName</key>
      <string>BetBlocker Removal Password</string>
      <key>RemovalPassword</key>
      <string>{escape(password)}</string>
    </dict>"""


class ProfileBuilder:
    """Fills the configuration profile template for one filtering profile."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def build(self, filtering_id: str | None, removal_password: str | None = None) -> str:
        """Return an unsigned .mobileconfig document.

        UUIDs are generated on every call, so each download is an
        independently installable and revocable profile instance.
        """
        if filtering_id is None or str(filtering_id) == "":
            raise ConfigurationError(
                "No NextDNS profile id: pass profileId or set NEXTDNS_PROFILE_ID"
            )
        safe_id = sanitize_profile_id(filtering_id)
        if not safe_id:
            raise ValidationError("profileId contains no usable characters")

        if removal_password and _XML_ILLEGAL_CHARS.search(removal_password):
            raise ValidationError("Removal password contains characters that cannot appear in a profile")

        cfg = self.config
        prefix = escape(cfg.identifier_prefix)
        organization = escape(cfg.organization)
        dns_host = escape(cfg.dns_host)
        profile_uuid = str(uuid.uuid4())
        payload_uuid = str(uuid.uuid4())

        if removal_password:
            consent = CONSENT_TEXT_WITH_PASSWORD.format(password=removal_password)
            extra_payloads = _removal_password_payload(prefix, safe_id, removal_password)
        else:
            consent = CONSENT_TEXT
            extra_payloads = ""

        logger.debug(
            "Built configuration profile for %s (removal password: %s)",
            safe_id, "yes" if removal_password else "no",
        )
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
  <key>PayloadType</key>
  <string>Configuration</string>
  <key>PayloadVersion</key>
  <integer>1</integer>
  <key>PayloadIdentifier</key>
  <string>{prefix}.{safe_id}</string>
  <key>PayloadUUID</key>
  <string>{profile_uuid}</string>
  <key>PayloadDisplayName</key>
  <string>BetBlocker DNS ({safe_id})</string>
  <key>PayloadDescription</key>
  <string>Configures this device to use NextDNS for BetBlocker.</string>
  <key>PayloadOrganization</key>
  <string>{organization}</string>
  <key>PayloadScope</key>
  <string>System</string>
  <key>PayloadRemovalDisallowed</key>
  <false/>
  <key>ConsentText</key>
  <dict>
    <key>default</key>
    <string>{escape(consent)}</string>
  </dict>
  <key>PayloadContent</key>
  <array>
    <dict>
      <key>PayloadType</key>
      <string>com.apple.dnsSettings.managed</string>
      <key>PayloadVersion</key>
      <integer>1</integer>
      <key>PayloadIdentifier</key>
      <string>{prefix}.dns.{safe_id}</string>
      <key>PayloadUUID</key>
      <string>{payload_uuid}</string>
      <key>PayloadDisplayName</key>
      <string>BetBlocker DNS</string>
      <key>DNSSettings</key>
      <dict>
        <key>DNSProtocol</key>
        <string>HTTPS</string>
        <key>ServerURL</key>
        <string>https://{dns_host}/{safe_id}</string>
        <key>ServerAddresses</key>
        <array/>
      </dict>
    </dict>{extra_payloads}
  </array>
</dict>
</plist>
"""
