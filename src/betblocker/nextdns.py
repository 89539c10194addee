import logging
from typing import Any
from urllib.parse import quote

import httpx

from betblocker.config import Config
from betblocker.errors import UpstreamError, UpstreamUnavailable

logger = logging.getLogger("betblocker.nextdns")

MISSING_KEY_MESSAGE = "NEXTDNS_API_KEY is not configured on the server"


def profile_path(profile_id: str, *parts: str) -> str:
    """Build an API path like /profiles/{id}/denylist/{domain} with encoded segments."""
    segments = ["profiles", quote(profile_id, safe="")]
    segments.extend(quote(p, safe="") for p in parts)
    return "/" + "/".join(segments)


def _error_message(response: httpx.Response, default: str) -> str:
    """Best-effort extraction of an error message from a NextDNS error body."""
    try:
        body = response.json()
    except ValueError:
        return default
    if not isinstance(body, dict):
        return default
    for key in ("message", "error"):
        if isinstance(body.get(key), str) and body[key]:
            return body[key]
    # NextDNS reports validation failures as {"errors": [{"code": ..., "detail": ...}]}
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        parts = []
        for err in errors:
            if isinstance(err, dict):
                parts.append(str(err.get("detail") or err.get("code") or ""))
        message = "; ".join(p for p in parts if p)
        if message:
            return message
    return default


class NextDNSAPI:
    """Thin JSON client for the NextDNS REST API.

    Every call opens its own short-lived httpx client, so instances hold
    no connection state and can be shared across request threads.
    """

    def __init__(self, config: Config, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key)

    def require_key(self) -> None:
        if not self.config.api_key:
            raise UpstreamUnavailable(MISSING_KEY_MESSAGE)

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        error_message: str = "NextDNS request failed",
    ) -> Any:
        """Send one request and return the decoded JSON body (None if empty).

        Raises UpstreamUnavailable without touching the network when no API
        key is configured, and UpstreamError on a non-2xx status or a
        transport failure. There are no retries.
        """
        self.require_key()
        headers = {
            "Content-Type": "application/json",
            "X-Api-Key": self.config.api_key,
        }
        try:
            with httpx.Client(
                base_url=self.config.api_url,
                timeout=self.config.api_timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("NextDNS %s %s failed: %s", method, path, e)
            raise UpstreamError(502, f"{error_message}: could not reach NextDNS") from e

        if not response.is_success:
            message = _error_message(response, error_message)
            logger.warning("NextDNS %s %s returned %d: %s", method, path, response.status_code, message)
            raise UpstreamError(response.status_code, message)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None
