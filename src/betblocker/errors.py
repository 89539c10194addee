class BetBlockerError(Exception):
    """Base error. `status` is the HTTP status the route layer responds with."""

    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BetBlockerError):
    """A required server-side setting is missing."""

    status = 500


class UpstreamUnavailable(ConfigurationError):
    """The NextDNS API cannot be called because no API key is configured."""


class UpstreamError(BetBlockerError):
    """NextDNS rejected the call or could not be reached."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class ProtocolError(BetBlockerError):
    """NextDNS answered successfully but the payload is unusable."""

    status = 500


class ValidationError(BetBlockerError):
    """Malformed client input."""

    status = 400
