"""compasspy exceptions."""


class CompassError(Exception):
    """Base exception of the library."""


class NotAuthenticated(CompassError):
    """Operation requires an authenticated session."""


class AuthenticationFailed(CompassError):
    """Login handshake did not yield a cookie and a user id."""


class UpstreamRequestFailed(CompassError):
    """Portal answered with a non-success HTTP status."""

    def __init__(self, status_code: int, url: str = ""):
        super().__init__(f"HTTP {status_code} from {url}" if url else f"HTTP {status_code}")
        self.status_code = status_code
        self.url = url


class MalformedPayload(CompassError, ValueError):
    """A required field is missing or has an unexpected type."""


class ServerUnavailable(CompassError):
    """The server did not answer within the allotted time."""
