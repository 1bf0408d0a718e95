"""Typed failures raised by the OAuth broker and session registry."""


class OAuthBrokerError(Exception):
    """Base exception for broker and session failures."""


class InvalidOrExpiredState(OAuthBrokerError):
    """The callback state is unknown, already consumed, or past its TTL."""

    def __init__(self, message: str = "Invalid or expired state parameter") -> None:
        super().__init__(message)


class DuplicateState(OAuthBrokerError):
    """A pending state with the same value already exists."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__("Duplicate OAuth state")


class UpstreamError(OAuthBrokerError):
    """The authorization server rejected a request.

    ``str(error)`` is safe to show to clients. ``detail`` holds the upstream
    error description and is meant for operator logs only.
    """

    action = "Authorization server request"

    def __init__(self, status: int | None, detail: str | None = None) -> None:
        self.status = status
        self.detail = detail
        if status is None:
            message = f"{self.action} failed: authorization server unreachable"
        else:
            message = f"{self.action} failed with status {status}"
        super().__init__(message)


class TokenExchangeFailed(UpstreamError):
    action = "Token exchange"


class TokenRefreshFailed(UpstreamError):
    action = "Token refresh"


class TokenRevocationFailed(UpstreamError):
    action = "Token revocation"


class UnknownSession(OAuthBrokerError):
    """No session is registered under the given id."""

    def __init__(self, session_id: str | None) -> None:
        self.session_id = session_id
        super().__init__("Unknown session")


class AuthenticationRequired(OAuthBrokerError):
    """The session has no usable token and must go through /authorize again."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)
