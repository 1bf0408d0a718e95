"""Data records shared by the broker, the state store and the session registry."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class OAuth2Config(BaseModel):
    """Immutable OAuth client configuration for the ClickUp authorization server."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: SecretStr
    authorization_url: str
    token_url: str
    callback_path: str = "/oauth/callback"
    revocation_url: str | None = None
    scope: str | None = None


class TokenRecord(BaseModel):
    """Token endpoint response (RFC 6749 section 5.1).

    ``obtained_at`` is stamped by the broker when the response arrives so the
    absolute expiry can be derived from ``expires_in``.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    obtained_at: float = Field(default=0.0, exclude=True)

    def expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return self.obtained_at + self.expires_in

    def is_expiring(self, now: float, skew: float = 0.0) -> bool:
        """Return True when the token is expired or expires within ``skew`` seconds."""
        expires_at = self.expires_at()
        if expires_at is None:
            return False
        return now + skew >= expires_at

    def redacted(self) -> str:
        return f"{self.access_token[:6]}..."


@dataclass
class PKCEPair:
    verifier: str
    challenge: str
    method: str = "S256"


@dataclass
class PendingAuth:
    """An authorization attempt waiting for its callback.

    ``code_verifier`` never leaves the server before the token exchange and is
    cleared once the exchange has been attempted.
    """

    state: str
    redirect_uri: str
    created_at: float
    code_challenge: str | None = None
    code_verifier: str | None = None
    mcp_session_id: str | None = None
    client_id: str | None = None
    client_redirect_uri: str | None = None
    client_state: str | None = None
    client_code_challenge: str | None = None

    def is_expired(self, now: float, ttl: float) -> bool:
        return self.created_at + ttl < now


@dataclass
class IssuedCode:
    """A one-time code handed to an MCP client once ClickUp consent succeeded.

    The client redeems it at the token endpoint; only then is a session created
    for ``token``.
    """

    code: str
    client_id: str
    redirect_uri: str
    created_at: float
    token: TokenRecord
    code_challenge: str | None = None

    def is_expired(self, now: float, ttl: float) -> bool:
        return self.created_at + ttl < now


@dataclass
class Session:
    """A protocol session; tokens are attached to it and replaced over time."""

    id: str
    created_at: float
    last_used: float
    token: TokenRecord | None = None
    workspace_id: str | None = None
    user_id: str | None = None
    token_version: int = 0

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def as_public_dict(self) -> dict[str, Any]:
        """Return a redacted view suitable for logging or diagnostics."""
        return {
            "id": self.id,
            "authenticated": self.is_authenticated,
            "token": self.token.redacted() if self.token else None,
            "workspace_id": self.workspace_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "last_used": self.last_used,
            "token_version": self.token_version,
        }
