"""Configuration for the ClickUp MCP OAuth server, loaded from the environment."""

from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import OAuth2Config

# Native clients listen on a loopback port picked at runtime (RFC 8252 section 7.3)
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


class ClickUpAuthSettings(BaseSettings):
    """
    Settings for the ClickUp OAuth integration and the listening server.

    Every field can be set through a ``CLICKUP_`` prefixed environment
    variable (e.g. ``CLICKUP_CLIENT_ID``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLICKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OAuth client credentials (registered with ClickUp)
    client_id: str
    client_secret: SecretStr

    # ClickUp OAuth endpoints
    authorization_url: str = "https://app.clickup.com/api"
    token_url: str = "https://api.clickup.com/api/v2/oauth/token"
    revocation_url: str | None = None  # ClickUp has no revocation endpoint
    callback_path: str = "/oauth/callback"
    scope: str | None = None

    # MCP clients allowed to receive authorization codes, comma separated.
    # Loopback redirect URIs are always accepted.
    allowed_redirect_uris: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Downstream REST API
    api_base_url: str = "https://api.clickup.com/api/v2"
    api_auth_scheme: Literal["raw", "bearer"] = Field(
        default="raw",
        description="How the access token is sent in the Authorization header",
    )

    # Listening server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = Field(default=3005, ge=1, le=65535)
    base_url: str = "http://localhost:3005"

    # Lifetimes
    state_ttl_seconds: int = Field(default=600, ge=1)
    authorization_code_ttl_seconds: int = Field(default=300, ge=1)
    state_sweep_interval_seconds: int = Field(default=60, ge=1)
    session_max_idle_seconds: int = Field(default=24 * 3600, ge=1)
    token_refresh_skew_seconds: int = Field(default=120, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("allowed_redirect_uris", mode="before")
    @classmethod
    def _split_redirect_uris(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [uri.strip() for uri in value.split(",") if uri.strip()]
        return value

    @property
    def oauth_config(self) -> OAuth2Config:
        return OAuth2Config(
            client_id=self.client_id,
            client_secret=self.client_secret,
            authorization_url=self.authorization_url,
            token_url=self.token_url,
            callback_path=self.callback_path,
            revocation_url=self.revocation_url,
            scope=self.scope,
        )

    @property
    def public_url(self) -> str:
        return self.base_url.rstrip("/")

    @property
    def callback_url(self) -> str:
        """Redirect URI registered with ClickUp; the callback route lives here."""
        return f"{self.public_url}{self.callback_path}"

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    def redirect_uri_allowed(self, uri: str) -> bool:
        """Return True if an MCP client may receive authorization codes at ``uri``."""
        parsed = urlparse(uri)
        if parsed.scheme not in ("http", "https") or not parsed.hostname or parsed.fragment:
            return False
        if parsed.hostname in LOOPBACK_HOSTS:
            return True
        return uri in self.allowed_redirect_uris
