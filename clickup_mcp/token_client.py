"""
HTTP client for the ClickUp OAuth token endpoint.

Performs the authorization-code exchange, the refresh grant and (where the
authorization server supports it) token revocation. Requests are form encoded
and carry the client credentials in the body (``client_secret_post``).
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any

import aiohttp
from pydantic import ValidationError

from .errors import TokenExchangeFailed, TokenRefreshFailed, TokenRevocationFailed, UpstreamError
from .models import OAuth2Config, TokenRecord

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 500


def _error_detail(body: str) -> str:
    """Extract a readable error description from an upstream error body."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body[:MAX_DETAIL_LENGTH]

    if isinstance(data, dict):
        detail = data.get("error_description") or data.get("err") or data.get("error")
        if detail:
            return str(detail)[:MAX_DETAIL_LENGTH]
    return body[:MAX_DETAIL_LENGTH]


class TokenExchangeClient:
    """Talks to the authorization server's token (and revocation) endpoints."""

    def __init__(
        self,
        config: OAuth2Config,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.clock = clock
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session for authorization server calls."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        return self._session

    async def close(self) -> None:
        """Clean up HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _client_credentials(self) -> dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret.get_secret_value(),
        }

    async def _post_form(
        self, url: str, data: dict[str, str], error_class: type[UpstreamError]
    ) -> tuple[int, str]:
        session = await self._get_session()
        try:
            async with session.post(url, data=data) as response:
                body = await response.text()
                return response.status, body
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"{error_class.action} request to {url} failed: {e}")
            raise error_class(None, str(e)) from e

    async def _request_token(
        self, data: dict[str, str], error_class: type[UpstreamError]
    ) -> TokenRecord:
        status, body = await self._post_form(self.config.token_url, data, error_class)

        if status < 200 or status >= 300:
            detail = _error_detail(body)
            logger.error(f"{error_class.action} failed: {status} - {detail}")
            raise error_class(status, detail)

        try:
            payload: Any = json.loads(body)
            token = TokenRecord.model_validate({**payload, "obtained_at": self.clock()})
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"{error_class.action} returned an unusable token response: {e}")
            raise error_class(status, "No access token received") from e

        return token

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> TokenRecord:
        """
        Exchange an authorization code for an access token.

        Args:
            code: Authorization code received on the callback
            redirect_uri: The exact redirect URI used in the authorization request
            code_verifier: PKCE verifier paired with the challenge that was sent

        Raises:
            TokenExchangeFailed: If the authorization server rejects the exchange
        """
        data = {
            "grant_type": "authorization_code",
            **self._client_credentials(),
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        logger.info(f"Exchanging authorization code at {self.config.token_url}")
        token = await self._request_token(data, TokenExchangeFailed)
        logger.info(f"Successfully exchanged code for access token {token.redacted()}")
        return token

    async def refresh(self, refresh_token: str) -> TokenRecord:
        """
        Obtain a new access token with the refresh grant.

        Raises:
            TokenRefreshFailed: If the authorization server rejects the refresh
        """
        data = {
            "grant_type": "refresh_token",
            **self._client_credentials(),
            "refresh_token": refresh_token,
        }
        token = await self._request_token(data, TokenRefreshFailed)
        logger.info(f"Successfully refreshed token, new access token {token.redacted()}")
        return token

    async def revoke(self, token: str, token_type_hint: str = "access_token") -> None:
        """
        Revoke a token at the authorization server (RFC 7009).

        ClickUp does not expose a revocation endpoint; without a configured
        ``revocation_url`` this only logs.

        Raises:
            TokenRevocationFailed: If the revocation request is rejected
        """
        if not self.config.revocation_url:
            logger.info("Token revocation not supported by the authorization server; skipping")
            return

        data = {"token": token, "token_type_hint": token_type_hint, **self._client_credentials()}
        status, body = await self._post_form(
            self.config.revocation_url, data, TokenRevocationFailed
        )
        if status < 200 or status >= 300:
            detail = _error_detail(body)
            logger.warning(f"Token revocation failed: {status} - {detail}")
            raise TokenRevocationFailed(status, detail)

        logger.info(f"Revoked token {token[:6]}...")
