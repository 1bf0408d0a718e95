"""
OAuth2 authorization broker for ClickUp.

OAuth 2.0 flow handled here:
1. Authorization Request: ``create_authorization_url`` generates a state and a
   PKCE pair, stores the pending attempt and returns the ClickUp consent URL
2. Callback: ``validate_state`` consumes the pending attempt (single use)
3. Access Token Request: ``exchange_code_for_token`` sends the code, the
   recorded redirect URI and the PKCE verifier to the token endpoint
4. Refresh / Revocation: ``refresh_token`` and ``revoke_token`` are available
   independently of a pending attempt
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

from . import pkce
from .errors import InvalidOrExpiredState
from .models import OAuth2Config, PendingAuth, PKCEPair, TokenRecord
from .state_store import StateStore
from .token_client import TokenExchangeClient

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationRequest:
    url: str
    state: str


class OAuth2Broker:
    """
    Orchestrates the authorization code flow against one authorization server.

    The state store and the token client are injected; the broker holds no
    module-level state.
    """

    def __init__(
        self,
        config: OAuth2Config,
        state_store: StateStore[PendingAuth],
        token_client: TokenExchangeClient,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.state_store = state_store
        self.token_client = token_client
        self.clock = clock

    def generate_state(self) -> str:
        return pkce.generate_state()

    def generate_pkce(self) -> PKCEPair:
        return pkce.generate_pkce_pair()

    def create_authorization_url(
        self,
        redirect_uri: str,
        state: str | None = None,
        *,
        mcp_session_id: str | None = None,
        client_id: str | None = None,
        client_redirect_uri: str | None = None,
        client_state: str | None = None,
        client_code_challenge: str | None = None,
    ) -> AuthorizationRequest:
        """
        Build the authorization server URL and persist the pending attempt.

        Args:
            redirect_uri: Redirect URI sent to the authorization server
            state: Caller-supplied state; generated when omitted
            mcp_session_id: Protocol session to bind the resulting token to
            client_id: Client id the end client presented
            client_redirect_uri: Where to send the end client after the callback
            client_state: The end client's own state, echoed back after the callback
            client_code_challenge: The end client's S256 challenge, checked when
                it redeems the code issued after the callback

        Raises:
            DuplicateState: If ``state`` is already pending
        """
        auth_state = state or self.generate_state()
        pair = self.generate_pkce()

        self.state_store.put(
            PendingAuth(
                state=auth_state,
                redirect_uri=redirect_uri,
                created_at=self.clock(),
                code_challenge=pair.challenge,
                code_verifier=pair.verifier,
                mcp_session_id=mcp_session_id,
                client_id=client_id,
                client_redirect_uri=client_redirect_uri,
                client_state=client_state,
                client_code_challenge=client_code_challenge,
            )
        )

        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": auth_state,
            "code_challenge": pair.challenge,
            "code_challenge_method": pair.method,
        }
        if self.config.scope:
            params["scope"] = self.config.scope

        url = f"{self.config.authorization_url}?{urlencode(params)}"
        logger.debug(f"Created authorization URL for state {auth_state[:8]}...")
        return AuthorizationRequest(url=url, state=auth_state)

    def validate_state(self, state: str) -> PendingAuth | None:
        """Consume a pending state. Returns None when it is invalid; never retry."""
        return self.state_store.take(state)

    async def complete_authorization(
        self, code: str, state: str
    ) -> tuple[PendingAuth, TokenRecord]:
        """
        Validate the callback state and exchange the code for a token.

        Returns:
            The consumed pending record (verifier already cleared) and the token

        Raises:
            InvalidOrExpiredState: If the state is unknown, consumed or expired
            TokenExchangeFailed: If the authorization server rejects the code
        """
        pending = self.validate_state(state)
        if pending is None:
            raise InvalidOrExpiredState()

        try:
            token = await self.token_client.exchange_code(
                code, pending.redirect_uri, pending.code_verifier
            )
        finally:
            pending.code_verifier = None

        return pending, token

    async def exchange_code_for_token(self, code: str, state: str) -> TokenRecord:
        _, token = await self.complete_authorization(code, state)
        return token

    async def refresh_token(self, refresh_token: str) -> TokenRecord:
        """Refresh grant. Callers must replace the stored token, not merge into it."""
        return await self.token_client.refresh(refresh_token)

    async def revoke_token(self, token: str) -> None:
        await self.token_client.revoke(token)

    def sweep_expired_states(self) -> int:
        return self.state_store.sweep()

    async def close(self) -> None:
        await self.token_client.close()
