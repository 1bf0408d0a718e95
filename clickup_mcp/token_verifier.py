"""Bearer token verification for the MCP endpoint.

MCP clients present the session id they received from the token endpoint as
their bearer token. A token is accepted only while its session holds a usable
ClickUp token; expiring ClickUp tokens are refreshed here, before any tool runs.
"""

import logging

from mcp.server.auth.provider import AccessToken, TokenVerifier

from .errors import AuthenticationRequired, UnknownSession
from .sessions import SessionAuthenticator

logger = logging.getLogger(__name__)


class SessionTokenVerifier(TokenVerifier):
    """Resolves bearer tokens to authenticated sessions in the registry."""

    def __init__(self, authenticator: SessionAuthenticator, client_id: str, scopes: list[str]):
        self.authenticator = authenticator
        self.client_id = client_id
        self.scopes = scopes

    async def verify_token(self, token: str) -> AccessToken | None:
        try:
            record = await self.authenticator.resolve_token(token)
        except UnknownSession:
            logger.info("Bearer token does not match any session")
            return None
        except AuthenticationRequired as e:
            logger.info(f"Session {token[:8]}... needs to authorize again: {e}")
            return None

        logger.debug(f"Session {token[:8]}... verified with ClickUp token {record.redacted()}")
        return AccessToken(
            token=token,
            client_id=self.client_id,
            scopes=record.scope.split() if record.scope else self.scopes,
        )
