"""
Protocol session registry and token resolution.

A session is created when an authorization completes and outlives the OAuth
attempt that produced it. Its id is the bearer credential MCP clients present;
the ClickUp token attached to it is replaced on every refresh.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable

from .errors import AuthenticationRequired, TokenRefreshFailed, TokenRevocationFailed, UnknownSession
from .models import Session, TokenRecord
from .oauth_broker import OAuth2Broker

logger = logging.getLogger(__name__)

DEFAULT_MAX_IDLE = 24 * 3600


class SessionRegistry:
    """In-memory map of protocol session ids to sessions."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_idle_seconds: float = DEFAULT_MAX_IDLE,
    ):
        self.clock = clock
        self.max_idle_seconds = max_idle_seconds
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create_session(self) -> str:
        now = self.clock()
        session_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[session_id] = Session(id=session_id, created_at=now, last_used=now)
        logger.info(f"Created session {session_id[:8]}...")
        return session_id

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def attach_token(
        self,
        session_id: str,
        token: TokenRecord,
        *,
        workspace_id: str | None = None,
        user_id: str | None = None,
        expected_version: int | None = None,
    ) -> bool:
        """
        Replace the session's token.

        Args:
            session_id: Target session
            token: New token; replaces the previous one in full
            workspace_id: Optional workspace to record on the session
            user_id: Optional user to record on the session
            expected_version: When set, only apply the write if the session's
                token version still matches (refreshes pass the version they
                started from)

        Returns:
            True if the token was attached, False if the write was stale

        Raises:
            UnknownSession: If the session id is not registered
        """
        with self._lock:
            session = self._require(session_id)
            if expected_version is not None and session.token_version != expected_version:
                logger.info(
                    f"Discarding stale token write for session {session_id[:8]}...: "
                    f"version {expected_version} != {session.token_version}"
                )
                return False

            session.token = token
            session.token_version += 1
            if workspace_id is not None:
                session.workspace_id = workspace_id
            if user_id is not None:
                session.user_id = user_id

        logger.info(f"Attached token {token.redacted()} to session {session_id[:8]}...")
        return True

    def clear_token(self, session_id: str, expected_version: int | None = None) -> bool:
        """Drop the session's token, making it unauthenticated."""
        with self._lock:
            session = self._require(session_id)
            if expected_version is not None and session.token_version != expected_version:
                return False
            session.token = None
            session.token_version += 1
        logger.info(f"Cleared token for session {session_id[:8]}...")
        return True

    def get(self, session_id: str) -> Session:
        """
        Look up a session and mark it as used.

        Raises:
            UnknownSession: If the session id is not registered
        """
        with self._lock:
            session = self._require(session_id)
            session.last_used = max(session.last_used, self.clock())
        return session

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session:
            logger.info(f"Removed session {session_id[:8]}...")
        return session

    def evict(self, now: float | None = None, max_idle: float | None = None) -> list[str]:
        """
        Remove sessions idle for longer than ``max_idle`` seconds.

        Returns:
            Ids of the evicted sessions
        """
        if now is None:
            now = self.clock()
        if max_idle is None:
            max_idle = self.max_idle_seconds

        with self._lock:
            idle = [sid for sid, s in self._sessions.items() if now - s.last_used > max_idle]
            for sid in idle:
                del self._sessions[sid]

        if idle:
            logger.info(f"Evicted {len(idle)} idle sessions")
        return idle


class SessionAuthenticator:
    """Resolves a session to a usable access token, refreshing when needed."""

    def __init__(
        self,
        registry: SessionRegistry,
        broker: OAuth2Broker,
        refresh_skew_seconds: float = 120,
    ):
        self.registry = registry
        self.broker = broker
        self.refresh_skew_seconds = refresh_skew_seconds

    async def resolve_token(self, session_id: str) -> TokenRecord:
        """
        Return the session's token, refreshing it first if it is about to expire.

        Raises:
            UnknownSession: If the session id is not registered
            AuthenticationRequired: If the session has no token or refresh failed
        """
        session = self.registry.get(session_id)
        token = session.token
        if token is None:
            raise AuthenticationRequired()

        if not token.is_expiring(self.registry.clock(), self.refresh_skew_seconds):
            return token

        version = session.token_version
        if not token.refresh_token:
            if self.registry.clear_token(session_id, expected_version=version):
                logger.info(
                    f"Token for session {session_id[:8]}... expired and cannot be refreshed"
                )
                raise AuthenticationRequired("Access token expired")
            return self._current_token(session_id)

        try:
            refreshed = await self.broker.refresh_token(token.refresh_token)
        except TokenRefreshFailed as e:
            if self.registry.clear_token(session_id, expected_version=version):
                logger.error(
                    f"Refresh failed for session {session_id[:8]}...: {e.status} - {e.detail}"
                )
                raise AuthenticationRequired("Access token refresh failed") from e
            # A concurrent refresh or re-authorization already replaced the token
            logger.info(f"Refresh for session {session_id[:8]}... superseded: {e.status}")
            return self._current_token(session_id)

        if self.registry.attach_token(session_id, refreshed, expected_version=version):
            return refreshed

        # A newer token was attached while the refresh was in flight
        return self._current_token(session_id)

    def _current_token(self, session_id: str) -> TokenRecord:
        token = self.registry.get(session_id).token
        if token is None:
            raise AuthenticationRequired()
        return token

    async def logout(self, session_id: str) -> None:
        """Clear the session's token locally, then revoke it upstream best-effort."""
        session = self.registry.get(session_id)
        token = session.token
        self.registry.clear_token(session_id)
        if token is None:
            return

        try:
            await self.broker.revoke_token(token.access_token)
        except TokenRevocationFailed as e:
            logger.warning(
                f"Revocation failed for session {session_id[:8]}...: {e.status} - {e.detail}"
            )
