"""Unit tests for SessionRegistry and SessionAuthenticator."""

import asyncio

import pytest

from clickup_mcp.errors import (
    AuthenticationRequired,
    TokenRefreshFailed,
    TokenRevocationFailed,
    UnknownSession,
)
from clickup_mcp.sessions import SessionAuthenticator, SessionRegistry


class TestSessionRegistry:
    def test_create_session_is_unauthenticated(self, registry: SessionRegistry, clock) -> None:
        session_id = registry.create_session()

        session = registry.get(session_id)
        assert session.id == session_id
        assert session.token is None
        assert session.is_authenticated is False
        assert session.created_at == clock()

    def test_session_ids_are_unique(self, registry: SessionRegistry) -> None:
        ids = {registry.create_session() for _ in range(50)}
        assert len(ids) == 50

    def test_attach_then_get_returns_token(self, registry: SessionRegistry, make_token) -> None:
        session_id = registry.create_session()
        token = make_token("access-1")

        assert registry.attach_token(session_id, token, workspace_id="ws-1", user_id="42")

        session = registry.get(session_id)
        assert session.token == token
        assert session.workspace_id == "ws-1"
        assert session.user_id == "42"

    def test_attach_replaces_token_in_full(self, registry: SessionRegistry, make_token) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1", refresh_token="refresh-1"))

        registry.attach_token(session_id, make_token("access-2", refresh_token=None))

        token = registry.get(session_id).token
        assert token is not None
        assert token.access_token == "access-2"
        # The previous refresh token is not merged into the new record
        assert token.refresh_token is None

    def test_attach_unknown_session(self, registry: SessionRegistry, make_token) -> None:
        with pytest.raises(UnknownSession):
            registry.attach_token("nope", make_token())

    def test_get_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(UnknownSession):
            registry.get("nope")

    def test_stale_write_rejected(self, registry: SessionRegistry, make_token) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1"))
        version = registry.get(session_id).token_version

        # A later authorization completes while a refresh is in flight
        registry.attach_token(session_id, make_token("reauthorized"))
        applied = registry.attach_token(
            session_id, make_token("refreshed"), expected_version=version
        )

        assert applied is False
        token = registry.get(session_id).token
        assert token is not None
        assert token.access_token == "reauthorized"

    def test_get_touches_last_used(self, registry: SessionRegistry, clock) -> None:
        session_id = registry.create_session()
        clock.advance(30)

        assert registry.get(session_id).last_used == clock()

    def test_last_used_never_decreases(self, registry: SessionRegistry, clock) -> None:
        session_id = registry.create_session()
        clock.advance(30)
        registry.get(session_id)
        touched = clock()

        clock.advance(-10)
        assert registry.get(session_id).last_used == touched

    def test_clear_token(self, registry: SessionRegistry, make_token) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token())

        assert registry.clear_token(session_id)
        assert registry.get(session_id).is_authenticated is False

    def test_evict_idle_sessions(self, registry: SessionRegistry, clock) -> None:
        # Only sessions idle longer than max_idle_seconds are dropped
        idle = registry.create_session()
        clock.advance(3000)
        active = registry.create_session()
        clock.advance(700)

        evicted = registry.evict()

        assert evicted == [idle]
        assert idle not in registry
        assert active in registry

    def test_evict_with_explicit_threshold(self, registry: SessionRegistry, clock) -> None:
        session_id = registry.create_session()
        assert registry.evict(now=clock() + 11, max_idle=10) == [session_id]

    def test_remove(self, registry: SessionRegistry) -> None:
        session_id = registry.create_session()
        assert registry.remove(session_id) is not None
        assert registry.remove(session_id) is None

    def test_public_dict_redacts_token(self, registry: SessionRegistry, make_token) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("secret-access-token"))

        public = registry.get(session_id).as_public_dict()

        assert "secret-access-token" not in str(public)
        assert public["authenticated"] is True


@pytest.fixture
def authenticator(registry: SessionRegistry, broker) -> SessionAuthenticator:
    return SessionAuthenticator(registry, broker, refresh_skew_seconds=120)


class TestSessionAuthenticator:
    @pytest.mark.asyncio
    async def test_returns_fresh_token(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1"))

        token = await authenticator.resolve_token(session_id)

        assert token.access_token == "access-1"
        assert token_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_unauthenticated_session(
        self, authenticator: SessionAuthenticator, registry
    ) -> None:
        session_id = registry.create_session()
        with pytest.raises(AuthenticationRequired):
            await authenticator.resolve_token(session_id)

    @pytest.mark.asyncio
    async def test_unknown_session(self, authenticator: SessionAuthenticator) -> None:
        with pytest.raises(UnknownSession):
            await authenticator.resolve_token("nope")

    @pytest.mark.asyncio
    async def test_touches_session(
        self, authenticator: SessionAuthenticator, registry, make_token, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token())
        clock.advance(60)

        await authenticator.resolve_token(session_id)

        assert registry.get(session_id).last_used == clock()

    @pytest.mark.asyncio
    async def test_refreshes_expiring_token(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1", expires_in=3600))
        clock.advance(3600 - 60)

        token = await authenticator.resolve_token(session_id)

        assert token.access_token == "access-2"
        assert token_client.refresh_calls == ["refresh-1"]
        stored = registry.get(session_id).token
        assert stored is not None
        assert stored.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_refresh_failure_clears_token(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1", expires_in=60))
        token_client.refresh_result = TokenRefreshFailed(400, "invalid_grant")
        clock.advance(120)

        with pytest.raises(AuthenticationRequired):
            await authenticator.resolve_token(session_id)

        assert registry.get(session_id).is_authenticated is False

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token(expires_in=60, refresh_token=None))
        clock.advance(120)

        with pytest.raises(AuthenticationRequired):
            await authenticator.resolve_token(session_id)

        assert token_client.refresh_calls == []
        assert registry.get(session_id).is_authenticated is False

    @pytest.mark.asyncio
    async def test_token_without_expiry_never_refreshed(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token(expires_in=None))
        clock.advance(10 * 365 * 24 * 3600)

        await authenticator.resolve_token(session_id)

        assert token_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_logout_clears_and_revokes(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1"))

        await authenticator.logout(session_id)

        assert token_client.revoke_calls == ["access-1"]
        assert registry.get(session_id).is_authenticated is False

    @pytest.mark.asyncio
    async def test_logout_survives_revocation_failure(
        self, authenticator: SessionAuthenticator, registry, make_token, token_client
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1"))
        token_client.revoke_error = TokenRevocationFailed(503, "unavailable")

        await authenticator.logout(session_id)

        assert registry.get(session_id).is_authenticated is False

    @pytest.mark.asyncio
    async def test_stale_refresh_keeps_newer_token(
        self, authenticator: SessionAuthenticator, registry, broker, make_token, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1", expires_in=60))
        clock.advance(120)
        refresh = broker.refresh_token

        async def refresh_while_reauthorized(refresh_token: str):
            registry.attach_token(session_id, make_token("reauthorized"))
            return await refresh(refresh_token)

        broker.refresh_token = refresh_while_reauthorized

        token = await authenticator.resolve_token(session_id)

        assert token.access_token == "reauthorized"
        stored = registry.get(session_id).token
        assert stored is not None
        assert stored.access_token == "reauthorized"

    @pytest.mark.asyncio
    async def test_concurrent_refresh_failure_keeps_winning_token(
        self, authenticator: SessionAuthenticator, registry, broker, make_token, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token("access-1", expires_in=60))
        clock.advance(120)
        # The upstream rotates refresh tokens, so only the first refresh succeeds
        outcomes: list = [
            make_token("access-2", refresh_token="refresh-2"),
            TokenRefreshFailed(400, "invalid_grant"),
        ]

        async def rotating_refresh(refresh_token: str):
            await asyncio.sleep(0)
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        broker.refresh_token = rotating_refresh

        first, second = await asyncio.gather(
            authenticator.resolve_token(session_id),
            authenticator.resolve_token(session_id),
        )

        assert first.access_token == "access-2"
        assert second.access_token == "access-2"
        assert registry.get(session_id).is_authenticated is True

    @pytest.mark.asyncio
    async def test_concurrent_expiry_without_refresh_keeps_winning_token(
        self, authenticator: SessionAuthenticator, registry, make_token, clock
    ) -> None:
        session_id = registry.create_session()
        registry.attach_token(session_id, make_token(expires_in=60, refresh_token=None))
        clock.advance(120)
        version = registry.get(session_id).token_version
        clear_token = registry.clear_token

        def clear_after_reauthorization(sid: str, expected_version: int | None = None) -> bool:
            registry.attach_token(sid, make_token("reauthorized"))
            return clear_token(sid, expected_version=expected_version)

        registry.clear_token = clear_after_reauthorization  # type: ignore[method-assign]

        token = await authenticator.resolve_token(session_id)

        assert token.access_token == "reauthorized"
        assert registry.get(session_id).token_version == version + 1
