"""Pytest configuration and fixtures for tests."""

import os

# Required settings for ClickUpAuthSettings; set before any imports
os.environ.setdefault("CLICKUP_CLIENT_ID", "test-client-id")
os.environ.setdefault("CLICKUP_CLIENT_SECRET", "test-client-secret")

import pytest

from clickup_mcp.models import OAuth2Config, TokenRecord
from clickup_mcp.oauth_broker import OAuth2Broker
from clickup_mcp.sessions import SessionRegistry
from clickup_mcp.state_store import StateStore


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenClient:
    """Stands in for the authorization server's token endpoint."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.exchange_calls: list[tuple[str, str, str | None]] = []
        self.refresh_calls: list[str] = []
        self.revoke_calls: list[str] = []
        self.exchange_result: TokenRecord | Exception = TokenRecord(
            access_token="access-1", refresh_token="refresh-1", expires_in=3600
        )
        self.refresh_result: TokenRecord | Exception = TokenRecord(
            access_token="access-2", refresh_token="refresh-2", expires_in=3600
        )
        self.revoke_error: Exception | None = None
        self.closed = False

    def _stamp(self, result: TokenRecord | Exception) -> TokenRecord:
        if isinstance(result, Exception):
            raise result
        return result.model_copy(update={"obtained_at": self.clock()})

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> TokenRecord:
        self.exchange_calls.append((code, redirect_uri, code_verifier))
        return self._stamp(self.exchange_result)

    async def refresh(self, refresh_token: str) -> TokenRecord:
        self.refresh_calls.append(refresh_token)
        return self._stamp(self.refresh_result)

    async def revoke(self, token: str, token_type_hint: str = "access_token") -> None:
        self.revoke_calls.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oauth_config() -> OAuth2Config:
    return OAuth2Config(
        client_id="test-client-id",
        client_secret="test-client-secret",
        authorization_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        callback_path="/callback",
        scope="read write",
    )


@pytest.fixture
def token_client(clock: FakeClock) -> FakeTokenClient:
    return FakeTokenClient(clock)


@pytest.fixture
def state_store(clock: FakeClock) -> StateStore:
    return StateStore(ttl_seconds=600, clock=clock)


@pytest.fixture
def broker(
    oauth_config: OAuth2Config,
    state_store: StateStore,
    token_client: FakeTokenClient,
    clock: FakeClock,
) -> OAuth2Broker:
    return OAuth2Broker(oauth_config, state_store, token_client, clock=clock)  # type: ignore[arg-type]


@pytest.fixture
def registry(clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(clock=clock, max_idle_seconds=3600)


@pytest.fixture
def make_token(clock: FakeClock):
    def _make(access_token: str = "access-1", **kwargs) -> TokenRecord:
        kwargs.setdefault("refresh_token", "refresh-1")
        kwargs.setdefault("expires_in", 3600)
        return TokenRecord(access_token=access_token, obtained_at=clock(), **kwargs)

    return _make
