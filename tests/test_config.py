"""Unit tests for ClickUpAuthSettings."""

import pytest

from clickup_mcp.config import ClickUpAuthSettings

LISTED_REDIRECT = "https://claude.ai/api/mcp/auth_callback"


@pytest.fixture
def settings() -> ClickUpAuthSettings:
    return ClickUpAuthSettings(
        client_id="test-client-id",
        client_secret="test-client-secret",
        base_url="https://mcp.example.com/",
        allowed_redirect_uris=[LISTED_REDIRECT],
    )


class TestRedirectUriAllowed:
    @pytest.mark.parametrize(
        "uri",
        [
            "http://localhost:8765/callback",
            "http://127.0.0.1:33418/cb",
            "http://[::1]:9000/cb",
            LISTED_REDIRECT,
        ],
    )
    def test_allowed(self, settings: ClickUpAuthSettings, uri: str) -> None:
        assert settings.redirect_uri_allowed(uri)

    @pytest.mark.parametrize(
        "uri",
        [
            "https://attacker.example/steal",
            "https://localhost.attacker.example/cb",
            "http://localhost@attacker.example/cb",
            f"{LISTED_REDIRECT}/extra",
            "javascript:alert(1)",
            "http://localhost:8765/cb#fragment",
            "",
        ],
    )
    def test_rejected(self, settings: ClickUpAuthSettings, uri: str) -> None:
        assert not settings.redirect_uri_allowed(uri)


class TestEnvironment:
    def test_comma_separated_redirect_uris(self, monkeypatch) -> None:
        monkeypatch.setenv(
            "CLICKUP_ALLOWED_REDIRECT_URIS", f"{LISTED_REDIRECT}, https://other.example/cb,"
        )

        settings = ClickUpAuthSettings()

        assert settings.allowed_redirect_uris == [LISTED_REDIRECT, "https://other.example/cb"]

    def test_no_redirect_uris_by_default(self, monkeypatch) -> None:
        monkeypatch.delenv("CLICKUP_ALLOWED_REDIRECT_URIS", raising=False)
        monkeypatch.setitem(ClickUpAuthSettings.model_config, "env_file", None)

        assert ClickUpAuthSettings().allowed_redirect_uris == []

    def test_derived_urls(self, settings: ClickUpAuthSettings) -> None:
        assert settings.public_url == "https://mcp.example.com"
        assert settings.callback_url == "https://mcp.example.com/oauth/callback"

    def test_scopes(self) -> None:
        settings = ClickUpAuthSettings(scope="read write")
        assert settings.scopes == ["read", "write"]
        assert ClickUpAuthSettings(scope=None).scopes == []
