"""ClickUp MCP Server Package.

OAuth2-protected MCP server for ClickUp integration.
"""

__version__ = "1.0.0"

from clickup_mcp.clickup_api import ApiResponse, ClickUpAPI
from clickup_mcp.config import ClickUpAuthSettings
from clickup_mcp.models import IssuedCode, OAuth2Config, PendingAuth, Session, TokenRecord
from clickup_mcp.oauth_broker import AuthorizationRequest, OAuth2Broker
from clickup_mcp.sessions import SessionAuthenticator, SessionRegistry
from clickup_mcp.state_store import StateStore
from clickup_mcp.token_client import TokenExchangeClient

__all__ = [
    "ApiResponse",
    "AuthorizationRequest",
    "ClickUpAPI",
    "ClickUpAuthSettings",
    "IssuedCode",
    "OAuth2Broker",
    "OAuth2Config",
    "PendingAuth",
    "Session",
    "SessionAuthenticator",
    "SessionRegistry",
    "StateStore",
    "TokenExchangeClient",
    "TokenRecord",
]
