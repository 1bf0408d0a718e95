import asyncio
import contextlib
import html
import json
import logging
import secrets
import sys
import time
from collections.abc import AsyncIterator, Callable
from operator import attrgetter
from typing import Any
from urllib.parse import urlparse

import click
import uvicorn
from dotenv import load_dotenv
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.auth.provider import AccessToken, construct_redirect_uri
from mcp.server.auth.settings import AuthSettings
from mcp.server.fastmcp.server import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from pydantic import AnyHttpUrl, ValidationError
from starlette.applications import Starlette
from starlette.datastructures import FormData
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from . import __version__, pkce
from .clickup_api import ClickUpAPI
from .config import ClickUpAuthSettings
from .errors import (
    AuthenticationRequired,
    DuplicateState,
    InvalidOrExpiredState,
    TokenExchangeFailed,
    UnknownSession,
)
from .models import IssuedCode, TokenRecord
from .oauth_broker import OAuth2Broker
from .sessions import SessionAuthenticator, SessionRegistry
from .state_store import StateStore
from .token_client import TokenExchangeClient
from .token_verifier import SessionTokenVerifier
from .tools import ClientProvider, register_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "clickup-mcp-oauth"
SESSION_HEADER = "mcp-session-id"
GRANT_TYPES = ["authorization_code", "refresh_token"]

ApiFactory = Callable[[TokenRecord], ClickUpAPI]


class NormalizePathMiddleware:
    """ASGI middleware to normalize paths so /mcp and /mcp/ work identically.

    Strips trailing slashes from all paths (except root) before routing.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] == "http":
            path = scope.get("path", "/")
            if path != "/" and path.endswith("/"):
                scope = dict(scope)
                scope["path"] = path.rstrip("/")
        await self.app(scope, receive, send)


class RequestLoggingMiddleware:
    """ASGI middleware logging each request and its response status.

    Query strings are not logged: they carry authorization codes and states.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")
        headers = {k.decode().lower(): v.decode() for k, v in scope.get("headers", [])}
        logger.info(
            f"=== Incoming Request: {method} {path} "
            f"(transport session={headers.get(SESSION_HEADER, 'NOT SET')}, "
            f"auth={'present' if 'authorization' in headers else 'absent'}) ==="
        )

        async def send_wrapper(message: dict[str, Any]) -> Any:
            if message["type"] == "http.response.start":
                logger.info(f"=== Response: {message.get('status')} for {method} {path} ===")
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _html_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""
        <html>
        <body>
            <h1>{html.escape(title)}</h1>
            <p>{html.escape(message)}</p>
            <p>You can close this window and return to your client.</p>
        </body>
        </html>
        """,
        status_code=status_code,
    )


def _oauth_error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description}, status_code=status_code
    )


def _form_value(form: FormData, name: str) -> str | None:
    value = form.get(name)
    return value if isinstance(value, str) and value else None


def session_client_provider(
    registry: SessionRegistry,
    api_factory: ApiFactory,
    access_token: Callable[[], AccessToken | None] = get_access_token,
) -> ClientProvider:
    """
    Build the callable tools use to reach ClickUp for the current request.

    The bearer token verified for the request is the session id; the session's
    ClickUp token was refreshed during verification.
    """

    def client_for_request() -> ClickUpAPI:
        verified = access_token()
        if verified is None:
            raise AuthenticationRequired()
        token = registry.get(verified.token).token
        if token is None:
            raise AuthenticationRequired()
        return api_factory(token)

    return client_for_request


def housekeeping_pass(
    broker: OAuth2Broker, registry: SessionRegistry, issued_codes: StateStore[IssuedCode]
) -> tuple[int, int, int]:
    """Sweep expired states and codes, then evict idle sessions, once."""
    expired_states = broker.sweep_expired_states()
    expired_codes = issued_codes.sweep()
    evicted_sessions = len(registry.evict())
    return expired_states, expired_codes, evicted_sessions


async def run_housekeeping(
    broker: OAuth2Broker,
    registry: SessionRegistry,
    issued_codes: StateStore[IssuedCode],
    interval_seconds: float,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        housekeeping_pass(broker, registry, issued_codes)


def create_mcp_server(
    settings: ClickUpAuthSettings,
    *,
    broker: OAuth2Broker,
    registry: SessionRegistry,
    issued_codes: StateStore[IssuedCode],
    api_factory: ApiFactory,
    clock: Callable[[], float] = time.time,
) -> FastMCP:
    """
    Create the FastMCP server with its OAuth routes and ClickUp tools.

    This server:
    1. Sends users to ClickUp consent via /authorize
    2. Completes the authorization code flow on the callback path, then hands
       MCP clients a one-time code for the token endpoint
    3. Issues session ids as bearer tokens on /token and serves the ClickUp
       tools on /mcp to requests carrying one
    """
    public_url = settings.public_url
    resource_url = f"{public_url}/mcp"
    authenticator = SessionAuthenticator(registry, broker, settings.token_refresh_skew_seconds)
    token_verifier = SessionTokenVerifier(authenticator, settings.client_id, settings.scopes)

    # Extract hostname from the public URL for transport security
    allowed_host = urlparse(public_url).netloc

    app = FastMCP(
        name=SERVER_NAME,
        instructions="ClickUp workspaces, lists and tasks of the user who authorized this session",
        host=settings.host,
        port=settings.port,
        token_verifier=token_verifier,
        auth=AuthSettings(
            issuer_url=AnyHttpUrl(public_url),
            resource_server_url=AnyHttpUrl(resource_url),
        ),
        transport_security=TransportSecuritySettings(
            allowed_hosts=[allowed_host],
        ),
    )
    register_tools(app, session_client_provider(registry, api_factory))

    def token_response(session_id: str) -> JSONResponse:
        body: dict[str, Any] = {
            "access_token": session_id,
            "token_type": "Bearer",
            "refresh_token": session_id,
        }
        if settings.scope:
            body["scope"] = settings.scope
        return JSONResponse(body, headers={"Cache-Control": "no-store"})

    async def authorize(request: Request) -> Response:
        """Redirect the user to ClickUp's consent page."""
        params = request.query_params
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        code_challenge = params.get("code_challenge")

        # An MCP client starting the flow; a bare browser visit sends neither
        if client_id is not None or redirect_uri is not None:
            if client_id != settings.client_id:
                return _oauth_error("invalid_client", "Unknown client_id")
            if not redirect_uri:
                return _oauth_error("invalid_request", "redirect_uri is required")
            if not settings.redirect_uri_allowed(redirect_uri):
                logger.warning(f"Rejected authorization request for redirect_uri {redirect_uri}")
                return _oauth_error("invalid_request", "redirect_uri is not allowed")
            if params.get("response_type", "code") != "code":
                return _oauth_error(
                    "unsupported_response_type", "Only response_type=code is supported"
                )
            if not code_challenge:
                return _oauth_error("invalid_request", "code_challenge is required")
            if params.get("code_challenge_method", "S256") != "S256":
                return _oauth_error("invalid_request", "code_challenge_method must be S256")

        try:
            auth_request = broker.create_authorization_url(
                settings.callback_url,
                client_id=client_id,
                client_redirect_uri=redirect_uri,
                client_state=params.get("state"),
                client_code_challenge=code_challenge if redirect_uri else None,
            )
        except DuplicateState:
            return _oauth_error("server_error", "Could not start authorization", status_code=500)

        logger.info(
            f"Authorization request: client={'mcp' if redirect_uri else 'browser'}, "
            f"state={auth_request.state[:8]}..."
        )
        return RedirectResponse(url=auth_request.url, status_code=302)

    async def callback(request: Request) -> Response:
        """Handle the OAuth callback from ClickUp."""
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        error = request.query_params.get("error")

        if error:
            logger.error(f"OAuth callback error: {error}")
            return _html_page("Authorization Failed", f"Error: {error}", status_code=400)

        if not code or not state:
            logger.error("Missing code or state in OAuth callback")
            return _html_page(
                "Authorization Failed", "Missing code or state parameter", status_code=400
            )

        try:
            pending, token = await broker.complete_authorization(code, state)
        except InvalidOrExpiredState:
            logger.warning("OAuth callback with invalid or expired state")
            return _html_page(
                "Authorization Failed",
                "This authorization link is invalid or has expired. Please start again.",
                status_code=400,
            )
        except TokenExchangeFailed as e:
            logger.error(f"Token exchange failed: status={e.status} detail={e.detail}")
            return _html_page(
                "Authorization Failed",
                "ClickUp rejected the authorization. Please start again.",
                status_code=502,
            )

        if pending.client_redirect_uri and pending.client_id:
            issued = IssuedCode(
                code=pkce.generate_state(),
                client_id=pending.client_id,
                redirect_uri=pending.client_redirect_uri,
                created_at=clock(),
                token=token,
                code_challenge=pending.client_code_challenge,
            )
            issued_codes.put(issued)
            redirect = construct_redirect_uri(
                pending.client_redirect_uri, code=issued.code, state=pending.client_state
            )
            return RedirectResponse(url=redirect, status_code=302)

        session_id = registry.create_session()
        registry.attach_token(session_id, token)
        return _html_page(
            "Authorization Successful!",
            f"Use this bearer token to connect to {resource_url}: {session_id}",
        )

    async def token_endpoint(request: Request) -> JSONResponse:
        """Token endpoint for MCP clients. Access tokens are session ids."""
        form = await request.form()
        grant_type = _form_value(form, "grant_type")

        if _form_value(form, "client_id") != settings.client_id:
            return _oauth_error("invalid_client", "Unknown client_id", status_code=401)

        if grant_type == "authorization_code":
            code = _form_value(form, "code")
            issued = issued_codes.take(code) if code else None
            if issued is None:
                return _oauth_error("invalid_grant", "Invalid or expired authorization code")
            if _form_value(form, "redirect_uri") != issued.redirect_uri:
                return _oauth_error("invalid_grant", "redirect_uri does not match")
            if issued.code_challenge:
                verifier = _form_value(form, "code_verifier")
                if not verifier or not secrets.compare_digest(
                    pkce.compute_code_challenge(verifier), issued.code_challenge
                ):
                    logger.warning("PKCE verification failed for an issued code")
                    return _oauth_error("invalid_grant", "PKCE verification failed")

            session_id = registry.create_session()
            registry.attach_token(session_id, issued.token)
            return token_response(session_id)

        if grant_type == "refresh_token":
            session_id = _form_value(form, "refresh_token")
            if not session_id:
                return _oauth_error("invalid_request", "refresh_token is required")
            try:
                await authenticator.resolve_token(session_id)
            except (UnknownSession, AuthenticationRequired) as e:
                logger.info(f"Refresh grant rejected: {e}")
                return _oauth_error("invalid_grant", "Session expired; authorize again")
            return token_response(session_id)

        return _oauth_error("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

    async def revoke_endpoint(request: Request) -> Response:
        """Token revocation (RFC 7009): ends the session behind the token."""
        form = await request.form()
        if _form_value(form, "client_id") != settings.client_id:
            return _oauth_error("invalid_client", "Unknown client_id", status_code=401)

        session_id = _form_value(form, "token")
        if session_id and session_id in registry:
            await authenticator.logout(session_id)
            registry.remove(session_id)
        return Response(status_code=200)

    async def register_client(request: Request) -> JSONResponse:
        """
        Dynamic client registration (RFC 7591).

        Every client shares the server's ClickUp client id; registration only
        checks that the client's redirect URIs are allowed.
        """
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _oauth_error("invalid_request", "Body must be JSON")

        redirect_uris = body.get("redirect_uris") if isinstance(body, dict) else None
        if (
            not isinstance(redirect_uris, list)
            or not redirect_uris
            or not all(isinstance(uri, str) for uri in redirect_uris)
        ):
            return _oauth_error("invalid_request", "redirect_uris is required")

        rejected = [uri for uri in redirect_uris if not settings.redirect_uri_allowed(uri)]
        if rejected:
            logger.warning(f"Rejected client registration for redirect_uris {rejected}")
            return _oauth_error("invalid_redirect_uri", "redirect_uris are not allowed")

        logger.info(f"Registered client {body.get('client_name', 'unnamed')}")
        return JSONResponse(
            {
                "client_id": settings.client_id,
                "client_name": body.get("client_name"),
                "redirect_uris": redirect_uris,
                "token_endpoint_auth_method": "none",
                "grant_types": GRANT_TYPES,
                "response_types": ["code"],
                "scope": settings.scope,
            },
            status_code=201,
        )

    for path in ("/authorize", "/oauth/authorize"):
        app.custom_route(path, methods=["GET"])(authorize)
    for path in sorted({settings.callback_path, "/callback"}):
        app.custom_route(path, methods=["GET"])(callback)
    for path in ("/token", "/oauth/token"):
        app.custom_route(path, methods=["POST"])(token_endpoint)
    for path in ("/revoke", "/oauth/revoke"):
        app.custom_route(path, methods=["POST"])(revoke_endpoint)
    for path in ("/register", "/oauth/register"):
        app.custom_route(path, methods=["POST"])(register_client)

    def authorization_server_metadata() -> dict[str, Any]:
        return {
            "issuer": public_url,
            "authorization_endpoint": f"{public_url}/oauth/authorize",
            "token_endpoint": f"{public_url}/oauth/token",
            "registration_endpoint": f"{public_url}/oauth/register",
            "revocation_endpoint": f"{public_url}/oauth/revoke",
            "scopes_supported": settings.scopes,
            "response_types_supported": ["code"],
            "grant_types_supported": GRANT_TYPES,
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": ["S256"],
        }

    @app.custom_route("/.well-known/oauth-authorization-server", methods=["GET"])
    async def oauth_authorization_server(request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        return JSONResponse(authorization_server_metadata())

    @app.custom_route("/.well-known/oauth-authorization-server/mcp", methods=["GET"])
    async def oauth_authorization_server_for_mcp(request: Request) -> JSONResponse:
        """Path-suffixed variant some MCP clients request first"""
        return JSONResponse(authorization_server_metadata())

    @app.custom_route("/.well-known/mcp_oauth_metadata", methods=["GET"])
    async def mcp_oauth_metadata(request: Request) -> JSONResponse:
        metadata = authorization_server_metadata()
        return JSONResponse(
            {
                "authorization_endpoint": metadata["authorization_endpoint"],
                "token_endpoint": metadata["token_endpoint"],
                "client_id": settings.client_id,
                "scopes_supported": metadata["scopes_supported"],
                "response_types_supported": metadata["response_types_supported"],
                "grant_types_supported": metadata["grant_types_supported"],
                "code_challenge_methods_supported": metadata["code_challenge_methods_supported"],
                "resource": resource_url,
            }
        )

    async def oauth_protected_resource(request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        return JSONResponse(
            {
                "resource": resource_url,
                "authorization_servers": [public_url],
                "scopes_supported": settings.scopes,
                "bearer_methods_supported": ["header"],
            }
        )

    for path in (
        "/.well-known/oauth-protected-resource",
        "/.well-known/oauth-protected-resource/mcp",
        "/mcp/.well-known/oauth-protected-resource",
    ):
        app.custom_route(path, methods=["GET"])(oauth_protected_resource)

    @app.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "server": SERVER_NAME,
                "version": __version__,
                "pending_authorizations": len(broker.state_store),
                "issued_codes": len(issued_codes),
                "sessions": len(registry),
            }
        )

    return app


def create_app(
    settings: ClickUpAuthSettings,
    *,
    broker: OAuth2Broker | None = None,
    registry: SessionRegistry | None = None,
    api_factory: ApiFactory | None = None,
    clock: Callable[[], float] = time.time,
) -> Starlette:
    """
    Create the ASGI application: the FastMCP streamable HTTP app plus CORS,
    request logging and a housekeeping task for its lifetime.
    """
    if broker is None:
        oauth_config = settings.oauth_config
        broker = OAuth2Broker(
            oauth_config,
            StateStore(settings.state_ttl_seconds, clock=clock),
            TokenExchangeClient(oauth_config, settings.request_timeout_seconds, clock=clock),
            clock=clock,
        )
    if registry is None:
        registry = SessionRegistry(clock=clock, max_idle_seconds=settings.session_max_idle_seconds)
    if api_factory is None:

        def api_factory(token: TokenRecord) -> ClickUpAPI:
            return ClickUpAPI(
                token.access_token,
                base_url=settings.api_base_url,
                auth_scheme=settings.api_auth_scheme,
                timeout=settings.request_timeout_seconds,
            )

    issued_codes: StateStore[IssuedCode] = StateStore(
        settings.authorization_code_ttl_seconds, clock=clock, key=attrgetter("code"), kind="code"
    )
    mcp_server = create_mcp_server(
        settings,
        broker=broker,
        registry=registry,
        issued_codes=issued_codes,
        api_factory=api_factory,
        clock=clock,
    )

    # Get the Starlette app (streamable_http_app is a method, not a property)
    app = mcp_server.streamable_http_app()
    session_manager_lifespan = app.router.lifespan_context

    @contextlib.asynccontextmanager
    async def lifespan(starlette_app: Starlette) -> AsyncIterator[None]:
        async with session_manager_lifespan(starlette_app):
            task = asyncio.create_task(
                run_housekeeping(
                    broker, registry, issued_codes, settings.state_sweep_interval_seconds
                )
            )
            try:
                yield
            finally:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                await broker.close()

    app.router.lifespan_context = lifespan
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "MCP-Protocol-Version", "WWW-Authenticate"],
    )

    app.state.settings = settings
    app.state.broker = broker
    app.state.registry = registry
    app.state.issued_codes = issued_codes
    app.state.mcp = mcp_server
    return app


def configure_logging(log_level: str) -> None:
    """Configure logging with timestamps for all loggers including uvicorn."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(level=log_level, format=log_format)

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        uv_logger = logging.getLogger(logger_name)
        uv_logger.handlers = []
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(log_format))
        uv_logger.addHandler(handler)


@click.command()
@click.option("--port", type=int, help="Port to listen on (default: CLICKUP_PORT or 3005)")
@click.option("--host", help="Interface to bind (default: CLICKUP_HOST or 0.0.0.0)")
@click.option(
    "--base-url",
    help="Public URL of this server, used for the OAuth callback. Defaults to CLICKUP_BASE_URL",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (default: CLICKUP_LOG_LEVEL or INFO)",
)
def main(
    port: int | None = None,
    host: str | None = None,
    base_url: str | None = None,
    log_level: str | None = None,
) -> None:
    """
    Run the ClickUp MCP server with OAuth2 authorization.

    Client credentials are read from CLICKUP_CLIENT_ID and
    CLICKUP_CLIENT_SECRET (environment or .env file).
    """
    load_dotenv()

    overrides: dict[str, Any] = {
        "port": port,
        "host": host,
        "base_url": base_url,
        "log_level": log_level.upper() if log_level else None,
    }
    try:
        settings = ClickUpAuthSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        configure_logging("INFO")
        logger.error(f"Configuration error: {e}")
        logger.error("Make sure CLICKUP_CLIENT_ID and CLICKUP_CLIENT_SECRET are set")
        sys.exit(1)

    configure_logging(settings.log_level)

    # Wrap app with middleware so /mcp and /mcp/ work identically
    app = NormalizePathMiddleware(create_app(settings))

    logger.info("=" * 60)
    logger.info(f"🚀 ClickUp MCP OAuth Server running on {settings.public_url}")
    logger.info(f"🔐 OAuth callback: {settings.callback_url}")
    logger.info(f"🔌 Binding to: {settings.host}:{settings.port}")
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
        access_log=True,
    )


if __name__ == "__main__":
    main()
