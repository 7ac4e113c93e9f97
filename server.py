#!/usr/bin/env python3
"""
Keyhole — OAuth 2.0 Authorization Code server.

Serves /authorize and /token, plus /userinfo as an example protected
resource. Clients are loaded from clients.yaml; tokens live in Redis when
KEYHOLE_REDIS_URL is set, in process memory otherwise. The login page is
not part of this server: it reads the parked authorize request back from
the session and marks the session as logged in (see SessionManager.login).
"""

import argparse
import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from keyhole_clients import ClientRegistry, load_clients
from keyhole_config import Settings
from keyhole_oauth import ErrorSink, OAuthEngine, OAuthError, UserAuthorizationGate
from keyhole_session import SessionCookieMiddleware, SessionManager
from keyhole_store import MemoryTokenStore, RedisTokenStore, TokenStore

logger = logging.getLogger("keyhole")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

async def _authorize(request: Request) -> Response:
    return await request.app.state.engine.handle_authorize_request(request)


async def _token(request: Request) -> Response:
    return await request.app.state.engine.handle_token_request(request)


async def _userinfo(request: Request) -> Response:
    try:
        info = await request.app.state.engine.validation_bearer_token(request)
    except OAuthError as e:
        return e.to_response()
    return JSONResponse({
        "user_id": info.user_id,
        "client_id": info.client_id,
        "scope": info.scope,
        "expires_at": info.expires_at,
    })


async def _health(request: Request) -> Response:
    return JSONResponse({"status": "ok"})


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

class _RequestLogMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        hdrs = dict(scope.get("headers", []))
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        logger.info("recv: %s %s ua=%s", scope.get("method", "?"),
                    scope.get("path", "?"), ua[:60])
        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------

async def _periodic_sweep(store: TokenStore, sessions: SessionManager, interval: int) -> None:
    """Drop expired tokens and sessions every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await store.sweep()
            purged = sessions.purge_expired()
            if removed or purged:
                logger.info("sweep: %d token(s), %d session(s) removed", removed, purged)
        except Exception:
            logger.exception("keyhole: periodic sweep failed")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings,
    registry: ClientRegistry | None = None,
    store: TokenStore | None = None,
    sessions: SessionManager | None = None,
    sink: ErrorSink | None = None,
) -> Starlette:
    if registry is None:
        registry = load_clients(settings.clients_file)
    if store is None:
        if settings.redis_url:
            store = RedisTokenStore.from_url(settings.redis_url, prefix=settings.redis_key_prefix)
        else:
            store = MemoryTokenStore()
    if sessions is None:
        sessions = SessionManager(
            ttl=settings.session_ttl,
            cookie_name=settings.session_cookie,
            cookie_secure=settings.cookie_secure,
        )

    gate = UserAuthorizationGate(sessions, login_url=settings.login_url)
    engine = OAuthEngine(registry, store, gate, sink=sink or ErrorSink(), settings=settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("keyhole: %d client(s), %s token store", len(registry), type(store).__name__)
        task = asyncio.create_task(_periodic_sweep(store, sessions, settings.sweep_interval))
        try:
            yield
        finally:
            task.cancel()
            if isinstance(store, RedisTokenStore):
                try:
                    await store.close()
                except Exception:
                    logger.exception("keyhole: error closing token store")

    app = Starlette(
        routes=[
            Route("/authorize", _authorize, methods=["GET", "POST"]),
            Route("/token", _token, methods=["GET", "POST"]),
            Route("/userinfo", _userinfo, methods=["GET", "POST"]),
            Route("/health", _health, methods=["GET"]),
        ],
        middleware=[
            Middleware(_RequestLogMiddleware),
            Middleware(SessionCookieMiddleware, manager=sessions),
        ],
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.sessions = sessions
    app.state.store = store
    app.state.registry = registry
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.keyhole/audit.log
    _audit_log_path = Path.home() / ".keyhole" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("keyhole-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Keyhole OAuth 2.0 server")
    parser.add_argument("--port", type=int, default=9096)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--clients", type=Path, default=None,
                        help="client registry YAML (overrides KEYHOLE_CLIENTS_FILE)")
    args = parser.parse_args()

    import uvicorn

    settings = Settings.from_env()
    if args.clients is not None:
        settings = dataclasses.replace(settings, clients_file=args.clients)

    app = create_app(settings)
    logger.info(f"keyhole: starting HTTP server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
