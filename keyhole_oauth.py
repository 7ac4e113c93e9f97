"""
keyhole_oauth.py — OAuth 2.0 Authorization Code engine for Keyhole.

Three operations, all one-shot and bounded by the request deadline:
  - handle_authorize_request: resolve the resource owner through the
    UserAuthorizationGate, then redirect back to the client with a code.
  - handle_token_request: exchange a code (or a refresh token) for an
    access/refresh pair.
  - validation_bearer_token: resolve an access token from a resource request.

Protocol errors become {error, error_description} JSON for the client.
Storage and session failures are logged in full and answered with a
generic server_error; their detail never reaches the client.
"""

import asyncio
import base64
import binascii
import hmac
import json
import logging
import secrets
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from keyhole_clients import ClientInfo, ClientNotFound, ClientRegistry, redirect_uri_allowed
from keyhole_config import Settings
from keyhole_session import SessionKey, SessionManager
from keyhole_store import TokenExpired, TokenKind, TokenNotFound, TokenRecord, TokenStore

logger = logging.getLogger("keyhole-oauth")
audit_logger = logging.getLogger("keyhole-audit")

T = TypeVar("T")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """A client-visible OAuth 2.0 error."""

    def __init__(self, error: str, description: str = "", status_code: int = 400):
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_response(self) -> JSONResponse:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        headers = dict(_NO_STORE)
        if self.error == "invalid_token":
            headers["WWW-Authenticate"] = f'Bearer error="{self.error}"'
        return JSONResponse(body, status_code=self.status_code, headers=headers)


class ServerError(OAuthError):
    """Generic answer for an internal failure. Carries no detail."""

    def __init__(self, error: str = "server_error", status_code: int = 500):
        super().__init__(error, "Internal error, try again later.", status_code)


def _invalid_client(description: str) -> OAuthError:
    return OAuthError("invalid_client", description, 401)


def _invalid_token(description: str) -> OAuthError:
    return OAuthError("invalid_token", description, 401)


class ErrorSink:
    """Fire-and-forget reporting of internal and protocol errors."""

    def on_internal_error(self, err: BaseException) -> None:
        logger.error("Internal Error: %s", err, exc_info=err)

    def on_protocol_error(self, err: OAuthError) -> None:
        logger.info("Response Error: %s", err)
        _audit("protocol_error", error=err.error, description=err.description)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


async def _request_params(request: Request) -> dict[str, str]:
    """Query parameters overlaid with a urlencoded form body, if any."""
    params = _parse_qs(request.url.query)
    content_type = request.headers.get("content-type", "")
    if request.method == "POST" and content_type.startswith("application/x-www-form-urlencoded"):
        body = await request.body()
        params.update(_parse_qs(body.decode("utf-8", errors="replace")))
    return params


def _with_query(uri: str, **params: str) -> str:
    query = urllib.parse.urlencode({k: v for k, v in params.items() if v})
    sep = "&" if "?" in uri else "?"
    return f"{uri}{sep}{query}"


def _basic_credentials(request: Request) -> tuple[str, str] | None:
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(auth[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise _invalid_client("Malformed Basic credentials")
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        raise _invalid_client("Malformed Basic credentials")
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(secret)


def _bearer_token(request: Request, params: dict[str, str]) -> str:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return params.get("access_token", "")


# ---------------------------------------------------------------------------
# User-authorization gate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GateDecision:
    """Either the resolved resource owner or a login redirect."""

    user_id: str | None = None
    redirect: str | None = None


class UserAuthorizationGate:
    """Resolve who authorizes the grant from the browser session.

    The logged-in user id is single-use: it is removed from the session as
    soon as one authorize request consumes it. Without it, the original
    request is parked in the session and the browser is sent to login.
    """

    def __init__(self, sessions: SessionManager, login_url: str = "/login"):
        self._sessions = sessions
        self._login_url = login_url

    async def authorize(self, request: Request, params: dict[str, str]) -> GateDecision:
        logger.info("userAuthorization %s", request.url.path)
        session = await self._sessions.start(request)

        user_id = session.get(SessionKey.LOGGED_IN_USER_ID)
        if not user_id:
            encoded = urllib.parse.urlencode(sorted(params.items()))
            session.set(SessionKey.PENDING_RETURN_URI, f"{request.url.path}?{encoded}")
            await session.save()
            return GateDecision(redirect=self._login_url)

        session.delete(SessionKey.LOGGED_IN_USER_ID)
        await session.save()
        return GateDecision(user_id=user_id)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class OAuthEngine:
    """Authorization Code grant over injected registry, store and gate."""

    def __init__(
        self,
        registry: ClientRegistry,
        store: TokenStore,
        gate: UserAuthorizationGate,
        sink: ErrorSink | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._store = store
        self._gate = gate
        self._sink = sink or ErrorSink()
        self._settings = settings or Settings()
        self._clock = clock

    # --- public operations ---

    async def handle_authorize_request(self, request: Request) -> Response:
        return await self._respond(self._authorize(request))

    async def handle_token_request(self, request: Request) -> Response:
        return await self._respond(self._token(request))

    async def validation_bearer_token(self, request: Request) -> TokenRecord:
        """Return the access token record behind the request's bearer token.

        Raises OAuthError (invalid_token, or ServerError on internal failure).
        """
        return await self._guarded(self._validate(request))

    # --- error boundary ---

    async def _guarded(self, op: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(op, self._settings.request_timeout)
        except OAuthError as e:
            self._sink.on_protocol_error(e)
            raise
        except asyncio.TimeoutError as e:
            self._sink.on_internal_error(e)
            raise ServerError("temporarily_unavailable", 503) from e
        except Exception as e:
            self._sink.on_internal_error(e)
            raise ServerError() from e

    async def _respond(self, op: Awaitable[Response]) -> Response:
        try:
            return await self._guarded(op)
        except OAuthError as e:
            return e.to_response()

    # --- authorize ---

    def _client_and_redirect(self, params: dict[str, str]) -> tuple[ClientInfo, str]:
        client_id = params.get("client_id", "")
        if not client_id:
            raise OAuthError("invalid_request", "Missing client_id")
        try:
            client = self._registry.get(client_id)
        except ClientNotFound:
            raise _invalid_client("Unknown client_id")

        redirect_uri = params.get("redirect_uri", "") or client.domain
        if not redirect_uri_allowed(client, redirect_uri):
            raise OAuthError("invalid_redirect_uri",
                             "redirect_uri does not match the registered domain")
        return client, redirect_uri

    async def _authorize(self, request: Request) -> Response:
        params = await _request_params(request)
        client, redirect_uri = self._client_and_redirect(params)

        if params.get("response_type") != "code":
            raise OAuthError("unsupported_response_type", "Only response_type=code is supported")

        decision = await self._gate.authorize(request, params)
        if decision.redirect is not None:
            return RedirectResponse(decision.redirect, status_code=302)

        now = int(self._clock())
        code = TokenRecord(
            value=secrets.token_urlsafe(32),
            kind=TokenKind.CODE,
            client_id=client.id,
            user_id=decision.user_id,
            scope=params.get("scope", ""),
            redirect_uri=redirect_uri,
            issued_at=now,
            expires_at=now + self._settings.code_ttl,
        )
        await self._store.put(code)
        _audit("code_issued", client_id=client.id, user_id=decision.user_id)

        location = _with_query(redirect_uri,
                               code=code.value, state=params.get("state", ""))
        return RedirectResponse(location, status_code=302)

    # --- token ---

    def _authenticate_client(self, request: Request, form: dict[str, str]) -> ClientInfo:
        creds = _basic_credentials(request)
        if creds is None:
            creds = (form.get("client_id", ""), form.get("client_secret", ""))
        client_id, secret = creds
        try:
            client = self._registry.get(client_id)
        except ClientNotFound:
            raise _invalid_client("Client authentication failed")
        if not hmac.compare_digest(client.secret.encode(), secret.encode()):
            raise _invalid_client("Client authentication failed")
        return client

    async def _token(self, request: Request) -> Response:
        if request.method != "POST":
            raise OAuthError("invalid_request", "Token requests must use POST", 405)
        form = await _request_params(request)

        grant_type = form.get("grant_type", "")
        if grant_type not in ("authorization_code", "refresh_token"):
            raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type!r}")

        client = self._authenticate_client(request, form)
        if grant_type == "authorization_code":
            access, refresh = await self._exchange_code(client, form)
        else:
            access, refresh = await self._exchange_refresh(client, form)

        body = {
            "access_token": access.value,
            "token_type": "Bearer",
            "expires_in": access.expires_in,
            "refresh_token": refresh.value,
        }
        if access.scope:
            body["scope"] = access.scope
        return JSONResponse(body, headers=_NO_STORE)

    async def _exchange_code(self, client: ClientInfo,
                             form: dict[str, str]) -> tuple[TokenRecord, TokenRecord]:
        value = form.get("code", "")
        if not value:
            raise OAuthError("invalid_request", "Missing code")
        try:
            code = await self._store.consume(value, TokenKind.CODE)
        except TokenNotFound:
            raise OAuthError("invalid_grant", "Unknown or already used authorization code")
        except TokenExpired:
            raise OAuthError("invalid_grant", "Authorization code expired")

        if code.client_id != client.id:
            raise OAuthError("invalid_grant", "Authorization code was issued to another client")
        if form.get("redirect_uri", "") != code.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match the authorization request")

        access, refresh = await self._issue_pair(client.id, code.user_id, code.scope)
        _audit("token_issued", client_id=client.id, user_id=code.user_id,
               expires_in=access.expires_in)
        return access, refresh

    async def _exchange_refresh(self, client: ClientInfo,
                                form: dict[str, str]) -> tuple[TokenRecord, TokenRecord]:
        value = form.get("refresh_token", "")
        if not value:
            raise OAuthError("invalid_request", "Missing refresh_token")
        try:
            old = await self._store.consume(value, TokenKind.REFRESH)
        except TokenNotFound:
            raise OAuthError("invalid_grant", "Unknown or already used refresh token")
        except TokenExpired:
            raise OAuthError("invalid_grant", "Refresh token expired")

        if old.client_id != client.id:
            raise OAuthError("invalid_grant", "Refresh token was issued to another client")

        scope = old.scope
        requested = form.get("scope", "")
        if requested:
            if not set(requested.split()) <= set(old.scope.split()):
                raise OAuthError("invalid_scope", "Requested scope exceeds the original grant")
            scope = requested

        if old.access:
            await self._store.delete(old.access)

        access, refresh = await self._issue_pair(client.id, old.user_id, scope,
                                                 refresh_expires_at=old.expires_at)
        _audit("token_refreshed", client_id=client.id, user_id=old.user_id)
        return access, refresh

    async def _issue_pair(self, client_id: str, user_id: str, scope: str,
                          refresh_expires_at: int | None = None) -> tuple[TokenRecord, TokenRecord]:
        """Issue an access/refresh pair. A rotated refresh token keeps the
        expiry of the one it replaces."""
        now = int(self._clock())
        if refresh_expires_at is None:
            refresh_expires_at = now + self._settings.refresh_token_ttl
        access_value = secrets.token_urlsafe(32)
        refresh_value = secrets.token_urlsafe(32)

        access = TokenRecord(
            value=access_value,
            kind=TokenKind.ACCESS,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            issued_at=now,
            expires_at=now + self._settings.access_token_ttl,
            parent=refresh_value,
        )
        refresh = TokenRecord(
            value=refresh_value,
            kind=TokenKind.REFRESH,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            issued_at=now,
            expires_at=refresh_expires_at,
            access=access_value,
        )
        await self._store.put(access)
        await self._store.put(refresh)
        return access, refresh

    # --- bearer validation ---

    async def _validate(self, request: Request) -> TokenRecord:
        token = _bearer_token(request, await _request_params(request))
        if not token:
            raise _invalid_token("Missing bearer token")
        try:
            record = await self._store.get(token)
        except TokenNotFound:
            raise _invalid_token("Unknown token")
        except TokenExpired:
            raise _invalid_token("Token expired")
        if record.kind != TokenKind.ACCESS:
            raise _invalid_token("Not an access token")
        return record
