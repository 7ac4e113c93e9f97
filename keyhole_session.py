"""
keyhole_session.py — per-browser session state.

SessionCookieMiddleware is the only piece that knows about cookies: it puts
the browser's session id into the ASGI scope and sets the cookie on the way
out. Everything else goes through SessionManager.start() and the Session
handle (get / set / delete / save).
"""

import asyncio
import dataclasses
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("keyhole-session")

SESSION_SCOPE_KEY = "keyhole.session_id"


class SessionKey(str, Enum):
    LOGGED_IN_USER_ID = "logged_in_user_id"
    PENDING_RETURN_URI = "pending_return_uri"


class SessionError(Exception):
    """The session could not be opened or persisted."""


@dataclass
class SessionState:
    logged_in_user_id: str | None = None
    pending_return_uri: str | None = None
    expires_at: float = 0.0


class Session:
    """Handle on one browser session. Changes are local until save()."""

    def __init__(self, manager: "SessionManager", session_id: str, state: SessionState):
        self._manager = manager
        self.session_id = session_id
        self._state = state

    def get(self, key: SessionKey) -> str | None:
        return getattr(self._state, key.value)

    def set(self, key: SessionKey, value: str) -> None:
        setattr(self._state, key.value, value)

    def delete(self, key: SessionKey) -> None:
        setattr(self._state, key.value, None)

    async def save(self) -> None:
        try:
            await self._manager.save(self.session_id, self._state)
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(f"could not save session: {e}") from e


class SessionManager:
    """Server-side session records keyed by session id."""

    def __init__(self, ttl: int = 3600, cookie_name: str = "keyhole_session",
                 cookie_secure: bool = False, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.cookie_name = cookie_name
        self.cookie_secure = cookie_secure
        self._clock = clock
        self._states: dict[str, SessionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def new_id(self) -> str:
        return secrets.token_urlsafe(32)

    def is_active(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.expires_at > self._clock()

    def expires_at(self, session_id: str) -> float | None:
        state = self._states.get(session_id)
        return state.expires_at if state is not None else None

    async def start(self, conn: HTTPConnection) -> Session:
        session_id = conn.scope.get(SESSION_SCOPE_KEY)
        if not session_id:
            raise SessionError("no session id bound to request (SessionCookieMiddleware missing?)")
        return self.open(session_id)

    def open(self, session_id: str) -> Session:
        state = self._states.get(session_id)
        if state is None or state.expires_at <= self._clock():
            state = SessionState()
        else:
            state = dataclasses.replace(state)
        return Session(self, session_id, state)

    async def save(self, session_id: str, state: SessionState) -> None:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            self._states[session_id] = dataclasses.replace(
                state, expires_at=self._clock() + self.ttl,
            )

    # --- hand-off contract for the external login flow ---

    async def login(self, session_id: str, user_id: str) -> None:
        """Mark the browser session as logged in as ``user_id``."""
        session = self.open(session_id)
        session.set(SessionKey.LOGGED_IN_USER_ID, user_id)
        await session.save()

    def return_uri(self, session_id: str) -> str | None:
        """Encoded authorize parameters captured before the login redirect."""
        return self.open(session_id).get(SessionKey.PENDING_RETURN_URI)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, st in self._states.items() if st.expires_at <= now]
        for sid in expired:
            del self._states[sid]
            lock = self._locks.get(sid)
            if lock is not None and not lock.locked():
                del self._locks[sid]
        return len(expired)


class SessionCookieMiddleware:
    """Bind every HTTP request to a session id carried in a cookie."""

    def __init__(self, app: ASGIApp, manager: SessionManager):
        self.app = app
        self.manager = manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        session_id = HTTPConnection(scope).cookies.get(self.manager.cookie_name)
        is_new = not session_id or not self.manager.is_active(session_id)
        if is_new:
            session_id = self.manager.new_id()
        scope[SESSION_SCOPE_KEY] = session_id
        expires_before = self.manager.expires_at(session_id)

        async def send_with_cookie(message: Message) -> None:
            # A save slides the record's expiry; the cookie follows it.
            if message["type"] == "http.response.start" and (
                is_new or self.manager.expires_at(session_id) != expires_before
            ):
                MutableHeaders(scope=message).append("set-cookie", self._cookie(session_id))
            await send(message)

        await self.app(scope, receive, send_with_cookie)

    def _cookie(self, session_id: str) -> str:
        response = Response()
        response.set_cookie(
            self.manager.cookie_name, session_id,
            max_age=self.manager.ttl, path="/",
            secure=self.manager.cookie_secure, httponly=True, samesite="lax",
        )
        return response.headers["set-cookie"]
