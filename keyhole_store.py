"""
keyhole_store.py — storage for authorization codes, access and refresh tokens.

Two backends share one async contract:
  - MemoryTokenStore: dict guarded by an asyncio.Lock (single process).
  - RedisTokenStore: JSON records in Redis; put/consume run as Lua scripts
    so the kind check and the write/delete are a single server-side step.

Expiry is always checked on read. sweep() only reclaims memory.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError, model_validator
from redis.exceptions import RedisError

logger = logging.getLogger("keyhole-store")


class TokenKind(str, Enum):
    CODE = "code"
    ACCESS = "access"
    REFRESH = "refresh"


class TokenRecord(BaseModel):
    value: str
    kind: TokenKind
    client_id: str
    user_id: str
    scope: str = ""
    redirect_uri: str = ""
    issued_at: int
    expires_at: int
    parent: str | None = None  # access token: refresh token it was issued with
    access: str | None = None  # refresh token: access token issued with it

    @model_validator(mode="after")
    def _expires_after_issue(self) -> "TokenRecord":
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")
        return self

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


class StorageError(Exception):
    """The backing store failed or holds a conflicting record."""


class TokenNotFound(LookupError):
    """No record exists under this value (or it was already consumed)."""


class TokenExpired(LookupError):
    """A record exists but its expires_at is in the past."""


class TokenStore(Protocol):
    async def put(self, record: TokenRecord) -> None: ...

    async def get(self, value: str) -> TokenRecord: ...

    async def delete(self, value: str) -> None: ...

    async def consume(self, value: str, kind: TokenKind) -> TokenRecord: ...

    async def sweep(self) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryTokenStore:
    """Process-local token store."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._records: dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def put(self, record: TokenRecord) -> None:
        async with self._lock:
            current = self._records.get(record.value)
            if current is not None and current.kind != record.kind:
                raise StorageError(
                    f"value already stored as {current.kind.value}, refusing {record.kind.value}"
                )
            self._records[record.value] = record

    async def get(self, value: str) -> TokenRecord:
        record = self._records.get(value)
        if record is None:
            raise TokenNotFound(value)
        if record.is_expired(self._clock()):
            raise TokenExpired(value)
        return record

    async def delete(self, value: str) -> None:
        async with self._lock:
            self._records.pop(value, None)

    async def consume(self, value: str, kind: TokenKind) -> TokenRecord:
        async with self._lock:
            record = self._records.get(value)
            if record is None or record.kind != kind:
                raise TokenNotFound(value)
            del self._records[value]
        if record.is_expired(self._clock()):
            raise TokenExpired(value)
        return record

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [v for v, r in self._records.items() if r.is_expired(now)]
            for v in expired:
                del self._records[v]
        if expired:
            logger.info("sweep: removed %d expired record(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

# KEYS[1] = record key; ARGV = json, kind, unix expiry
_PUT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    if cjson.decode(current)['kind'] ~= ARGV[2] then
        return 0
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'EXAT', ARGV[3])
return 1
"""

# KEYS[1] = record key; ARGV[1] = kind
_CONSUME_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return false
end
if cjson.decode(current)['kind'] ~= ARGV[1] then
    return false
end
redis.call('DEL', KEYS[1])
return current
"""


class RedisTokenStore:
    """Token store backed by Redis.

    Keys outlive their record by ``expired_grace`` seconds so that a
    recently expired token is reported as TokenExpired, not TokenNotFound.
    """

    def __init__(self, client: redis.Redis, prefix: str = "keyhole:token:",
                 expired_grace: int = 300, clock: Callable[[], float] = time.time):
        self._client = client
        self._prefix = prefix
        self._expired_grace = expired_grace
        self._clock = clock
        self._put_script = client.register_script(_PUT_SCRIPT)
        self._consume_script = client.register_script(_CONSUME_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisTokenStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, value: str) -> str:
        return f"{self._prefix}{value}"

    def _decode(self, value: str, raw: str | bytes) -> TokenRecord:
        try:
            return TokenRecord.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"corrupt record under {value[:8]}...") from e

    async def put(self, record: TokenRecord) -> None:
        try:
            stored = await self._put_script(
                keys=[self._key(record.value)],
                args=[record.model_dump_json(), record.kind.value,
                      record.expires_at + self._expired_grace],
            )
        except RedisError as e:
            raise StorageError(f"redis put failed: {e}") from e
        if not int(stored):
            raise StorageError(f"value already stored with a different kind than {record.kind.value}")

    async def get(self, value: str) -> TokenRecord:
        try:
            raw = await self._client.get(self._key(value))
        except RedisError as e:
            raise StorageError(f"redis get failed: {e}") from e
        if raw is None:
            raise TokenNotFound(value)
        record = self._decode(value, raw)
        if record.is_expired(self._clock()):
            raise TokenExpired(value)
        return record

    async def delete(self, value: str) -> None:
        try:
            await self._client.delete(self._key(value))
        except RedisError as e:
            raise StorageError(f"redis delete failed: {e}") from e

    async def consume(self, value: str, kind: TokenKind) -> TokenRecord:
        try:
            raw = await self._consume_script(keys=[self._key(value)], args=[kind.value])
        except RedisError as e:
            raise StorageError(f"redis consume failed: {e}") from e
        if raw is None:
            raise TokenNotFound(value)
        record = self._decode(value, raw)
        if record.is_expired(self._clock()):
            raise TokenExpired(value)
        return record

    async def sweep(self) -> int:
        # Redis expires keys on its own.
        return 0

    async def close(self) -> None:
        await self._client.aclose()
