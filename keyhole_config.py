"""
keyhole_config.py — runtime settings for the Keyhole authorization server.

Everything is read from KEYHOLE_* environment variables. Durations accept
"<n>s", "<n>m", "<n>h", "<n>d" or a plain number of seconds.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

DEFAULT_ACCESS_TOKEN_TTL = 7 * 86400  # 7 days
DEFAULT_REFRESH_TOKEN_TTL = 14 * 86400  # 14 days
DEFAULT_CODE_TTL = 600  # 10 minutes
DEFAULT_SESSION_TTL = 3600


def parse_duration(value: str | int) -> int:
    """Convert a duration like "7d" or "300" into seconds."""
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = int(match.group(1)) * _UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def _env_duration(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise SystemExit(f"{name}: {e}")


@dataclass(frozen=True)
class Settings:
    access_token_ttl: int = DEFAULT_ACCESS_TOKEN_TTL
    refresh_token_ttl: int = DEFAULT_REFRESH_TOKEN_TTL
    code_ttl: int = DEFAULT_CODE_TTL
    session_ttl: int = DEFAULT_SESSION_TTL
    request_timeout: float = 10.0
    sweep_interval: int = 300
    clients_file: Path = Path("clients.yaml")
    redis_url: str = ""
    redis_key_prefix: str = "keyhole:token:"
    login_url: str = "/login"
    session_cookie: str = "keyhole_session"
    cookie_secure: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            access_token_ttl=_env_duration("KEYHOLE_ACCESS_TOKEN_TTL", DEFAULT_ACCESS_TOKEN_TTL),
            refresh_token_ttl=_env_duration("KEYHOLE_REFRESH_TOKEN_TTL", DEFAULT_REFRESH_TOKEN_TTL),
            code_ttl=_env_duration("KEYHOLE_CODE_TTL", DEFAULT_CODE_TTL),
            session_ttl=_env_duration("KEYHOLE_SESSION_TTL", DEFAULT_SESSION_TTL),
            request_timeout=float(_env_duration("KEYHOLE_REQUEST_TIMEOUT", 10)),
            sweep_interval=_env_duration("KEYHOLE_SWEEP_INTERVAL", 300),
            clients_file=Path(os.environ.get("KEYHOLE_CLIENTS_FILE", "clients.yaml")),
            redis_url=os.environ.get("KEYHOLE_REDIS_URL", ""),
            redis_key_prefix=os.environ.get("KEYHOLE_REDIS_PREFIX", "keyhole:token:"),
            login_url=os.environ.get("KEYHOLE_LOGIN_URL", "/login"),
            session_cookie=os.environ.get("KEYHOLE_SESSION_COOKIE", "keyhole_session"),
            cookie_secure=os.environ.get("KEYHOLE_COOKIE_SECURE", "").lower() in ("1", "true", "yes"),
        )
