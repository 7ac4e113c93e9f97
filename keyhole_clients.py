"""
keyhole_clients.py — static client registry.

Clients are registered once at startup (from clients.yaml or in code) and
never change afterwards, so lookups need no locking.
"""

import logging
import urllib.parse
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger("keyhole-clients")


class ClientNotFound(LookupError):
    """No client is registered under the requested id."""


class ClientInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    secret: str
    domain: str

    @field_validator("domain")
    @classmethod
    def _domain_is_absolute(cls, value: str) -> str:
        parsed = urllib.parse.urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"domain must be an absolute http(s) URL: {value!r}")
        return value


class ClientRegistry:
    """Read-only mapping of client id to ClientInfo."""

    def __init__(self, clients: list[ClientInfo] | None = None):
        self._clients: dict[str, ClientInfo] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: ClientInfo) -> None:
        if client.id in self._clients:
            raise ValueError(f"Client '{client.id}' is already registered")
        self._clients[client.id] = client

    def get(self, client_id: str) -> ClientInfo:
        client = self._clients.get(client_id)
        if client is None:
            raise ClientNotFound(client_id)
        return client

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients


def redirect_uri_allowed(client: ClientInfo, redirect_uri: str) -> bool:
    """Check that redirect_uri lives under the client's registered domain.

    The scheme must match and the host[:port] must end with the registered
    host, so "http://localhost:9094/cb" is accepted for "http://localhost:9094".
    """
    base = urllib.parse.urlparse(client.domain)
    redirect = urllib.parse.urlparse(redirect_uri)
    if redirect.scheme != base.scheme or not redirect.netloc:
        return False
    host = redirect.netloc.lower()
    base_host = base.netloc.lower()
    return host == base_host or host.endswith("." + base_host)


def load_clients(config_path: Path) -> ClientRegistry:
    """Load the client registry from clients.yaml."""
    if not config_path.exists():
        example = Path(__file__).parent / "clients.example.yaml"
        msg = f"Client config not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("clients"), dict):
        raise SystemExit(f"Invalid clients.yaml: expected top-level 'clients' mapping in {config_path}")

    registry = ClientRegistry()
    for client_id, cfg in raw["clients"].items():
        if not isinstance(cfg, dict) or "secret" not in cfg or "domain" not in cfg:
            raise SystemExit(
                f"Invalid client '{client_id}' in {config_path}: 'secret' and 'domain' are required"
            )
        try:
            registry.register(ClientInfo(id=str(client_id), secret=str(cfg["secret"]),
                                         domain=str(cfg["domain"])))
        except ValueError as e:
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: {e}")

    if not len(registry):
        raise SystemExit(f"No clients defined in {config_path}")

    logger.info("loaded %d client(s) from %s", len(registry), config_path)
    return registry
