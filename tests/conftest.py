"""Shared fixtures for the Keyhole test suite."""
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from keyhole_clients import ClientInfo, ClientRegistry
from keyhole_config import Settings
from keyhole_oauth import ErrorSink
from keyhole_store import MemoryTokenStore
from server import create_app

CLIENT_ID = "123456"
CLIENT_SECRET = "12345678"
CLIENT_DOMAIN = "http://localhost:9094"


class RecordingSink(ErrorSink):
    """ErrorSink that remembers what it was told."""

    def __init__(self):
        self.internal: list[BaseException] = []
        self.protocol: list = []

    def on_internal_error(self, err):
        super().on_internal_error(err)
        self.internal.append(err)

    def on_protocol_error(self, err):
        super().on_protocol_error(err)
        self.protocol.append(err)


@pytest.fixture
def registry():
    return ClientRegistry([
        ClientInfo(id=CLIENT_ID, secret=CLIENT_SECRET, domain=CLIENT_DOMAIN),
    ])


@pytest.fixture
def settings():
    return Settings(clients_file=Path("does-not-exist.yaml"))


@pytest.fixture
def store():
    return MemoryTokenStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def app(settings, registry, store, sink):
    return create_app(settings, registry=registry, store=store, sink=sink)


def http_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app),
                             base_url="http://testserver")
