"""Tests for the application wiring in server.py."""
import asyncio
from pathlib import Path

import pytest

from conftest import http_client
from keyhole_config import Settings
from keyhole_session import SessionManager
from keyhole_store import MemoryTokenStore, TokenKind, TokenRecord
from server import _periodic_sweep, create_app


class TestCreateApp:
    @pytest.mark.asyncio
    async def test_health(self, app):
        async with http_client(app) as client:
            response = await client.get("/health")
        assert response.json() == {"status": "ok"}

    def test_loads_clients_from_settings(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text('clients:\n  web:\n    secret: s3cret\n    domain: "https://app.example.com"\n')
        app = create_app(Settings(clients_file=path))
        assert "web" in app.state.registry
        assert isinstance(app.state.store, MemoryTokenStore)

    def test_missing_clients_file_aborts(self):
        with pytest.raises(SystemExit):
            create_app(Settings(clients_file=Path("/nonexistent/clients.yaml")))


class TestPeriodicSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self):
        store = MemoryTokenStore()
        await store.put(TokenRecord(
            value="gone", kind=TokenKind.ACCESS, client_id="c", user_id="u",
            issued_at=1000, expires_at=2000,
        ))
        task = asyncio.create_task(_periodic_sweep(store, SessionManager(), interval=0))
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(store) == 0
