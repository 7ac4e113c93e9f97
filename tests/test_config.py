"""Tests for keyhole_config.py and keyhole_clients.py."""
import pytest

from keyhole_clients import (
    ClientInfo,
    ClientNotFound,
    ClientRegistry,
    load_clients,
    redirect_uri_allowed,
)
from keyhole_config import Settings, parse_duration


# ---------------------------------------------------------------------------
# Durations and settings
# ---------------------------------------------------------------------------

class TestParseDuration:
    @pytest.mark.parametrize("raw,seconds", [
        ("7d", 604800),
        ("14d", 1209600),
        ("10m", 600),
        ("2h", 7200),
        ("45s", 45),
        ("300", 300),
        (90, 90),
    ])
    def test_valid(self, raw, seconds):
        assert parse_duration(raw) == seconds

    @pytest.mark.parametrize("raw", ["", "abc", "7w", "-5", "0"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("KEYHOLE_ACCESS_TOKEN_TTL", "KEYHOLE_REFRESH_TOKEN_TTL", "KEYHOLE_REDIS_URL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.access_token_ttl == 7 * 86400
        assert settings.refresh_token_ttl == 14 * 86400
        assert settings.redis_url == ""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("KEYHOLE_ACCESS_TOKEN_TTL", "1h")
        monkeypatch.setenv("KEYHOLE_LOGIN_URL", "https://id.example.com/login")
        settings = Settings.from_env()
        assert settings.access_token_ttl == 3600
        assert settings.login_url == "https://id.example.com/login"

    def test_bad_env_duration_exits(self, monkeypatch):
        monkeypatch.setenv("KEYHOLE_CODE_TTL", "soon")
        with pytest.raises(SystemExit, match="KEYHOLE_CODE_TTL"):
            Settings.from_env()


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

def _client(domain="http://localhost:9094"):
    return ClientInfo(id="123456", secret="12345678", domain=domain)


class TestClientRegistry:
    def test_get_registered(self):
        registry = ClientRegistry([_client()])
        assert registry.get("123456").secret == "12345678"

    def test_unknown_client(self):
        with pytest.raises(ClientNotFound):
            ClientRegistry().get("nope")

    def test_duplicate_rejected(self):
        registry = ClientRegistry([_client()])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_client())

    def test_client_is_immutable(self):
        client = _client()
        with pytest.raises(Exception):
            client.secret = "changed"

    def test_relative_domain_rejected(self):
        with pytest.raises(ValueError):
            _client(domain="localhost:9094")


class TestRedirectUriAllowed:
    @pytest.mark.parametrize("uri", [
        "http://localhost:9094",
        "http://localhost:9094/oauth2/callback",
        "http://localhost:9094?x=1",
    ])
    def test_allowed(self, uri):
        assert redirect_uri_allowed(_client(), uri)

    @pytest.mark.parametrize("uri", [
        "https://localhost:9094/cb",
        "http://localhost:9095/cb",
        "http://evil.com/cb",
        "/relative",
    ])
    def test_rejected(self, uri):
        assert not redirect_uri_allowed(_client(), uri)

    def test_subdomain_allowed(self):
        client = _client(domain="https://example.com")
        assert redirect_uri_allowed(client, "https://app.example.com/cb")
        assert not redirect_uri_allowed(client, "https://badexample.com/cb")


class TestLoadClients:
    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text(
            'clients:\n'
            '  "123456":\n'
            '    secret: "12345678"\n'
            '    domain: "http://localhost:9094"\n'
        )
        registry = load_clients(path)
        assert len(registry) == 1
        assert registry.get("123456").domain == "http://localhost:9094"

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit, match="not found"):
            load_clients(tmp_path / "missing.yaml")

    def test_missing_secret(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text('clients:\n  abc:\n    domain: "http://localhost"\n')
        with pytest.raises(SystemExit, match="'secret' and 'domain' are required"):
            load_clients(path)

    def test_empty_registry(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("clients: {}\n")
        with pytest.raises(SystemExit, match="No clients"):
            load_clients(path)

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(SystemExit, match="top-level 'clients'"):
            load_clients(path)
