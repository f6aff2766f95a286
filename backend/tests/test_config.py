import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_detect_project_root_is_parent_of_backend(tmp_path):
    backend_dir = tmp_path / "project" / "backend"
    backend_dir.mkdir(parents=True, exist_ok=True)

    assert config._detect_project_root(backend_dir.resolve()) == (tmp_path / "project").resolve()


def test_normalize_database_url_makes_relative_sqlite_absolute(tmp_path, monkeypatch):
    project_root = tmp_path / "project"
    project_root.mkdir()
    monkeypatch.setattr(config, "_PROJECT_ROOT", project_root.resolve())

    normalized = config.Settings._normalize_database_url("sqlite+aiosqlite:///./data/walletd.db")
    expected_path = (project_root / "data" / "walletd.db").resolve()

    assert normalized == f"sqlite+aiosqlite:///{expected_path}"
    assert expected_path.parent.is_dir()


def test_normalize_database_url_keeps_memory_and_other_backends():
    assert config.Settings._normalize_database_url("sqlite+aiosqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"
    assert config.Settings._normalize_database_url("postgresql+asyncpg://u:p@db/walletd") == (
        "postgresql+asyncpg://u:p@db/walletd"
    )


def test_fix_path_expands_home_and_drops_blank_values(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))

    assert config.fix_path("~/wallet.container") == str((tmp_path / "wallet.container").resolve())
    assert config.fix_path("  ") is None
    assert config.fix_path(None) is None


def test_gateway_defaults_follow_daemon_binding(make_settings):
    settings = make_settings(BIND_ADDRESS="10.0.0.5", BIND_PORT=18000, RPC_PASSWORD="pw")

    assert settings.GATEWAY_HOST == "10.0.0.5"
    assert settings.GATEWAY_PORT == 18001
    assert settings.GATEWAY_PASSWORD == "pw"


def test_explicit_gateway_settings_win(make_settings):
    settings = make_settings(GATEWAY_PORT=9000, GATEWAY_PASSWORD="other")

    assert settings.GATEWAY_PORT == 9000
    assert settings.GATEWAY_PASSWORD == "other"


def test_wildcard_daemon_address_becomes_loopback(make_settings):
    assert make_settings(DAEMON_RPC_ADDRESS="0.0.0.0").DAEMON_RPC_ADDRESS == "127.0.0.1"
    assert make_settings(DAEMON_RPC_ADDRESS="node.example").DAEMON_RPC_ADDRESS == "node.example"
