"""Tests for YAML configuration loading and the component factories."""
import pytest

from crewboard.config import Config, build_deliveries, build_directory
from crewboard.directory import HttpDirectory, StaticDirectory
from crewboard.errors import ConfigError
from crewboard.notifications import TelegramDelivery, WebhookDelivery


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("CREWBOARD_DB", "CREWBOARD_API_SECRET", "CREWBOARD_CONFIG", "CREWBOARD_TELEGRAM_TOKEN"):
        monkeypatch.delenv(var, raising=False)


def test_missing_file_gives_defaults(tmp_path):
    cfg = Config.load(str(tmp_path / "absent.yaml"))
    assert cfg.lookahead_hours == 24.0
    assert cfg.dedup_window_hours == 4.0
    assert cfg.scan_interval_secs == 300
    assert cfg.stale_after_days == 3.0
    assert cfg.stream_queue_size == 256


def test_nested_yaml_is_flattened(tmp_path):
    path = tmp_path / "crewboard.yaml"
    path.write_text(
        "db_path: /tmp/crewboard-test.db\n"
        "deadline:\n"
        "  lookahead_hours: 12\n"
        "  dedup_window_hours: 1\n"
        "stale:\n"
        "  after_days: 5\n"
        "directory:\n"
        "  users: [carol@example.com]\n"
        "  teams:\n"
        "    Design: [alice@example.com, bob@example.com]\n"
    )
    cfg = Config.load(str(path))
    assert cfg.db_path == "/tmp/crewboard-test.db"
    assert cfg.lookahead_hours == 12.0
    assert cfg.dedup_window_hours == 1.0
    assert cfg.stale_after_days == 5.0
    assert cfg.directory_teams == {"Design": ["alice@example.com", "bob@example.com"]}


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "crewboard.yaml"
    path.write_text("db_path: /tmp/from-file.db\napi_secret: file-secret\n")
    monkeypatch.setenv("CREWBOARD_CONFIG", str(path))
    monkeypatch.setenv("CREWBOARD_API_SECRET", "env-secret")
    cfg = Config.load()
    assert cfg.db_path == "/tmp/from-file.db"
    assert cfg.api_secret == "env-secret"


def test_malformed_yaml_raises(tmp_path):
    path = tmp_path / "crewboard.yaml"
    path.write_text("deadline: [unclosed\n")
    with pytest.raises(ConfigError):
        Config.load(str(path))


def test_invalid_values_raise():
    with pytest.raises(ConfigError):
        Config.from_dict({"deadline": {"scan_interval_secs": 0}})
    with pytest.raises(ConfigError):
        Config.from_dict({"directory": {"teams": ["not", "a", "mapping"]}})
    with pytest.raises(ConfigError):
        Config.from_dict(["not a mapping"])


def test_build_directory():
    cfg = Config.from_dict({"directory": {"users": ["a@example.com"]}})
    assert isinstance(build_directory(cfg), StaticDirectory)
    cfg = Config.from_dict({"directory": {"url": "http://dir.local", "timeout": 5}})
    directory = build_directory(cfg)
    assert isinstance(directory, HttpDirectory)
    assert directory.timeout == 5.0


def test_build_deliveries(monkeypatch):
    assert build_deliveries(Config()) == []

    cfg = Config.from_dict({"delivery": {
        "webhook_url": "http://hooks.local",
        "telegram_token_env": "CREWBOARD_TELEGRAM_TOKEN",
        "telegram_chats": {"alice@example.com": 42},
    }})
    with pytest.raises(ConfigError):
        build_deliveries(cfg)

    monkeypatch.setenv("CREWBOARD_TELEGRAM_TOKEN", "123:abc")
    channels = build_deliveries(cfg)
    assert [type(c) for c in channels] == [WebhookDelivery, TelegramDelivery]
    assert channels[1].chats == {"alice@example.com": "42"}
