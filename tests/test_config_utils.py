from config import Config, config, get_logger
from utils import format_duration, format_timestamp, truncate_string, validate_url


def test_get_logger_namespace():
    assert get_logger("sync").name == "FeedSync.sync"


def test_validate_positive_int(monkeypatch):
    monkeypatch.setenv("FAILURE_THRESHOLD", "0")
    assert config._validate_positive_int("FAILURE_THRESHOLD", 3, 0) == 0

    monkeypatch.setenv("FETCH_CONCURRENCY", "0")
    assert config._validate_positive_int("FETCH_CONCURRENCY", 5, 1) == 5

    monkeypatch.setenv("HTTP_TIMEOUT", "soon")
    assert config._validate_positive_int("HTTP_TIMEOUT", 30, 1) == 30


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("LOCK_TTL_SECONDS", "120")
    monkeypatch.setenv("FAILURE_THRESHOLD", "5")
    fresh = Config()

    assert fresh.LOCK_TTL_SECONDS == 120
    assert fresh.FAILURE_THRESHOLD == 5


def test_load_channel_sources(tmp_path, monkeypatch):
    path = tmp_path / "channels.yaml"
    path.write_text("""
channels:
  mapped:
    url: https://example.com/a.xml
  plain: https://example.com/b.xml
  invalid: 42
""")
    monkeypatch.setattr(config, 'CHANNELS_CONFIG_PATH', str(path))
    monkeypatch.setattr(config, 'CHANNEL_SOURCES', {})

    config._load_channel_sources()

    assert config.CHANNEL_SOURCES == {
        'mapped': 'https://example.com/a.xml',
        'plain': 'https://example.com/b.xml',
    }


def test_missing_channels_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'CHANNELS_CONFIG_PATH', str(tmp_path / "absent.yaml"))
    monkeypatch.setattr(config, 'CHANNEL_SOURCES', {'stale': 'x'})

    config._load_channel_sources()

    assert config.CHANNEL_SOURCES == {}


def test_validate_url():
    assert validate_url("https://example.com/feed.xml")
    assert validate_url("http://localhost:8080/rss")
    assert not validate_url("ftp://example.com/feed")
    assert not validate_url("example.com/feed")
    assert not validate_url("")


def test_truncate_string():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("abcdefghij", 6) == "abc..."


def test_format_helpers():
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(0) == "0s"
    assert format_timestamp(None) == "never"
    assert format_timestamp(0) == "1970-01-01 00:00:00 UTC"
