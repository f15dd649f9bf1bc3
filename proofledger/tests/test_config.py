# proofledger/tests/test_config.py
import os

import pytest
from pydantic import ValidationError

from proofledger.config import ReloadableSettings, Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("PROOFLEDGER_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = load_settings()
    assert s.store_dsn == "mem://"
    assert s.duplicate_fail_open is True
    assert s.caller_header == "X-Client-Id"
    assert s.config_origin == "defaults"


def test_settings_are_frozen():
    s = Settings()
    with pytest.raises(ValidationError):
        s.store_dsn = "sqlite:///x.db"


def test_yaml_then_env(monkeypatch, tmp_path):
    cfg = tmp_path / "proofledger.yaml"
    cfg.write_text("store_dsn: sqlite:///from-yaml.db\nmax_body_bytes: 4096\nlog_level: DEBUG\n")
    monkeypatch.setenv("PROOFLEDGER_CONFIG_PATH", str(cfg))
    s = load_settings()
    assert s.store_dsn == "sqlite:///from-yaml.db"
    assert s.max_body_bytes == 4096
    assert s.config_origin == "yaml"

    monkeypatch.setenv("PROOFLEDGER_STORE_DSN", "mem://")
    monkeypatch.setenv("PROOFLEDGER_DUPLICATE_FAIL_OPEN", "false")
    s = load_settings()
    assert s.store_dsn == "mem://"
    assert s.duplicate_fail_open is False
    assert s.log_level == "DEBUG"
    assert s.config_origin == "yaml+env"


def test_yaml_unknown_key_rejected(monkeypatch, tmp_path):
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("no_such_knob: 1\n")
    monkeypatch.setenv("PROOFLEDGER_CONFIG_PATH", str(cfg))
    with pytest.raises(ValidationError):
        load_settings()


def test_missing_yaml_path_ignored(monkeypatch, tmp_path):
    monkeypatch.setenv("PROOFLEDGER_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    assert load_settings().config_origin == "defaults"


def test_env_bounds(monkeypatch):
    monkeypatch.setenv("PROOFLEDGER_MAX_BODY_BYTES", "10")
    monkeypatch.setenv("PROOFLEDGER_LOG_LEVEL", "chatty")
    s = load_settings()
    assert s.max_body_bytes == Settings().max_body_bytes
    assert s.log_level == "INFO"

    monkeypatch.setenv("PROOFLEDGER_MAX_BODY_BYTES", "2048")
    monkeypatch.setenv("PROOFLEDGER_LOG_LEVEL", "warning")
    s = load_settings()
    assert s.max_body_bytes == 2048
    assert s.log_level == "WARNING"
    assert s.config_origin == "env"


def test_config_hash_stable_and_sensitive():
    assert Settings().config_hash() == Settings().config_hash()
    assert Settings().config_hash() != Settings(store_dsn="sqlite:///x.db").config_hash()


def test_refresh_keeps_store_dsn(monkeypatch):
    rs = ReloadableSettings()
    assert rs.get().store_dsn == "mem://"
    monkeypatch.setenv("PROOFLEDGER_STORE_DSN", "sqlite:///other.db")
    monkeypatch.setenv("PROOFLEDGER_CALLER_HEADER", "X-Caller")
    s = rs.refresh()
    assert s.store_dsn == "mem://"
    assert s.caller_header == "X-Caller"
    assert rs.get() is s
