# FILE: proofledger/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .kv import canonical_kv_hash


_log = logging.getLogger(__name__)

ENV_PREFIX = "PROOFLEDGER_"
CONFIG_PATH_ENV = ENV_PREFIX + "CONFIG_PATH"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a top-level mapping of scalars from YAML.

      - Missing path or unreadable file: empty mapping, with a warning for
        the latter.
      - Anything other than a mapping at the top level is ignored.
      - Non-scalar values are coerced with str().
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ----------------------------------------------------------

    service_name: str = "proofledger"
    api_version: str = "v1"
    env: str = "dev"

    # How this snapshot was assembled ("defaults", "yaml", "env").
    config_origin: str = "defaults"

    # --- Ledger ------------------------------------------------------------

    # "mem://" or "sqlite:///path/to/ledger.db"
    store_dsn: str = "mem://"

    # On duplicate-query failure: True accepts the candidate, False rejects it.
    duplicate_fail_open: bool = True

    # --- HTTP --------------------------------------------------------------

    enable_docs: bool = True
    max_body_bytes: int = 1_000_000
    caller_header: str = "X-Client-Id"

    # --- Logging -----------------------------------------------------------

    log_level: str = "INFO"

    def config_hash(self) -> str:
        """Stable hash of the current settings, safe to log."""
        return canonical_kv_hash(
            self.model_dump(mode="json"),
            ctx="proofledger:settings",
            label="settings",
        )


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority (later wins):
      1. Settings defaults (in-code).
      2. YAML file pointed to by PROOFLEDGER_CONFIG_PATH.
      3. Environment variables (PROOFLEDGER_*), with bounds. Out-of-range
         values are ignored and the previous layer's value is kept.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_doc = _load_yaml_mapping(os.environ.get(CONFIG_PATH_ENV, "").strip())
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # extra="forbid" rejects unknown keys
        origin = "yaml"

    before = dict(merged)

    merged["service_name"] = _env_str(ENV_PREFIX + "SERVICE_NAME", merged["service_name"])
    merged["api_version"] = _env_str(ENV_PREFIX + "API_VERSION", merged["api_version"])
    merged["env"] = _env_str(ENV_PREFIX + "ENV", merged["env"])
    merged["store_dsn"] = _env_str(ENV_PREFIX + "STORE_DSN", merged["store_dsn"])
    merged["duplicate_fail_open"] = _env_bool(
        ENV_PREFIX + "DUPLICATE_FAIL_OPEN", merged["duplicate_fail_open"]
    )
    merged["enable_docs"] = _env_bool(ENV_PREFIX + "ENABLE_DOCS", merged["enable_docs"])
    merged["caller_header"] = _env_str(ENV_PREFIX + "CALLER_HEADER", merged["caller_header"])

    body_env = _env_int(ENV_PREFIX + "MAX_BODY_BYTES", merged["max_body_bytes"])
    if 1_024 <= body_env <= 64 * 1024 * 1024:
        merged["max_body_bytes"] = body_env

    level_env = _env_str(ENV_PREFIX + "LOG_LEVEL", merged["log_level"]).upper()
    if level_env in _LOG_LEVELS:
        merged["log_level"] = level_env

    if merged != before:
        origin = "env" if origin == "defaults" else origin + "+env"
    merged["config_origin"] = origin

    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe holder for the current Settings snapshot.

    get() returns the immutable snapshot; refresh() reloads from file and
    environment and swaps it in. store_dsn is kept from the first snapshot
    since the store is opened once per process.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new = load_settings()
            if new.store_dsn != old.store_dsn:
                _log.warning(
                    "store_dsn change ignored on refresh; restart to switch stores",
                )
                new = new.model_copy(update={"store_dsn": old.store_dsn})
            if new.config_hash() != old.config_hash():
                _log.info(
                    "settings refreshed",
                    extra={"config_hash": new.config_hash(), "origin": new.config_origin},
                )
            self._settings = new
            return new


_settings_singleton: Optional[ReloadableSettings] = None
_singleton_lock = threading.Lock()


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings()


def get_settings() -> ReloadableSettings:
    """Process-wide ReloadableSettings, created on first use."""
    global _settings_singleton
    with _singleton_lock:
        if _settings_singleton is None:
            _settings_singleton = make_reloadable_settings()
        return _settings_singleton
