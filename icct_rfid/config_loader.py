# icct_rfid/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the ICCT RFID scan bridge.

Single source of truth:
    config/config.yaml

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Environment variables win over YAML for deployment secrets and endpoints
  (broker URL/credentials, master card, DB path, ingest URL, log level).
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path() -> pathlib.Path
- get_broker_cfg() -> dict
- get_bridge_cfg() -> dict
- get_ingest_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
- validate_environment() -> (errors, warnings)
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

# env var -> key inside the "broker" section
_BROKER_ENV = {
    "MQTT_BROKER_URL": "url",
    "MQTT_BROKER_PORT": "port",
    "MQTT_USERNAME": "username",
    "MQTT_PASSWORD": "password",
    "MQTT_CLIENT_ID": "client_id",
    "MQTT_MASTER_CARD_ID": "master_card_id",
}


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def _env(name: str) -> Optional[str]:
    val = os.getenv(name)
    if val is None:
        return None
    val = val.strip()
    return val or None


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml), validate required shape,
    and return the raw dict (unmodified).
    """
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for the store:
    try:
        sqlite_path = cfg["app"]["store"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.store.sqlite_path must be a non-empty string")
    except (KeyError, TypeError) as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.store.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with a "
            "'store.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


def _cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return CONFIG if cfg is None else cfg


# ---------- Accessors ----------
def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database (ICCT_DB_PATH wins)."""
    override = _env("ICCT_DB_PATH")
    if override:
        return _resolve_path(override)
    sqlite_path = (
        _cfg(cfg).get("app", {})
                 .get("store", {})
                 .get("sqlite_path")
    )
    if not sqlite_path:
        # This should be unreachable because load_config already validated it.
        raise RuntimeError("CONFIG missing app.store.sqlite_path")
    return _resolve_path(sqlite_path)


def get_broker_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the broker block with MQTT_* environment overrides applied."""
    broker = dict(_cfg(cfg).get("broker", {}) or {})
    for env_name, key in _BROKER_ENV.items():
        val = _env(env_name)
        if val is not None:
            broker[key] = val
    return broker


def get_bridge_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return scan bridge configuration block (mode/cooldown/heartbeat) or {}."""
    return _cfg(cfg).get("bridge", {}) or {}


def get_ingest_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return ingestion block (base_url/timeout/grace) with ICCT_INGEST_URL applied."""
    ingest = dict(_cfg(cfg).get("ingest", {}) or {})
    url = _env("ICCT_INGEST_URL")
    if url:
        ingest["base_url"] = url
    return ingest


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """
    Return log level as 'INFO'/'DEBUG', etc.
    Server logging is controlled separately by Uvicorn / logging config.
    """
    lvl = _env("ICCT_LOG_LEVEL") or (_cfg(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) for the ingestion server, default ('127.0.0.1', 8000)."""
    server = (_cfg(cfg).get("app", {})
                       .get("server", {})) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000


def validate_environment(cfg: Optional[Dict[str, Any]] = None) -> Tuple[List[str], List[str]]:
    """
    Check the effective configuration (YAML + env overrides).
    Returns (errors, warnings); any error means the service cannot do its job.
    """
    c = _cfg(cfg)
    errors: List[str] = []
    warnings: List[str] = []

    broker = get_broker_cfg(c)
    if not broker.get("url"):
        warnings.append("MQTT_BROKER_URL is not set; the scan bridge will not connect")
    port = broker.get("port")
    if port not in (None, ""):
        try:
            if not 0 < int(port) < 65536:
                errors.append(f"broker port out of range: {port!r}")
        except (TypeError, ValueError):
            errors.append(f"broker port is not a number: {port!r}")
    if broker.get("username") and not broker.get("password"):
        warnings.append("MQTT_USERNAME is set without MQTT_PASSWORD")
    if not broker.get("master_card_id"):
        warnings.append("MQTT_MASTER_CARD_ID is not set; no card is treated as the master card")

    bridge = get_bridge_cfg(c)
    mode = str(bridge.get("mode", "http")).lower()
    if mode not in ("http", "inprocess"):
        errors.append(f"bridge.mode must be 'http' or 'inprocess', got {mode!r}")
    try:
        if int(bridge.get("cooldown_ms", 3000)) <= 0:
            errors.append("bridge.cooldown_ms must be positive")
    except (TypeError, ValueError):
        errors.append(f"bridge.cooldown_ms is not a number: {bridge.get('cooldown_ms')!r}")

    ingest = get_ingest_cfg(c)
    try:
        if float(ingest.get("timeout_s", 8)) <= 0:
            errors.append("ingest.timeout_s must be positive")
    except (TypeError, ValueError):
        errors.append(f"ingest.timeout_s is not a number: {ingest.get('timeout_s')!r}")
    if mode == "http" and not str(ingest.get("base_url") or "").startswith(("http://", "https://")):
        errors.append("ingest.base_url must be an http(s) URL when bridge.mode is 'http'")

    if get_log_level("INFO", c) not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        warnings.append(f"unknown log level {get_log_level('INFO', c)!r}; INFO is used")

    return errors, warnings
