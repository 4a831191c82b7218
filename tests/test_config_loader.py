import pytest

from icct_rfid import config_loader
from icct_rfid.config_loader import (
    get_broker_cfg,
    get_db_path,
    get_ingest_cfg,
    get_log_level,
    get_server_bind,
    load_config,
    validate_environment,
)

BASE = {
    "app": {"store": {"sqlite_path": "db/attendance.sqlite"}, "server": {"host": "0.0.0.0", "port": 9000}},
    "broker": {"url": "", "port": None},
    "bridge": {"mode": "http", "cooldown_ms": 3000},
    "ingest": {"base_url": "http://127.0.0.1:8000", "timeout_s": 8},
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "MQTT_BROKER_URL", "MQTT_BROKER_PORT", "MQTT_USERNAME", "MQTT_PASSWORD",
        "MQTT_CLIENT_ID", "MQTT_MASTER_CARD_ID", "ICCT_DB_PATH", "ICCT_INGEST_URL", "ICCT_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_default_config_loads():
    cfg = load_config()
    assert cfg["bridge"]["cooldown_ms"] == 3000
    assert cfg["broker"]["topics"]["scan"] == "/attendance/run"


def test_missing_file_is_friendly(tmp_path):
    with pytest.raises(RuntimeError, match="Missing configuration file"):
        load_config(tmp_path / "nope.yaml")


def test_store_path_is_required(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text("app: {}\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="app.store.sqlite_path"):
        load_config(p)


def test_non_mapping_root_rejected(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="mapping"):
        load_config(p)


def test_db_path_relative_to_repo_and_env_override(monkeypatch, tmp_path):
    assert get_db_path(BASE) == config_loader.PROJECT_ROOT / "db" / "attendance.sqlite"
    monkeypatch.setenv("ICCT_DB_PATH", str(tmp_path / "x.sqlite"))
    assert get_db_path(BASE) == tmp_path / "x.sqlite"


def test_broker_env_overrides(monkeypatch):
    monkeypatch.setenv("MQTT_BROKER_URL", "ws://broker:9001/mqtt")
    monkeypatch.setenv("MQTT_MASTER_CARD_ID", "MASTER01")
    broker = get_broker_cfg(BASE)
    assert broker["url"] == "ws://broker:9001/mqtt"
    assert broker["master_card_id"] == "MASTER01"
    assert BASE["broker"]["url"] == ""


def test_ingest_and_log_overrides(monkeypatch):
    monkeypatch.setenv("ICCT_INGEST_URL", "http://ingest:8080")
    monkeypatch.setenv("ICCT_LOG_LEVEL", "debug")
    assert get_ingest_cfg(BASE)["base_url"] == "http://ingest:8080"
    assert get_log_level("INFO", BASE) == "DEBUG"


def test_server_bind():
    assert get_server_bind(BASE) == ("0.0.0.0", 9000)
    assert get_server_bind({"app": {}}) == ("127.0.0.1", 8000)


def test_validate_environment():
    errors, warnings = validate_environment(BASE)
    assert errors == []
    assert any("MQTT_BROKER_URL" in w for w in warnings)

    bad = {**BASE, "bridge": {"mode": "carrier-pigeon", "cooldown_ms": 0}, "broker": {"url": "mqtt://b", "port": 70000}}
    errors, _ = validate_environment(bad)
    assert len(errors) == 3
