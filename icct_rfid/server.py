from __future__ import annotations

"""
ICCT Smart Attendance - icct_rfid/server.py
-------------------------------------------
Ingestion server for RFID scans relayed by the scan bridge.

1) POST /api/attendance/mqtt
   - One scan in, one classified outcome out: created / duplicate (200),
     invalid_payload (400), unrecognized (404, "... not found"), error (500).
   - The body always carries an explicit `outcome` so clients never have to
     sniff error text.

2) POST /api/rfid/readers/mqtt
   - Reader registry upsert keyed by deviceId.

3) Health checks
   - /health, /healthz: liveness (no DB access).
   - /readyz: readiness (touches SQLite to confirm schema presence).
   - /health/environment: configuration check; 503 when it has errors.

4) Embedded bridge
   - bridge.embedded: true starts the scan bridge inside this process, calling
     the gateway directly (no HTTP hop). GET /bridge/status reports on it.

5) DB path
   - Sourced via config_loader.get_db_path() (ICCT_DB_PATH wins over YAML).
"""

import asyncio
import contextlib
import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError, field_validator

import icct_rfid.config_loader as _config_loader
from .config_loader import get_bridge_cfg, get_db_path, get_ingest_cfg, validate_environment
from .db_schema import ensure_schema, missing_tables
from .events import IngestResult, Outcome, ReaderRegistration, ScanEvent, safe_int
from .ingest import AttendanceIngestor
from .status_rules import StatusRules

log = logging.getLogger("icct")
log.setLevel(logging.INFO)


# ------------------------------------------------------------
# FastAPI app bootstrap
# ------------------------------------------------------------
app = FastAPI(title="ICCT RFID Ingestion", version="0.1.0")


# ------------------------------------------------------------
# Request models
# ------------------------------------------------------------
class AttendanceIn(BaseModel):
    rfid: Optional[str] = None
    readerId: Optional[int] = None
    location: Optional[str] = None
    timestamp: Optional[str] = None
    deviceInfo: Optional[Dict[str, Any]] = None

    @field_validator("rfid", mode="before")
    @classmethod
    def _tag_as_text(cls, v):
        # some firmware sends numeric UIDs
        return None if v is None else str(v).strip()

    @field_validator("readerId", mode="before")
    @classmethod
    def _reader_id(cls, v):
        return safe_int(v, None)


class ReaderIn(BaseModel):
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None
    ipAddress: Optional[str] = None
    macAddress: Optional[str] = None
    firmwareVersion: Optional[str] = None
    location: Optional[str] = None

    @field_validator("deviceId", mode="before")
    @classmethod
    def _device_id(cls, v):
        return None if v is None else str(v).strip()


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def _ingestor() -> AttendanceIngestor:
    ing = getattr(app.state, "ingestor", None)
    if ing is None:
        ingest_cfg = get_ingest_cfg()
        ing = AttendanceIngestor(
            get_db_path(),
            StatusRules(
                grace_minutes=int(ingest_cfg.get("grace_minutes", 15)),
                early_arrival_minutes=int(ingest_cfg.get("early_arrival_minutes", 15)),
            ),
        )
        app.state.ingestor = ing
    return ing


async def _json_object(request: Request) -> Optional[Dict[str, Any]]:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _invalid(error: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "outcome": Outcome.INVALID_PAYLOAD.value, "error": error},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


# ------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------
@app.on_event("startup")
async def prepare_store() -> None:
    """Ensure schema and build the gateway once logging is fully initialized."""
    db_path = get_db_path()
    ensure_schema(db_path, recreate=False)
    app.state.ingestor = None
    _ingestor()
    log.info("db_path=%s", db_path.resolve())


@app.on_event("startup")
async def start_embedded_bridge() -> None:
    """
    Start the scan bridge in-process when bridge.embedded is true.
    An external bridge (python -m icct_rfid.scan_bridge) must leave this off.
    """
    app.state.bridge = None
    app.state.bridge_task = None
    cfg = _config_loader.CONFIG
    if not bool(get_bridge_cfg(cfg).get("embedded", False)):
        log.info("Embedded scan bridge DISABLED; expecting an external bridge process")
        return
    try:
        from .scan_bridge import build_bridge

        bridge = build_bridge(cfg, ingestor=_ingestor())
        stop_evt = asyncio.Event()
        task = asyncio.get_running_loop().create_task(bridge.run(stop_evt), name="scan_bridge")
        app.state.bridge = bridge
        app.state.bridge_stop = stop_evt
        app.state.bridge_task = task
        log.info("Embedded scan bridge started (cooldown=%sms)", bridge.cooldown.window_ms)
    except Exception:
        log.exception("Failed to start embedded scan bridge")


@app.on_event("shutdown")
async def stop_embedded_bridge() -> None:
    task = getattr(app.state, "bridge_task", None)
    if task is None:
        return
    app.state.bridge_stop.set()
    try:
        await asyncio.wait_for(task, timeout=5.0)
    except asyncio.TimeoutError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    except Exception:
        log.exception("Embedded scan bridge stopped with an error")
    app.state.bridge_task = None


# ------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------
@app.post("/api/attendance/mqtt")
async def attendance_mqtt(request: Request):
    """
    Record one RFID scan. Repeating a scan for the same student, class and day
    returns the existing record with duplicate=true instead of a second row.
    """
    data = await _json_object(request)
    if data is None:
        return _invalid("Invalid JSON body")
    try:
        body = AttendanceIn.model_validate(data)
    except ValidationError as ve:
        return _invalid(f"Invalid payload: {ve.errors()[0].get('msg', 'validation error')}")

    tag = body.rfid or "-"
    try:
        event = ScanEvent.from_payload(body.model_dump())
        result = await _ingestor().ingest(event)
    except Exception:
        log.exception("Ingest failed for tag %s", tag)
        result = IngestResult(Outcome.ERROR, error="Internal server error")

    code, out = result.to_response()
    log.info("[attendance] tag=%s reader=%s outcome=%s", tag, body.readerId, result.outcome.value)
    return JSONResponse(out, status_code=code)


@app.post("/api/rfid/readers/mqtt")
async def register_reader_mqtt(request: Request):
    data = await _json_object(request)
    if data is None:
        return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)
    try:
        body = ReaderIn.model_validate(data)
    except ValidationError as ve:
        return JSONResponse({"success": False, "error": f"Invalid payload: {ve.errors()[0].get('msg')}"}, status_code=400)

    reg = ReaderRegistration.from_payload(body.model_dump())
    if not reg.device_id:
        return JSONResponse({"success": False, "error": "Missing 'deviceId'"}, status_code=400)
    try:
        stored = await _ingestor().register_reader(reg)
    except Exception:
        log.exception("Reader registration failed for %s", reg.device_id)
        return JSONResponse({"success": False, "error": "Failed to register reader"}, status_code=500)
    log.info("[readers] upserted device_id=%s", reg.device_id)
    return {"success": True, "data": stored}


@app.get("/api/attendance/status-options")
async def status_options():
    try:
        options = await _ingestor().status_options()
    except Exception:
        log.exception("Status options query failed")
        return JSONResponse({"success": False, "error": "Failed to fetch status options"}, status_code=500)
    return {"success": True, "data": options}


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------
@app.get("/health")
def health_alias():
    return {"status": "ok", "service": "icct-rfid"}


@app.get("/healthz")
async def healthz():
    """
    Lightweight liveness check. Returns 200 if the app is up and able to serve.
    Does not touch the database.
    """
    return {"status": "ok", "service": "icct-rfid"}


@app.get("/readyz")
def readyz():
    """
    Readiness check. Verifies DB is reachable and every table is present.
    Returns 200 with basic info if good; 503 if DB check fails.
    """
    db_path = _ingestor().db_path
    try:
        with contextlib.closing(sqlite3.connect(str(db_path))) as db:
            missing = missing_tables(db)
        if missing:
            return JSONResponse(
                {"status": "degraded", "missing_tables": missing},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        return {"status": "ok", "db_path": str(db_path)}
    except Exception as e:
        return Response(
            content='{"status":"degraded","error":"%s"}' % type(e).__name__,
            media_type="application/json",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


@app.get("/health/environment")
async def health_environment():
    errors, warnings = validate_environment(_config_loader.CONFIG)
    if errors:
        log.error("Environment validation failed: %s", errors)
        return JSONResponse(
            {
                "status": "unhealthy",
                "environment": "invalid",
                "errors": errors,
                "warnings": warnings,
                "timestamp": _utc_now_iso(),
            },
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if warnings:
        log.warning("Environment warnings: %s", warnings)
    return {"status": "healthy", "environment": "valid", "warnings": warnings, "timestamp": _utc_now_iso()}


@app.get("/bridge/status")
async def bridge_status():
    bridge = getattr(app.state, "bridge", None)
    if bridge is None:
        return {"running": False, "embedded": False}
    return {"embedded": True, **bridge.status()}


if __name__ == "__main__":
    import uvicorn

    from .config_loader import get_log_level, get_server_bind

    logging.basicConfig(
        level=getattr(logging, get_log_level(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    uvicorn.run(app, host=host, port=port)
