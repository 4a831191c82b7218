"""
ICCT Smart Attendance - RFID Scan Bridge
========================================

Purpose
-------
Receive card taps from RFID readers over MQTT, drop double taps, hand each
accepted scan to the ingestion gateway, and answer the reader on the feedback
topic.

Pipeline
--------
    broker (scan topic) → BrokerClient → ScanCooldown → IngestClient
        → FeedbackPublisher → broker (feedback topic)

Key behaviors
-------------
- Topics: status, mode, scan (/attendance/run) and register are subscribed;
  feedback goes to /attendance/feedback.
- Master card: taps with the configured administrative card are ignored.
- De-duplication: 3 s per-card cooldown; a suppressed tap gets an immediate
  "Already scanned" without any network call.
- Ingest modes:
    * http      : POST /api/attendance/mqtt on the ingestion server (httpx)
    * inprocess : call AttendanceIngestor directly (bridge embedded in server)
- Every ingest call is bounded by ingest.timeout_s; expiry → "Service error".
- Registration mode: "registration" taps are echoed as ready for enrolment,
  "reader_registration" frames upsert the reader in the registry.
- Malformed JSON frames are logged and discarded; the next frame is unaffected.

CLI
---
    python -m icct_rfid.scan_bridge --config /path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

import icct_rfid.config_loader as _config_module
from icct_rfid.config_loader import (
    get_bridge_cfg,
    get_broker_cfg,
    get_db_path,
    get_ingest_cfg,
    get_log_level,
    load_config,
)

from .cooldown import ScanCooldown
from .events import FeedbackMessage, IngestResult, Outcome, ReaderRegistration, ScanEvent
from .feedback import FeedbackPublisher
from .ingest import AttendanceIngestor
from .mqtt_client import BrokerClient, BrokerSettings
from .status_rules import StatusRules

MODE_ATTENDANCE = "attendance"
MODE_REGISTRATION = "registration"
MODE_READER_REGISTRATION = "reader_registration"


# ------------------------------------------------------------
# Ingest clients
# ------------------------------------------------------------

class IngestClient:
    """
    Polymorphic gateway client. Concrete implementations:
      - InProcessIngestClient
      - HttpIngestClient
    """
    async def start(self):
        return

    async def stop(self):
        return

    async def ingest(self, event: ScanEvent, raw_tag: str) -> IngestResult:
        raise NotImplementedError

    async def register_reader(self, reg: ReaderRegistration) -> Dict[str, Any]:
        raise NotImplementedError


class InProcessIngestClient(IngestClient):
    """Calls the gateway in this process; same timeout contract as HTTP."""
    def __init__(self, ingestor: AttendanceIngestor, *, timeout_s: float = 8.0):
        self.ingestor = ingestor
        self.timeout = float(timeout_s)

    async def ingest(self, event: ScanEvent, raw_tag: str) -> IngestResult:
        try:
            return await asyncio.wait_for(self.ingestor.ingest(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            return IngestResult(Outcome.ERROR, error="ingest timeout", transport_failure=True)

    async def register_reader(self, reg: ReaderRegistration) -> Dict[str, Any]:
        return await self.ingestor.register_reader(reg)


class HttpIngestClient(IngestClient):
    """
    Posts scans to the ingestion server with a shared AsyncClient.
    No retry: a failed write is reported to the reader and the student re-taps.
    """
    INGEST_PATH = "/api/attendance/mqtt"
    READERS_PATH = "/api/rfid/readers/mqtt"

    def __init__(self, base_url: str, *, timeout_s: float = 8.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._log = logging.getLogger("bridge.ingest")

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ingest(self, event: ScanEvent, raw_tag: str) -> IngestResult:
        await self.start()
        assert self._client is not None
        t0 = time.perf_counter()
        try:
            resp = await asyncio.wait_for(
                self._client.post(self.INGEST_PATH, json=event.to_ingest_body(raw_tag)),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self._log.warning("ingest_timeout", extra={"tag": raw_tag, "timeout_s": self.timeout})
            return IngestResult(Outcome.ERROR, error="ingest timeout", transport_failure=True)
        except httpx.HTTPError as e:
            self._log.warning("ingest_http_error", extra={"tag": raw_tag, "err": str(e)})
            return IngestResult(Outcome.ERROR, error=str(e), transport_failure=True)

        try:
            body = resp.json()
        except ValueError:
            self._log.warning("ingest_bad_body", extra={"tag": raw_tag, "status": resp.status_code})
            return IngestResult(Outcome.ERROR, error=f"invalid response ({resp.status_code})", transport_failure=True)

        result = IngestResult.from_response(resp.status_code, body)
        self._log.info(
            "ingested",
            extra={
                "tag": raw_tag,
                "status": resp.status_code,
                "outcome": result.outcome.value,
                "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
            },
        )
        return result

    async def register_reader(self, reg: ReaderRegistration) -> Dict[str, Any]:
        await self.start()
        assert self._client is not None
        resp = await self._client.post(self.READERS_PATH, json=reg.to_body())
        body = resp.json()
        if resp.status_code >= 400 or not body.get("success"):
            raise RuntimeError(body.get("error") or f"reader registration failed ({resp.status_code})")
        return body.get("data") or {}


# ------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------

class ScanBridge:
    """
    Wires: BrokerClient → (parse → master card → cooldown) → IngestClient → FeedbackPublisher.
    """
    def __init__(
        self,
        settings: BrokerSettings,
        ingest_client: IngestClient,
        *,
        cooldown: Optional[ScanCooldown] = None,
        broker: Optional[BrokerClient] = None,
        heartbeat_s: float = 30.0,
    ):
        self.settings = settings
        self.topics = settings.topics
        self.ingest_client = ingest_client
        self.cooldown = cooldown if cooldown is not None else ScanCooldown(3000)
        self.broker = broker if broker is not None else BrokerClient(settings, on_message=self._on_broker_message)
        self.feedback = FeedbackPublisher(self.broker, self.topics.feedback)
        self.heartbeat_s = float(heartbeat_s)
        self.log = logging.getLogger("bridge")

        self.mode = MODE_ATTENDANCE
        self.reader_online = False
        self.pending_card_id: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False

        # Observability counters
        self.scans_seen = 0
        self.scans_ingested = 0
        self.scans_suppressed = 0
        self.frames_ignored = 0
        self.frames_invalid = 0

    # ---------------- lifecycle ----------------

    async def run(self, stop_evt: asyncio.Event) -> None:
        self._loop = asyncio.get_running_loop()
        self._running = True
        await self.ingest_client.start()
        started = await asyncio.to_thread(self.broker.start)
        self.log.info(
            "bridge_start",
            extra={"broker": started, "cooldown_ms": self.cooldown.window_ms, "mode": self.mode},
        )
        hb_task = asyncio.create_task(self._heartbeat(), name="bridge_heartbeat")
        try:
            await stop_evt.wait()
        except asyncio.CancelledError:
            self.log.info("bridge_run_cancelled")
        finally:
            hb_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await hb_task
            await asyncio.to_thread(self.broker.stop)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            try:
                await self.ingest_client.stop()
            except Exception:
                self.log.exception("bridge_ingest_stop_failed")
            self._running = False
            self.log.info("bridge_stop", extra=self._counters())

    def _on_broker_message(self, topic: str, payload: bytes) -> None:
        """Network thread → event loop hop; each frame becomes its own task."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._spawn, topic, payload)

    def _spawn(self, topic: str, payload: bytes) -> None:
        t = asyncio.create_task(self.handle_message(topic, payload))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    # ---------------- routing ----------------

    async def handle_message(self, topic: str, payload: bytes | str) -> Optional[FeedbackMessage]:
        """
        Route one inbound frame. Returns the feedback message that was built
        (published or dropped), or None when the frame produces no feedback.
        """
        try:
            text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
            data = json.loads(text)
        except (UnicodeDecodeError, ValueError):
            self.frames_invalid += 1
            logging.getLogger("bridge.parse").info("invalid_json", extra={"topic": topic})
            return None
        if not isinstance(data, dict):
            self.frames_invalid += 1
            return None

        if topic == self.topics.status:
            if data.get("status") == "connected":
                self.reader_online = True
            return None

        if topic == self.topics.mode:
            if data.get("mode") in (MODE_ATTENDANCE, MODE_REGISTRATION):
                self.mode = data["mode"]
                self.log.info("mode_changed", extra={"mode": self.mode})
            return None

        master = self.settings.master_card_id
        if master and str(data.get("rfid") or "").strip().upper() == master.strip().upper():
            self.frames_ignored += 1
            return None

        mode = data.get("mode")
        if mode == MODE_ATTENDANCE and topic == self.topics.scan:
            return await self._handle_scan(data)
        if mode == MODE_REGISTRATION and topic == self.topics.register:
            return self._handle_card_registration(data)
        if mode == MODE_READER_REGISTRATION and topic == self.topics.register:
            await self._handle_reader_registration(data)
            return None

        self.frames_ignored += 1
        return None

    async def _handle_scan(self, data: Dict[str, Any]) -> Optional[FeedbackMessage]:
        raw_tag = str(data.get("rfid") or "").strip()
        event = ScanEvent.from_payload(data)
        self.scans_seen += 1
        if not event.tag:
            self.frames_invalid += 1
            logging.getLogger("bridge.parse").info("reject_empty_tag", extra={"payload": data})
            return None

        if not self.cooldown.should_accept(event.tag):
            self.scans_suppressed += 1
            logging.getLogger("bridge.dedup").info(
                "suppressed", extra={"tag": raw_tag, "window_ms": self.cooldown.window_ms}
            )
            msg = self.feedback.for_cooldown(raw_tag)
            self.feedback.publish(msg)
            return msg

        t0 = time.perf_counter()
        try:
            result = await self.ingest_client.ingest(event, raw_tag)
        except Exception as e:
            logging.getLogger("bridge.ingest").exception("ingest_crashed", extra={"tag": raw_tag})
            result = IngestResult(Outcome.ERROR, error=str(e), transport_failure=True)

        if result.success:
            self.scans_ingested += 1
        msg = self.feedback.for_result(result, raw_tag)
        published = self.feedback.publish(msg)
        logging.getLogger("bridge.event").info(
            "scan_event",
            extra={
                "tag": raw_tag,
                "reader_id": event.reader_id,
                "location": event.location,
                "outcome": result.outcome.value,
                "feedback": msg.message,
                "published": published,
                "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
            },
        )
        return msg

    def _handle_card_registration(self, data: Dict[str, Any]) -> Optional[FeedbackMessage]:
        raw_tag = str(data.get("rfid") or "").strip()
        if not raw_tag:
            self.frames_invalid += 1
            return None
        self.pending_card_id = raw_tag
        msg = self.feedback.for_registration(raw_tag)
        self.feedback.publish(msg)
        self.log.info("card_ready_for_registration", extra={"tag": raw_tag})
        return msg

    async def _handle_reader_registration(self, data: Dict[str, Any]) -> None:
        reg = ReaderRegistration.from_payload(data)
        if not reg.device_id:
            self.frames_invalid += 1
            return
        try:
            stored = await self.ingest_client.register_reader(reg)
            self.log.info("reader_registered", extra={"device_id": reg.device_id, "reader": stored})
        except Exception as e:
            self.log.error("reader_registration_failed", extra={"device_id": reg.device_id, "err": str(e)})

    # ---------------- observability ----------------

    def _counters(self) -> Dict[str, Any]:
        return {
            "seen": self.scans_seen,
            "ingested": self.scans_ingested,
            "suppressed": self.scans_suppressed,
            "ignored": self.frames_ignored,
            "invalid": self.frames_invalid,
            "feedback_sent": self.feedback.sent,
            "feedback_dropped": self.feedback.dropped,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "broker_connected": self.broker.connected,
            "reader_online": self.reader_online,
            "mode": self.mode,
            "pending_card_id": self.pending_card_id,
            "cooldown_entries": len(self.cooldown),
            **self._counters(),
        }

    async def _heartbeat(self):
        """Periodic counters line; also sweeps stale cooldown entries."""
        try:
            while True:
                await asyncio.sleep(self.heartbeat_s)
                dropped = self.cooldown.sweep()
                payload = self._counters()
                payload.update({"connected": self.broker.connected, "swept": dropped})
                logging.getLogger("bridge.hb").info("heartbeat", extra=payload)
        except asyncio.CancelledError:
            return


# ------------------------------------------------------------
# Factory
# ------------------------------------------------------------

def build_bridge(cfg: Dict[str, Any], *, ingestor: Optional[AttendanceIngestor] = None) -> ScanBridge:
    """Build a bridge from the config dict; `ingestor` forces in-process mode."""
    settings = BrokerSettings.from_cfg(get_broker_cfg(cfg))
    bridge_cfg = get_bridge_cfg(cfg)
    ingest_cfg = get_ingest_cfg(cfg)
    timeout_s = float(ingest_cfg.get("timeout_s", 8))

    mode = str(bridge_cfg.get("mode", "http")).lower()
    if ingestor is not None or mode == "inprocess":
        if ingestor is None:
            ingestor = AttendanceIngestor(
                get_db_path(cfg),
                StatusRules(
                    grace_minutes=int(ingest_cfg.get("grace_minutes", 15)),
                    early_arrival_minutes=int(ingest_cfg.get("early_arrival_minutes", 15)),
                ),
            )
        client: IngestClient = InProcessIngestClient(ingestor, timeout_s=timeout_s)
    elif mode == "http":
        client = HttpIngestClient(str(ingest_cfg.get("base_url", "http://127.0.0.1:8000")), timeout_s=timeout_s)
    else:
        raise ValueError(f"Unknown bridge.mode: {mode}")

    cooldown = ScanCooldown(
        int(bridge_cfg.get("cooldown_ms", 3000)),
        sweep_factor=int(bridge_cfg.get("cooldown_sweep_factor", 10)),
    )
    return ScanBridge(settings, client, cooldown=cooldown, heartbeat_s=float(bridge_cfg.get("heartbeat_s", 30)))


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="ICCT RFID scan bridge")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    return ap.parse_args()


async def _amain() -> None:
    args = _parse_args()

    cfg_dict = load_config(args.config) if args.config else load_config(None)
    _config_module.CONFIG = cfg_dict  # ensure helper accessors read the same config

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO", cfg_dict), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop_evt = asyncio.Event()
    bridge = build_bridge(cfg_dict)
    task = asyncio.create_task(bridge.run(stop_evt))
    try:
        await task
    except KeyboardInterrupt:
        stop_evt.set()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def main() -> None:
    try:
        asyncio.run(_amain())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
