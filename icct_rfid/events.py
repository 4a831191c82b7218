from __future__ import annotations
import json
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .db_schema import normalize_tag

# ---------- small helpers ----------

def now_ms() -> int:
    return int(time.time() * 1000)

def safe_int(x, default=None):
    try:
        return int(x)
    except (TypeError, ValueError):
        return default

def parse_timestamp(raw: Any) -> Optional[datetime]:
    """
    ISO8601 -> naive local datetime, None when missing or unparseable.
    Aware timestamps (e.g. '...Z' from readers) are converted to local time,
    because schedules are stored as local wall-clock times.
    """
    if not raw or not isinstance(raw, str):
        return None
    txt = raw.strip()
    if txt.endswith(("Z", "z")):
        txt = txt[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(txt)
    except ValueError:
        return None
    if ts.tzinfo is not None:
        try:
            ts = ts.astimezone().replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            # out of range once shifted to local time (e.g. year 1 with +05:00)
            return None
    return ts

# ---------- outcomes ----------

class Outcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    UNRECOGNIZED = "unrecognized"
    INVALID_PAYLOAD = "invalid_payload"
    ERROR = "error"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    Outcome.CREATED: 200,
    Outcome.DUPLICATE: 200,
    Outcome.INVALID_PAYLOAD: 400,
    Outcome.UNRECOGNIZED: 404,
    Outcome.ERROR: 500,
}


class FeedbackStatus(str, Enum):
    RECOGNIZED = "recognized"
    UNRECOGNIZED = "unrecognized"
    ERROR = "error"

# ---------- inbound ----------

@dataclass
class ScanEvent:
    tag: str
    reader_id: int = 1
    location: str = "Unknown"
    observed_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ScanEvent":
        """Build from either the broker scan payload or the HTTP ingest body."""
        device_info = data.get("deviceInfo") or {}
        ts_raw = data.get("timestamp") or (device_info.get("timestamp") if isinstance(device_info, dict) else None)
        return cls(
            tag=normalize_tag(data.get("rfid")),
            reader_id=safe_int(data.get("readerId"), 1) or 1,
            location=str(data.get("location") or "Unknown"),
            observed_at=parse_timestamp(ts_raw),
        )

    def to_ingest_body(self, raw_tag: Optional[str] = None) -> Dict[str, Any]:
        ts = self.observed_at or datetime.now()
        return {
            "rfid": raw_tag if raw_tag is not None else self.tag,
            "readerId": self.reader_id,
            "location": self.location,
            "deviceInfo": {"timestamp": ts.isoformat(), "mqttSource": True},
        }


@dataclass
class ReaderRegistration:
    device_id: str
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    firmware_version: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ReaderRegistration":
        device_id = str(data.get("deviceId") or data.get("rfid") or "").strip()
        return cls(
            device_id=device_id,
            device_name=data.get("deviceName") or (f"Reader {device_id}" if device_id else None),
            ip_address=data.get("ipAddress"),
            mac_address=data.get("macAddress"),
            firmware_version=data.get("firmwareVersion"),
            location=data.get("location"),
        )

    def to_body(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "ipAddress": self.ip_address,
            "macAddress": self.mac_address,
            "firmwareVersion": self.firmware_version,
            "location": self.location,
        }

# ---------- results ----------

@dataclass
class IngestResult:
    outcome: Outcome
    attendance: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    # True when the failure never got an answer from the gateway (timeout, refused, ...)
    transport_failure: bool = False

    @property
    def success(self) -> bool:
        return self.outcome in (Outcome.CREATED, Outcome.DUPLICATE)

    @property
    def duplicate(self) -> bool:
        return self.outcome is Outcome.DUPLICATE

    def to_response(self) -> Tuple[int, Dict[str, Any]]:
        body: Dict[str, Any] = {"success": self.success, "outcome": self.outcome.value}
        if self.attendance is not None:
            body["attendance"] = self.attendance
        if self.success:
            body["duplicate"] = self.duplicate
        if self.error:
            body["error"] = self.error
        return self.outcome.http_status, body

    @classmethod
    def from_response(cls, status_code: int, body: Any) -> "IngestResult":
        """
        Rebuild a result from the HTTP contract. The explicit 'outcome' field
        wins; older servers without it are classified by status code.
        """
        body = body if isinstance(body, dict) else {}
        error = body.get("error") if isinstance(body.get("error"), str) else None
        try:
            outcome = Outcome(body.get("outcome"))
        except ValueError:
            if body.get("success"):
                outcome = Outcome.DUPLICATE if body.get("duplicate") else Outcome.CREATED
            elif status_code == 404:
                outcome = Outcome.UNRECOGNIZED
            elif status_code == 400:
                outcome = Outcome.INVALID_PAYLOAD
            else:
                outcome = Outcome.ERROR
        return cls(outcome=outcome, attendance=body.get("attendance"), error=error)

# ---------- outbound ----------

@dataclass
class FeedbackMessage:
    topic: str
    message: str
    status: FeedbackStatus
    value: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "message": self.message,
            "status": self.status.value,
            "value": self.value,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload())
