from __future__ import annotations

import sqlite3
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from icct_rfid.db_schema import ensure_schema
from icct_rfid.events import IngestResult, Outcome, ReaderRegistration, ScanEvent
from icct_rfid.scan_bridge import IngestClient

# 2026-10-19 is a Monday (day_of_week 0)
MONDAY = (2026, 10, 19)


def seed(db_path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.executemany(
            "INSERT INTO students (student_id, student_id_num, first_name, last_name, rfid_tag, status) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (1, "2023-00101", "Juan", "Dela Cruz", "6C429C42", "ACTIVE"),
                (2, "2023-00102", "Maria", "Santos", "A1B2C3D4", "ACTIVE"),
                (3, "2023-00103", "Pedro", "Reyes", "DEADBEEF", "INACTIVE"),
            ],
        )
        conn.execute(
            "INSERT INTO rfid_tags (tag_id, tag_number, student_id, status) VALUES (1, '5E7F8091', 2, 'ACTIVE')"
        )
        conn.executemany(
            "INSERT INTO subject_schedules (schedule_id, subject_code, day_of_week, start_time, end_time, grace_minutes) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (1, "IT101", 0, "08:00", "09:30", None),
                (2, "IT102", 0, "10:00", "11:30", 5),
            ],
        )
        conn.executemany(
            "INSERT INTO student_schedules (student_id, schedule_id) VALUES (?, ?)",
            [(1, 1), (1, 2)],
        )
        conn.commit()


@pytest.fixture
def db_path(tmp_path):
    p = tmp_path / "attendance.sqlite"
    ensure_schema(p)
    seed(p)
    return p


class FakeBroker:
    """Stands in for BrokerClient inside the bridge."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.published: List[tuple] = []
        self.started = 0
        self.stopped = 0

    def start(self) -> bool:
        self.started += 1
        return False

    def stop(self) -> None:
        self.stopped += 1

    def publish(self, topic: str, payload: str) -> bool:
        self.published.append((topic, payload))
        return True


class FakeIngestClient(IngestClient):
    def __init__(self, outcome: Outcome = Outcome.CREATED, *, transport_failure: bool = False):
        self.outcome = outcome
        self.transport_failure = transport_failure
        self.calls: List[ScanEvent] = []
        self.readers: List[ReaderRegistration] = []

    async def ingest(self, event: ScanEvent, raw_tag: str) -> IngestResult:
        self.calls.append(event)
        return IngestResult(self.outcome, transport_failure=self.transport_failure)

    async def register_reader(self, reg: ReaderRegistration) -> Dict[str, Any]:
        self.readers.append(reg)
        return {"deviceId": reg.device_id, "deviceName": reg.device_name}


class FakePahoClient:
    """Records what BrokerClient asks of the paho client."""

    def __init__(self, connect_exc: Optional[BaseException] = None):
        self.connect_exc = connect_exc
        self.calls: List[str] = []
        self.subscribed: List[Any] = []
        self.unsubscribed: List[Any] = []
        self.published: List[tuple] = []
        self.on_connect = None
        self.on_disconnect = None
        self.on_connect_fail = None
        self.on_message = None

    def connect(self, host, port, keepalive=60):
        self.calls.append("connect")
        if self.connect_exc is not None:
            raise self.connect_exc

    def connect_async(self, host, port, keepalive=60):
        self.calls.append("connect_async")

    def loop_start(self):
        self.calls.append("loop_start")

    def loop_stop(self):
        self.calls.append("loop_stop")

    def subscribe(self, topics):
        self.subscribed.append(topics)
        return (0, 1)

    def unsubscribe(self, topics):
        self.unsubscribed.append(topics)

    def disconnect(self):
        self.calls.append("disconnect")

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))
        return SimpleNamespace(rc=0)


@pytest.fixture
def fake_broker():
    return FakeBroker()
