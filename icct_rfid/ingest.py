"""
icct_rfid/ingest.py
-------------------
Ingestion gateway: one normalized scan in, one classified outcome out.

Steps per scan:
  1) empty tag                        -> INVALID_PAYLOAD (nothing written)
  2) resolve tag to an ACTIVE student: students.rfid_tag first, then the
     rfid_tags registry (registry only consulted on a primary miss)
  3) no student                       -> UNRECOGNIZED ("... not found")
  4) existing RFID row for (student, class-or-none, date)
                                      -> DUPLICATE (same row returned)
  5) otherwise insert one row         -> CREATED
  6) any sqlite failure               -> ERROR

The UNIQUE index on attendance makes step 4/5 safe against two overlapping
scans: the loser of the insert race reads back the winner's row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from .db_schema import ATTENDANCE_TYPE_RFID, normalize_tag
from .events import IngestResult, Outcome, ReaderRegistration, ScanEvent, now_ms
from .status_rules import ScheduleWindow, StatusRules, parse_hhmm

log = logging.getLogger("icct.ingest")


async def _fetch_one(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    row = await cur.fetchone()
    await cur.close()
    return row


async def _fetch_all(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    rows = await cur.fetchall()
    await cur.close()
    return list(rows)


def _attendance_dict(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "attendanceId": int(row["attendance_id"]),
        "studentId": int(row["student_id"]),
        "studentName": f"{row['first_name']} {row['last_name']}".strip(),
        "scheduleId": (int(row["schedule_id"]) if row["schedule_id"] is not None else None),
        "subjectCode": row["subject_code"],
        "date": row["attend_date"],
        "timestamp": row["observed_at"],
        "status": row["status"],
        "attendanceType": row["attendance_type"],
        "rfidTag": row["rfid_tag"],
        "readerId": row["reader_id"],
        "location": row["location"],
    }


_ATTENDANCE_SELECT = """
SELECT a.*, s.first_name, s.last_name, sc.subject_code
FROM attendance a
JOIN students s ON s.student_id = a.student_id
LEFT JOIN subject_schedules sc ON sc.schedule_id = a.schedule_id
"""


class AttendanceIngestor:
    """Writes RFID attendance rows into the SQLite store."""

    def __init__(self, db_path: str | Path, rules: Optional[StatusRules] = None):
        self.db_path = Path(db_path)
        self.rules = rules if rules is not None else StatusRules()

    # ------------------------------------------------------------------
    # identity
    # ------------------------------------------------------------------
    async def resolve_tag(self, db: aiosqlite.Connection, tag: str) -> Optional[Dict[str, Any]]:
        """Return {studentId, name, via} for an ACTIVE student owning `tag`, else None."""
        row = await _fetch_one(
            db,
            "SELECT student_id, first_name, last_name FROM students "
            "WHERE rfid_tag = ? COLLATE NOCASE AND status = 'ACTIVE'",
            (tag,),
        )
        via = "student"
        if row is None:
            row = await _fetch_one(
                db,
                "SELECT s.student_id, s.first_name, s.last_name "
                "FROM rfid_tags t JOIN students s ON s.student_id = t.student_id "
                "WHERE t.tag_number = ? COLLATE NOCASE AND t.status = 'ACTIVE' AND s.status = 'ACTIVE'",
                (tag,),
            )
            via = "registry"
        if row is None:
            return None
        return {
            "studentId": int(row["student_id"]),
            "name": f"{row['first_name']} {row['last_name']}".strip(),
            "via": via,
        }

    async def schedules_for(self, db: aiosqlite.Connection, student_id: int, weekday: int) -> List[ScheduleWindow]:
        rows = await _fetch_all(
            db,
            "SELECT sc.schedule_id, sc.subject_code, sc.day_of_week, sc.start_time, sc.end_time, sc.grace_minutes "
            "FROM student_schedules ss JOIN subject_schedules sc ON sc.schedule_id = ss.schedule_id "
            "WHERE ss.student_id = ? AND sc.day_of_week = ?",
            (student_id, weekday),
        )
        windows = []
        for r in rows:
            try:
                windows.append(ScheduleWindow(
                    schedule_id=int(r["schedule_id"]),
                    subject_code=str(r["subject_code"]),
                    day_of_week=int(r["day_of_week"]),
                    start_time=parse_hhmm(r["start_time"]),
                    end_time=parse_hhmm(r["end_time"]),
                    grace_minutes=(int(r["grace_minutes"]) if r["grace_minutes"] is not None else None),
                ))
            except ValueError:
                log.warning("Skipping schedule %s with malformed times", r["schedule_id"])
        return windows

    async def _existing(self, db: aiosqlite.Connection, student_id: int, schedule_id: Optional[int], day: str):
        return await _fetch_one(
            db,
            _ATTENDANCE_SELECT
            + "WHERE a.student_id = ? AND IFNULL(a.schedule_id, 0) = ? AND a.attend_date = ? "
              "AND a.attendance_type = ?",
            (student_id, schedule_id or 0, day, ATTENDANCE_TYPE_RFID),
        )

    # ------------------------------------------------------------------
    # ingest
    # ------------------------------------------------------------------
    async def ingest(self, event: ScanEvent) -> IngestResult:
        tag = normalize_tag(event.tag)
        if not tag:
            return IngestResult(Outcome.INVALID_PAYLOAD, error="Missing 'rfid'")

        ts = event.observed_at or datetime.now()
        day = ts.date().isoformat()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys=ON")

                student = await self.resolve_tag(db, tag)
                if student is None:
                    return IngestResult(Outcome.UNRECOGNIZED, error=f"RFID tag {tag} not found")

                sid = student["studentId"]
                schedule = self.rules.pick_schedule(ts, await self.schedules_for(db, sid, ts.weekday()))
                schedule_id = schedule.schedule_id if schedule else None

                row = await self._existing(db, sid, schedule_id, day)
                if row is not None:
                    return IngestResult(Outcome.DUPLICATE, attendance=_attendance_dict(row))

                status = self.rules.derive(ts, schedule)
                device_info = {"timestamp": ts.isoformat(), "mqttSource": True}
                try:
                    await db.execute(
                        "INSERT INTO attendance (student_id, schedule_id, attend_date, observed_at, status, "
                        "attendance_type, rfid_tag, reader_id, location, device_info_json, created_at_utc) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            sid, schedule_id, day, ts.isoformat(timespec="seconds"), status.value,
                            ATTENDANCE_TYPE_RFID, tag, event.reader_id, event.location,
                            json.dumps(device_info), now_ms(),
                        ),
                    )
                    await db.commit()
                except sqlite3.IntegrityError:
                    # Lost the race against an overlapping scan of the same card.
                    row = await self._existing(db, sid, schedule_id, day)
                    if row is None:
                        raise
                    return IngestResult(Outcome.DUPLICATE, attendance=_attendance_dict(row))

                row = await self._existing(db, sid, schedule_id, day)
                return IngestResult(Outcome.CREATED, attendance=_attendance_dict(row))
        except sqlite3.Error as ex:
            log.error("[ingest] store failure for tag=%s: %s: %s", tag, type(ex).__name__, ex)
            return IngestResult(Outcome.ERROR, error="Failed to record attendance")

    # ------------------------------------------------------------------
    # readers & lookups
    # ------------------------------------------------------------------
    async def register_reader(self, reg: ReaderRegistration) -> Dict[str, Any]:
        """Upsert a reader by device_id; returns the stored row as a dict."""
        if not reg.device_id:
            raise ValueError("Missing 'deviceId'")
        now = int(time.time())
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                "INSERT INTO rfid_readers (device_id, device_name, ip_address, mac_address, firmware_version, "
                "location, registered_utc, last_seen_utc) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(device_id) DO UPDATE SET "
                "device_name = COALESCE(excluded.device_name, device_name), "
                "ip_address = COALESCE(excluded.ip_address, ip_address), "
                "mac_address = COALESCE(excluded.mac_address, mac_address), "
                "firmware_version = COALESCE(excluded.firmware_version, firmware_version), "
                "location = COALESCE(excluded.location, location), "
                "last_seen_utc = excluded.last_seen_utc",
                (
                    reg.device_id, reg.device_name, reg.ip_address, reg.mac_address,
                    reg.firmware_version, reg.location, now, now,
                ),
            )
            await db.commit()
            row = await _fetch_one(db, "SELECT * FROM rfid_readers WHERE device_id = ?", (reg.device_id,))
        return {
            "readerId": int(row["reader_id"]),
            "deviceId": row["device_id"],
            "deviceName": row["device_name"],
            "ipAddress": row["ip_address"],
            "macAddress": row["mac_address"],
            "firmwareVersion": row["firmware_version"],
            "location": row["location"],
            "status": row["status"],
        }

    async def status_options(self) -> List[str]:
        """Distinct statuses present on RFID attendance rows, sorted."""
        async with aiosqlite.connect(self.db_path) as db:
            rows = await _fetch_all(
                db,
                "SELECT DISTINCT status FROM attendance WHERE attendance_type = ? ORDER BY status ASC",
                (ATTENDANCE_TYPE_RFID,),
            )
        return [r[0] for r in rows]
