"""
Attendance status derivation for RFID scans.

Rule set:
  - scan inside a class window, at or before start + grace  -> PRESENT
  - scan inside a class window, after start + grace         -> LATE
  - no class window matches the scan                        -> LOGGED

A class window opens `early_arrival_minutes` before the scheduled start and
closes at the scheduled end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Iterable, Optional


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    LOGGED = "LOGGED"


def parse_hhmm(raw: str) -> time:
    """'08:30' or '08:30:00' -> time(8, 30)."""
    parts = str(raw).strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"expected HH:MM, got {raw!r}")
    hh, mm = int(parts[0]), int(parts[1])
    ss = int(parts[2]) if len(parts) > 2 else 0
    return time(hh, mm, ss)


@dataclass(frozen=True)
class ScheduleWindow:
    schedule_id: int
    subject_code: str
    day_of_week: int
    start_time: time
    end_time: time
    grace_minutes: Optional[int] = None

    def opens_at(self, day: datetime, early_arrival_minutes: int) -> datetime:
        return datetime.combine(day.date(), self.start_time) - timedelta(minutes=early_arrival_minutes)

    def contains(self, ts: datetime, early_arrival_minutes: int) -> bool:
        if ts.weekday() != self.day_of_week:
            return False
        closes = datetime.combine(ts.date(), self.end_time)
        return self.opens_at(ts, early_arrival_minutes) <= ts <= closes


@dataclass(frozen=True)
class StatusRules:
    grace_minutes: int = 15
    early_arrival_minutes: int = 15

    def pick_schedule(self, ts: datetime, schedules: Iterable[ScheduleWindow]) -> Optional[ScheduleWindow]:
        """Earliest-starting window containing `ts`; overlapping classes resolve to the first one."""
        matches = [s for s in schedules if s.contains(ts, self.early_arrival_minutes)]
        if not matches:
            return None
        return min(matches, key=lambda s: (s.start_time, s.schedule_id))

    def derive(self, ts: datetime, schedule: Optional[ScheduleWindow]) -> AttendanceStatus:
        if schedule is None:
            return AttendanceStatus.LOGGED
        grace = self.grace_minutes if schedule.grace_minutes is None else schedule.grace_minutes
        allowed = datetime.combine(ts.date(), schedule.start_time) + timedelta(minutes=grace)
        if ts <= allowed:
            return AttendanceStatus.PRESENT
        return AttendanceStatus.LATE
