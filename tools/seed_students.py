"""
Seed demo students, cards and class schedules into the attendance SQLite DB.

Why this exists:
- The ingestion gateway only records scans for cards owned by ACTIVE students.
- Fresh installs have an empty DB, so we seed known tags for reader testing.
- This is safe to re-run: INSERT OR REPLACE keeps IDs stable.

Tags:
  6C429C42  -> Juan Dela Cruz (students.rfid_tag)
  A1B2C3D4  -> Maria Santos   (students.rfid_tag)
  5E7F8091  -> Maria Santos   (rfid_tags registry, spare card)
  CCB6B542  -> nobody; scanning it should answer "Unrecognized card"

Usage:
  (.venv) python tools/seed_students.py [--db path/to/attendance.sqlite]
"""
from __future__ import annotations
import argparse
import sqlite3
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from icct_rfid.config_loader import get_db_path  # noqa: E402
from icct_rfid.db_schema import ensure_schema  # noqa: E402

now = int(time.time())
students = [
    # student_id, student_id_num, first_name, last_name, rfid_tag, status, updated_at
    (1, "2023-00101", "Juan", "Dela Cruz", "6C429C42", "ACTIVE", now),
    (2, "2023-00102", "Maria", "Santos", "A1B2C3D4", "ACTIVE", now),
    (3, "2023-00103", "Pedro", "Reyes", None, "INACTIVE", now),
]
tags = [
    # tag_id, tag_number, student_id, status, assigned_at
    (1, "5E7F8091", 2, "ACTIVE", now),
]
schedules = [
    # schedule_id, subject_code, subject_name, day_of_week, start, end, grace, room
    (1, "IT101", "Intro to Computing", 0, "08:00", "09:30", None, "Lab 1"),
    (2, "IT102", "Programming 1", 2, "10:00", "11:30", 10, "Lab 2"),
    (3, "GE103", "Purposive Communication", 4, "13:00", "14:30", None, "Room 204"),
]
enrolment = [(1, 1), (1, 2), (2, 1), (2, 3)]


def main() -> None:
    ap = argparse.ArgumentParser(description="Seed demo attendance data")
    ap.add_argument("--db", help="SQLite path (default: app.store.sqlite_path)")
    args = ap.parse_args()

    db = Path(args.db) if args.db else get_db_path()
    ensure_schema(db)
    with sqlite3.connect(db) as conn:
        cur = conn.cursor()
        cur.executemany(
            """INSERT OR REPLACE INTO students
               (student_id, student_id_num, first_name, last_name, rfid_tag, status, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            students,
        )
        cur.executemany(
            """INSERT OR REPLACE INTO rfid_tags (tag_id, tag_number, student_id, status, assigned_at)
               VALUES (?, ?, ?, ?, ?)""",
            tags,
        )
        cur.executemany(
            """INSERT OR REPLACE INTO subject_schedules
               (schedule_id, subject_code, subject_name, day_of_week, start_time, end_time, grace_minutes, room)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            schedules,
        )
        cur.executemany(
            "INSERT OR IGNORE INTO student_schedules (student_id, schedule_id) VALUES (?, ?)",
            enrolment,
        )
        conn.commit()
    print(f"Seeded {len(students)} students, {len(tags)} spare tags, {len(schedules)} schedules into {db}")


if __name__ == "__main__":
    main()
