from __future__ import annotations


"""
icct_rfid/db_schema.py
----------------------
Centralized, idempotent SQLite schema management for the RFID ingestion path.

Design goals
- Identity lookup by tag in two places:
  * students.rfid_tag        : the tag assigned directly on the student row.
  * rfid_tags.tag_number     : the tag registry (spare/replacement cards).
- Schedule context for status derivation (subject_schedules + student_schedules).
- One attendance row per (student, schedule-or-none, date) for RFID scans,
  guaranteed at the DB level via a partial UNIQUE expression index.
- Reader registry fed by reader_registration messages.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

IMPORTANT:
SQLite only enforces FOREIGN KEY constraints when 'PRAGMA foreign_keys=ON' is set
on the connection performing writes. Ensure your runtime DB connections do that.
"""

from pathlib import Path
import sqlite3
from typing import Iterable, List

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 2

ATTENDANCE_TYPE_RFID = "RFID_SCAN"

# ------------------------
# DDL: Identity
# ------------------------
STUDENTS_DDL = """
CREATE TABLE IF NOT EXISTS students (
    student_id     INTEGER PRIMARY KEY,
    student_id_num TEXT,                      -- school-issued ID ('2023-00123')
    first_name     TEXT NOT NULL,
    last_name      TEXT NOT NULL,
    rfid_tag       TEXT,                      -- primary assigned card, nullable
    status         TEXT NOT NULL DEFAULT 'ACTIVE',
    updated_at     INTEGER                    -- epoch seconds (updated by app)
);
-- Partial UNIQUE: an assigned tag belongs to exactly one student.
CREATE UNIQUE INDEX IF NOT EXISTS idx_students_rfid_unique
ON students(rfid_tag COLLATE NOCASE)
WHERE rfid_tag IS NOT NULL;
"""

RFID_TAGS_DDL = """
-- Secondary registry; consulted only when students.rfid_tag has no match.
CREATE TABLE IF NOT EXISTS rfid_tags (
    tag_id      INTEGER PRIMARY KEY,
    tag_number  TEXT NOT NULL,
    student_id  INTEGER,                      -- FK to students; NULL when unassigned
    status      TEXT NOT NULL DEFAULT 'ACTIVE',
    assigned_at INTEGER,
    FOREIGN KEY (student_id) REFERENCES students(student_id) ON DELETE SET NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_rfid_tags_number_unique
ON rfid_tags(tag_number COLLATE NOCASE);
"""

# ------------------------
# DDL: Schedule context
# ------------------------
SCHEDULES_DDL = """
CREATE TABLE IF NOT EXISTS subject_schedules (
    schedule_id   INTEGER PRIMARY KEY,
    subject_code  TEXT NOT NULL,
    subject_name  TEXT,
    day_of_week   INTEGER NOT NULL,           -- 0 = Monday ... 6 = Sunday
    start_time    TEXT NOT NULL,              -- 'HH:MM' local wall clock
    end_time      TEXT NOT NULL,              -- 'HH:MM'
    grace_minutes INTEGER,                    -- NULL = use ingest.grace_minutes
    room          TEXT
);
CREATE INDEX IF NOT EXISTS idx_schedules_day ON subject_schedules(day_of_week);

CREATE TABLE IF NOT EXISTS student_schedules (
    student_id  INTEGER NOT NULL,
    schedule_id INTEGER NOT NULL,
    PRIMARY KEY (student_id, schedule_id),
    FOREIGN KEY (student_id)  REFERENCES students(student_id)           ON DELETE CASCADE,
    FOREIGN KEY (schedule_id) REFERENCES subject_schedules(schedule_id) ON DELETE CASCADE
);
"""

# ------------------------
# DDL: Attendance
# ------------------------
ATTENDANCE_DDL = """
CREATE TABLE IF NOT EXISTS attendance (
    attendance_id    INTEGER PRIMARY KEY,
    student_id       INTEGER NOT NULL,
    schedule_id      INTEGER,                 -- NULL when scanned outside any class
    attend_date      TEXT NOT NULL,           -- 'YYYY-MM-DD' local date of the scan
    observed_at      TEXT NOT NULL,           -- ISO8601 local timestamp of the scan
    status           TEXT NOT NULL,           -- 'PRESENT' | 'LATE' | 'LOGGED'
    attendance_type  TEXT NOT NULL DEFAULT 'RFID_SCAN',
    rfid_tag         TEXT,
    reader_id        INTEGER,
    location         TEXT,
    device_info_json TEXT,
    created_at_utc   INTEGER NOT NULL,        -- epoch ms when the row was written
    FOREIGN KEY (student_id)  REFERENCES students(student_id)           ON DELETE CASCADE,
    FOREIGN KEY (schedule_id) REFERENCES subject_schedules(schedule_id) ON DELETE SET NULL
);
-- One RFID attendance per student, class (or no class) and day.
CREATE UNIQUE INDEX IF NOT EXISTS idx_attendance_rfid_period_unique
ON attendance(student_id, IFNULL(schedule_id, 0), attend_date)
WHERE attendance_type = 'RFID_SCAN';
CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(attend_date);
"""

# ------------------------
# DDL: Reader registry
# ------------------------
READERS_DDL = """
CREATE TABLE IF NOT EXISTS rfid_readers (
    reader_id        INTEGER PRIMARY KEY,
    device_id        TEXT NOT NULL UNIQUE,
    device_name      TEXT,
    ip_address       TEXT,
    mac_address      TEXT,
    firmware_version TEXT,
    location         TEXT,
    status           TEXT NOT NULL DEFAULT 'ACTIVE',
    registered_utc   INTEGER,
    last_seen_utc    INTEGER
);
"""

ALL_TABLES: List[str] = [
    "students",
    "rfid_tags",
    "subject_schedules",
    "student_schedules",
    "attendance",
    "rfid_readers",
]

# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()

def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    # children before parents
    for table in ("attendance", "student_schedules", "subject_schedules", "rfid_tags", "rfid_readers", "students"):
        cur.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()

def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True   : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, STUDENTS_DDL)
        _exec_script(conn, RFID_TAGS_DDL)
        _exec_script(conn, SCHEDULES_DDL)
        _exec_script(conn, ATTENDANCE_DDL)
        _exec_script(conn, READERS_DDL)

        # Record user_version for lightweight migrations.
        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()

def missing_tables(conn: sqlite3.Connection, expected: Iterable[str] = ALL_TABLES) -> List[str]:
    """Return the expected tables that are absent (empty list = schema ready)."""
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {r[0] for r in rows}
    return [t for t in expected if t not in present]

def normalize_tag(raw: object) -> str:
    """Trim and upper-case a tag; '' when missing."""
    if raw is None:
        return ""
    return str(raw).strip().upper()
