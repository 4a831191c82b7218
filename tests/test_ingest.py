import sqlite3
from datetime import datetime

from icct_rfid.events import Outcome, ReaderRegistration, ScanEvent
from icct_rfid.ingest import AttendanceIngestor


def scan(tag, hh=8, mm=5):
    return ScanEvent(tag=tag, reader_id=2, location="Lab 1", observed_at=datetime(2026, 10, 19, hh, mm))


def row_count(db_path):
    with sqlite3.connect(db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM attendance").fetchone()[0]


async def test_first_scan_creates_present_record(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("6C429C42"))
    assert res.outcome is Outcome.CREATED
    assert res.attendance["studentId"] == 1
    assert res.attendance["status"] == "PRESENT"
    assert res.attendance["subjectCode"] == "IT101"
    assert res.attendance["readerId"] == 2
    assert res.attendance["attendanceType"] == "RFID_SCAN"


async def test_second_submission_is_duplicate_with_same_record(db_path):
    ing = AttendanceIngestor(db_path)
    first = await ing.ingest(scan("6C429C42", 8, 5))
    second = await ing.ingest(scan("6C429C42", 8, 40))
    assert second.outcome is Outcome.DUPLICATE
    assert second.duplicate
    assert second.attendance["attendanceId"] == first.attendance["attendanceId"]
    assert second.attendance["status"] == "PRESENT"
    assert row_count(db_path) == 1


async def test_late_after_grace(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("6C429C42", 8, 20))
    assert res.attendance["status"] == "LATE"


async def test_each_class_of_the_day_gets_its_own_record(db_path):
    ing = AttendanceIngestor(db_path)
    a = await ing.ingest(scan("6C429C42", 8, 0))
    b = await ing.ingest(scan("6C429C42", 10, 6))
    assert a.outcome is Outcome.CREATED and b.outcome is Outcome.CREATED
    assert b.attendance["subjectCode"] == "IT102"
    assert b.attendance["status"] == "LATE"
    assert row_count(db_path) == 2


async def test_registry_tag_resolves_case_insensitively(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("5e7f8091"))
    assert res.outcome is Outcome.CREATED
    assert res.attendance["studentId"] == 2
    assert res.attendance["rfidTag"] == "5E7F8091"
    # not enrolled in anything
    assert res.attendance["status"] == "LOGGED"
    assert res.attendance["scheduleId"] is None


async def test_logged_scans_dedupe_per_day(db_path):
    ing = AttendanceIngestor(db_path)
    await ing.ingest(scan("A1B2C3D4", 12, 0))
    again = await ing.ingest(scan("A1B2C3D4", 16, 0))
    assert again.outcome is Outcome.DUPLICATE
    assert row_count(db_path) == 1


async def test_unknown_tag_is_unrecognized(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("CCB6B542"))
    assert res.outcome is Outcome.UNRECOGNIZED
    assert "not found" in res.error
    status, body = res.to_response()
    assert status == 404
    assert body["success"] is False
    assert row_count(db_path) == 0


async def test_inactive_student_is_unrecognized(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("DEADBEEF"))
    assert res.outcome is Outcome.UNRECOGNIZED


async def test_empty_tag_is_invalid_payload(db_path):
    res = await AttendanceIngestor(db_path).ingest(scan("   "))
    assert res.outcome is Outcome.INVALID_PAYLOAD
    assert res.to_response()[0] == 400


async def test_store_failure_is_error(tmp_path):
    # a directory cannot be opened as a database
    res = await AttendanceIngestor(tmp_path).ingest(scan("6C429C42"))
    assert res.outcome is Outcome.ERROR
    assert res.to_response()[0] == 500
    assert not res.transport_failure


async def test_register_reader_upserts_by_device_id(db_path):
    ing = AttendanceIngestor(db_path)
    first = await ing.register_reader(ReaderRegistration(device_id="ESP32-1", device_name="Reader ESP32-1", location="Lab 1"))
    second = await ing.register_reader(ReaderRegistration(device_id="ESP32-1", location="Lab 2", firmware_version="1.2"))
    assert second["readerId"] == first["readerId"]
    assert second["deviceName"] == "Reader ESP32-1"
    assert second["location"] == "Lab 2"
    assert second["firmwareVersion"] == "1.2"


async def test_status_options_lists_distinct_statuses(db_path):
    ing = AttendanceIngestor(db_path)
    assert await ing.status_options() == []
    await ing.ingest(scan("6C429C42", 8, 20))
    await ing.ingest(scan("A1B2C3D4", 12, 0))
    assert await ing.status_options() == ["LATE", "LOGGED"]
