from datetime import date, datetime, time

import numpy as np
import pytest

from conftest import unit
from face_checkin.attendance_types import AttendanceRecord, AttendanceSettings, AttendanceStatus
from face_checkin.exceptions import DatabaseError
from face_checkin.face_types import EnrolledIdentity, FacePosition

DAY = date(2024, 1, 15)


def test_registered_face_round_trip(db):
    identity = EnrolledIdentity(
        identity_id="f1",
        name="Alice",
        embedding=unit(1, 2, 3),
        registered_at="2024-01-01T09:00:00",
        positions=(FacePosition.CENTER, FacePosition.LEFT),
    )
    db.save_registered_face(identity)

    [loaded] = db.list_registered_faces()
    assert loaded.identity_id == "f1"
    assert loaded.positions == (FacePosition.CENTER, FacePosition.LEFT)
    assert np.allclose(loaded.embedding, identity.embedding)


def test_resolve_or_create_employee_is_at_most_once(db):
    first = db.resolve_or_create_employee("f1", "Alice")
    again = db.resolve_or_create_employee("f1", "Alice B.")
    other = db.resolve_or_create_employee("f2", "Bob")

    assert first.employee_id == again.employee_id
    assert again.name == "Alice"
    assert other.employee_id != first.employee_id
    assert len(db.list_employees()) == 2


def test_deleting_a_face_deactivates_its_employee(db):
    db.save_registered_face(EnrolledIdentity("f1", "Alice", unit(1, 0), "2024-01-01T09:00:00"))
    employee = db.resolve_or_create_employee("f1", "Alice")

    assert db.delete_registered_face("f1") is True
    assert db.delete_registered_face("f1") is False
    assert db.list_employees() == []
    stored = db.get_employee(employee.employee_id)
    assert stored.is_active is False
    assert stored.registered_face_id is None


def test_one_attendance_record_per_employee_per_day(db):
    employee = db.resolve_or_create_employee("f1", "Alice")
    record = db.insert_record(
        AttendanceRecord(
            employee_id=employee.employee_id,
            attendance_date=DAY,
            check_in_time=datetime(2024, 1, 15, 8, 5),
            status=AttendanceStatus.PRESENT,
        )
    )
    assert record.id is not None

    with pytest.raises(DatabaseError):
        db.insert_record(AttendanceRecord(employee_id=employee.employee_id, attendance_date=DAY))


def test_update_record_persists_check_out(db):
    employee = db.resolve_or_create_employee("f1", "Alice")
    record = db.insert_record(
        AttendanceRecord(
            employee_id=employee.employee_id,
            attendance_date=DAY,
            check_in_time=datetime(2024, 1, 15, 8, 5),
            status=AttendanceStatus.PRESENT,
        )
    )
    record.check_out_time = datetime(2024, 1, 15, 16, 0)
    record.early_leave_minutes = 60
    record.status = AttendanceStatus.LEAVE
    db.update_record(record)

    stored = db.find_record(employee.employee_id, DAY)
    assert stored.check_out_time == datetime(2024, 1, 15, 16, 0)
    assert stored.status is AttendanceStatus.LEAVE
    assert db.records_for_employee(employee.employee_id, DAY, DAY) == [stored]


def test_update_requires_an_inserted_record(db):
    with pytest.raises(DatabaseError):
        db.update_record(AttendanceRecord(employee_id="x", attendance_date=DAY))


def test_settings_default_and_update(db):
    assert db.current_settings() is None
    defaults = db.ensure_default_settings()
    assert defaults == AttendanceSettings.default()

    custom = AttendanceSettings(
        work_start=time(9, 30),
        work_end=time(18, 0),
        late_tolerance_minutes=5,
        early_leave_tolerance_minutes=10,
        work_days=frozenset({0, 2, 4}),
    )
    db.save_settings(custom)
    assert db.current_settings() == custom
    assert db.ensure_default_settings() == custom
