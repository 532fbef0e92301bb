import sqlite3
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

from .attendance_types import (
    AttendanceRecord,
    AttendanceSettings,
    AttendanceStatus,
    EmployeeRecord,
    parse_clock,
    parse_work_days,
)
from .exceptions import DatabaseError
from .face_types import EnrolledIdentity, FacePosition


def _to_iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat(timespec="seconds") if moment is not None else None


def _from_iso(text: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(text) if text else None


class CheckInDatabase:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS registered_faces (
                        face_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        face_encoding BLOB NOT NULL,
                        encoding_dim INTEGER NOT NULL,
                        face_positions TEXT NOT NULL DEFAULT '',
                        registered_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS employees (
                        employee_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        -- At most one employee is ever provisioned per registered face.
                        registered_face_id TEXT UNIQUE,
                        department TEXT NOT NULL DEFAULT '',
                        position TEXT NOT NULL DEFAULT '',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS attendance (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        employee_id TEXT NOT NULL,
                        attendance_date TEXT NOT NULL,
                        check_in_time TEXT,
                        check_out_time TEXT,
                        status TEXT NOT NULL,
                        late_minutes INTEGER NOT NULL DEFAULT 0,
                        early_leave_minutes INTEGER NOT NULL DEFAULT 0,
                        notes TEXT,
                        FOREIGN KEY (employee_id) REFERENCES employees(employee_id),
                        -- Ensures one attendance row per employee per day.
                        UNIQUE(employee_id, attendance_date)
                    );

                    CREATE TABLE IF NOT EXISTS attendance_settings (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        work_start TEXT NOT NULL,
                        work_end TEXT NOT NULL,
                        late_tolerance_minutes INTEGER NOT NULL,
                        early_leave_tolerance_minutes INTEGER NOT NULL,
                        work_days TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    # Registered faces

    def save_registered_face(self, identity: EnrolledIdentity) -> None:
        vector = np.asarray(identity.embedding, dtype=np.float32).reshape(-1)
        positions = ",".join(position.value for position in identity.positions)

        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO registered_faces (
                        face_id, name, face_encoding, encoding_dim, face_positions, registered_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(face_id) DO UPDATE SET
                        name = excluded.name,
                        face_encoding = excluded.face_encoding,
                        encoding_dim = excluded.encoding_dim,
                        face_positions = excluded.face_positions
                    """,
                    (identity.identity_id, identity.name, vector.tobytes(), vector.size, positions, identity.registered_at),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save registered face {identity.identity_id}: {exc}") from exc

    def list_registered_faces(self) -> List[EnrolledIdentity]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT face_id, name, face_encoding, encoding_dim, face_positions, registered_at
                    FROM registered_faces
                    ORDER BY registered_at ASC, rowid ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load registered faces: {exc}") from exc

        identities: List[EnrolledIdentity] = []
        for row in rows:
            encoding = np.frombuffer(row["face_encoding"], dtype=np.float32, count=row["encoding_dim"]).copy()
            positions = tuple(FacePosition(token) for token in row["face_positions"].split(",") if token)
            identities.append(
                EnrolledIdentity(
                    identity_id=row["face_id"],
                    name=row["name"],
                    embedding=encoding,
                    registered_at=row["registered_at"],
                    positions=positions,
                )
            )
        return identities

    def delete_registered_face(self, face_id: str) -> bool:
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    "UPDATE employees SET is_active = 0, registered_face_id = NULL WHERE registered_face_id = ?",
                    (face_id,),
                )
                cursor = conn.execute("DELETE FROM registered_faces WHERE face_id = ?", (face_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete registered face {face_id}: {exc}") from exc

    # Employees

    def resolve_or_create_employee(self, face_id: str, name: str) -> EmployeeRecord:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO employees (employee_id, name, registered_face_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (uuid.uuid4().hex, name, face_id, now),
                )
                row = conn.execute(
                    "SELECT * FROM employees WHERE registered_face_id = ?",
                    (face_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to resolve employee for face {face_id}: {exc}") from exc

        if row is None:
            raise DatabaseError(f"Employee for face {face_id} could not be provisioned.")
        return self._employee_from_row(row)

    def get_employee(self, employee_id: str) -> Optional[EmployeeRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM employees WHERE employee_id = ?", (employee_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load employee {employee_id}: {exc}") from exc
        return self._employee_from_row(row) if row is not None else None

    def list_employees(self, active_only: bool = True) -> List[EmployeeRecord]:
        sql = "SELECT * FROM employees"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY name ASC"
        try:
            with self._connect() as conn:
                rows = conn.execute(sql).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load employees: {exc}") from exc
        return [self._employee_from_row(row) for row in rows]

    @staticmethod
    def _employee_from_row(row: sqlite3.Row) -> EmployeeRecord:
        return EmployeeRecord(
            employee_id=row["employee_id"],
            name=row["name"],
            registered_face_id=row["registered_face_id"],
            department=row["department"],
            position=row["position"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    # Attendance records

    def find_record(self, employee_id: str, day: date) -> Optional[AttendanceRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM attendance WHERE employee_id = ? AND attendance_date = ?",
                    (employee_id, day.isoformat()),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance for {employee_id}: {exc}") from exc
        return self._record_from_row(row) if row is not None else None

    def insert_record(self, record: AttendanceRecord) -> AttendanceRecord:
        try:
            with self._write_lock, self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO attendance (
                        employee_id, attendance_date, check_in_time, check_out_time,
                        status, late_minutes, early_leave_minutes, notes
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.employee_id,
                        record.attendance_date.isoformat(),
                        _to_iso(record.check_in_time),
                        _to_iso(record.check_out_time),
                        record.status.value,
                        record.late_minutes,
                        record.early_leave_minutes,
                        record.notes,
                    ),
                )
                record.id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DatabaseError(
                f"Attendance for {record.employee_id} on {record.attendance_date} already exists: {exc}"
            ) from exc
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to insert attendance for {record.employee_id}: {exc}") from exc
        return record

    def update_record(self, record: AttendanceRecord) -> None:
        if record.id is None:
            raise DatabaseError("Cannot update an attendance record that was never inserted.")
        try:
            with self._write_lock, self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE attendance SET
                        check_in_time = ?, check_out_time = ?, status = ?,
                        late_minutes = ?, early_leave_minutes = ?, notes = ?
                    WHERE id = ?
                    """,
                    (
                        _to_iso(record.check_in_time),
                        _to_iso(record.check_out_time),
                        record.status.value,
                        record.late_minutes,
                        record.early_leave_minutes,
                        record.notes,
                        record.id,
                    ),
                )
                if cursor.rowcount != 1:
                    raise DatabaseError(f"Attendance record {record.id} no longer exists.")
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update attendance record {record.id}: {exc}") from exc

    def records_for_day(self, day: date) -> List[AttendanceRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM attendance WHERE attendance_date = ? ORDER BY check_in_time DESC",
                    (day.isoformat(),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance for {day}: {exc}") from exc
        return [self._record_from_row(row) for row in rows]

    def records_for_employee(self, employee_id: str, start: date, end: date) -> List[AttendanceRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM attendance
                    WHERE employee_id = ? AND attendance_date >= ? AND attendance_date <= ?
                    ORDER BY attendance_date DESC
                    """,
                    (employee_id, start.isoformat(), end.isoformat()),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance for {employee_id}: {exc}") from exc
        return [self._record_from_row(row) for row in rows]

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            id=row["id"],
            employee_id=row["employee_id"],
            attendance_date=date.fromisoformat(row["attendance_date"]),
            check_in_time=_from_iso(row["check_in_time"]),
            check_out_time=_from_iso(row["check_out_time"]),
            status=AttendanceStatus(row["status"]),
            late_minutes=int(row["late_minutes"]),
            early_leave_minutes=int(row["early_leave_minutes"]),
            notes=row["notes"],
        )

    # Settings

    def current_settings(self) -> Optional[AttendanceSettings]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM attendance_settings WHERE id = 1").fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance settings: {exc}") from exc

        if row is None:
            return None
        return AttendanceSettings(
            work_start=parse_clock(row["work_start"]),
            work_end=parse_clock(row["work_end"]),
            late_tolerance_minutes=int(row["late_tolerance_minutes"]),
            early_leave_tolerance_minutes=int(row["early_leave_tolerance_minutes"]),
            work_days=parse_work_days(row["work_days"].split(",")),
        )

    def save_settings(self, settings: AttendanceSettings) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        days = ",".join(str(day) for day in sorted(settings.work_days))
        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO attendance_settings (
                        id, work_start, work_end, late_tolerance_minutes,
                        early_leave_tolerance_minutes, work_days, created_at, updated_at
                    ) VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        work_start = excluded.work_start,
                        work_end = excluded.work_end,
                        late_tolerance_minutes = excluded.late_tolerance_minutes,
                        early_leave_tolerance_minutes = excluded.early_leave_tolerance_minutes,
                        work_days = excluded.work_days,
                        updated_at = excluded.updated_at
                    """,
                    (
                        f"{settings.work_start:%H:%M}",
                        f"{settings.work_end:%H:%M}",
                        settings.late_tolerance_minutes,
                        settings.early_leave_tolerance_minutes,
                        days,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save attendance settings: {exc}") from exc

    def ensure_default_settings(self) -> AttendanceSettings:
        settings = self.current_settings()
        if settings is None:
            settings = AttendanceSettings.default()
            self.save_settings(settings)
        return settings
