import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from .attendance_types import (
    AttendanceAction,
    AttendanceDecisionResult,
    AttendanceRecord,
    AttendanceSettings,
    AttendanceStatus,
)
from .config import ATTENDANCE_COOLDOWN_SECONDS, ATTENDANCE_GUARD_SCOPE
from .database import CheckInDatabase
from .exceptions import DatabaseError
from .face_types import EnrolledIdentity
from .logger import setup_logger

GUARD_SCOPES = ("identity", "global")
_GLOBAL_KEY = "*"


def _whole_minutes(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() // 60))


class AttendanceGate:
    """Minimum re-trigger interval plus single-flight guard.

    With ``scope="identity"`` each person has an independent cool-down; with
    ``scope="global"`` one decision for anybody suspends everybody.
    """

    def __init__(self, interval: float = ATTENDANCE_COOLDOWN_SECONDS, scope: str = ATTENDANCE_GUARD_SCOPE):
        if scope not in GUARD_SCOPES:
            raise ValueError(f"Unknown guard scope {scope!r}; expected one of {GUARD_SCOPES}")
        self.interval = float(interval)
        self.scope = scope
        self._lock = threading.Lock()
        self._last_started: Dict[str, float] = {}
        self._in_flight: Set[str] = set()

    def _key(self, identity_id: str) -> str:
        return _GLOBAL_KEY if self.scope == "global" else identity_id

    def try_acquire(self, identity_id: str, now: float) -> bool:
        key = self._key(identity_id)
        with self._lock:
            if key in self._in_flight:
                return False
            last = self._last_started.get(key)
            if last is not None and now - last < self.interval:
                return False
            self._in_flight.add(key)
            self._last_started[key] = now
            return True

    def release(self, identity_id: str) -> None:
        with self._lock:
            self._in_flight.discard(self._key(identity_id))

    def is_in_flight(self, identity_id: str) -> bool:
        with self._lock:
            return self._key(identity_id) in self._in_flight

    def reset(self) -> None:
        with self._lock:
            self._last_started.clear()
            self._in_flight.clear()


class AttendanceDecisionEngine:
    def __init__(
        self,
        db: CheckInDatabase,
        gate: Optional[AttendanceGate] = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.gate = gate if gate is not None else AttendanceGate()
        self.clock = clock
        self.monotonic = monotonic
        self.logger = setup_logger(self.__class__.__name__)

    def try_begin(self, identity_id: str, now: Optional[float] = None) -> bool:
        accepted = self.gate.try_acquire(identity_id, self.monotonic() if now is None else now)
        if not accepted:
            self.logger.debug("Attendance for %s suppressed by re-trigger guard", identity_id)
        return accepted

    def complete(self, identity_id: str) -> None:
        self.gate.release(identity_id)

    def process(
        self,
        identity: EnrolledIdentity,
        now: Optional[datetime] = None,
        monotonic_now: Optional[float] = None,
    ) -> Optional[AttendanceDecisionResult]:
        """Guarded decision; ``None`` means the attempt was dropped by the gate."""
        if not self.try_begin(identity.identity_id, monotonic_now):
            return None
        try:
            return self.decide(identity, now)
        finally:
            self.complete(identity.identity_id)

    def current_settings(self) -> AttendanceSettings:
        return self.db.current_settings() or AttendanceSettings.default()

    def decide(self, identity: EnrolledIdentity, now: Optional[datetime] = None) -> AttendanceDecisionResult:
        now = now or self.clock()
        action = AttendanceAction.CHECK_IN
        try:
            settings = self.current_settings()
            if not settings.is_work_day(now.date()):
                self.logger.info("Rejected %s: %s is not a workday", identity.name, now.date())
                return AttendanceDecisionResult(
                    success=False,
                    message="Today is not a workday",
                    action=action,
                    identity_name=identity.name,
                    decided_at=now,
                )

            employee = self.db.resolve_or_create_employee(identity.identity_id, identity.name)
            record = self.db.find_record(employee.employee_id, now.date())
            if record is None:
                return self._check_in(employee.employee_id, employee.name, settings, now)

            action = AttendanceAction.CHECK_OUT
            return self._check_out(record, employee.name, settings, now)
        except DatabaseError as exc:
            self.logger.error("Attendance %s failed for %s: %s", action.value, identity.name, exc)
            return AttendanceDecisionResult(
                success=False,
                message=f"Failed to record {action.label.lower()}: {exc}",
                action=action,
                identity_name=identity.name,
                error=str(exc),
                decided_at=now,
            )

    def _check_in(
        self,
        employee_id: str,
        name: str,
        settings: AttendanceSettings,
        now: datetime,
    ) -> AttendanceDecisionResult:
        record = AttendanceRecord(
            employee_id=employee_id,
            attendance_date=now.date(),
            check_in_time=now,
        )
        self.apply_lateness(record, settings)
        record = self.db.insert_record(record)

        suffix = f" (late by {record.late_minutes} minutes)" if record.is_late else ""
        self.logger.info("Check-in for %s at %s, status %s", name, now.strftime("%H:%M"), record.status.value)
        return AttendanceDecisionResult(
            success=True,
            message=f"Check-in successful at {now:%H:%M}{suffix}",
            action=AttendanceAction.CHECK_IN,
            identity_name=name,
            record=record,
            decided_at=now,
        )

    def _check_out(
        self,
        record: AttendanceRecord,
        name: str,
        settings: AttendanceSettings,
        now: datetime,
    ) -> AttendanceDecisionResult:
        if record.check_in_time is None or record.check_out_time is not None:
            message = "Already checked out today" if record.check_out_time is not None else "Not checked in yet"
            self.logger.info("No attendance change for %s: %s", name, message)
            return AttendanceDecisionResult(
                success=False,
                message=message,
                action=AttendanceAction.CHECK_OUT,
                identity_name=name,
                record=record,
                decided_at=now,
            )

        updated = replace(record, check_out_time=now)
        self.apply_early_leave(updated, settings)
        self.db.update_record(updated)

        self.logger.info("Check-out for %s at %s, status %s", name, now.strftime("%H:%M"), updated.status.value)
        return AttendanceDecisionResult(
            success=True,
            message=f"Check-out successful at {now:%H:%M}\nTotal work: {updated.total_working_hours:.1f} h",
            action=AttendanceAction.CHECK_OUT,
            identity_name=name,
            record=updated,
            decided_at=now,
        )

    @staticmethod
    def apply_lateness(record: AttendanceRecord, settings: AttendanceSettings) -> None:
        deadline = settings.work_start_on(record.attendance_date)
        late = _whole_minutes(deadline, record.check_in_time) if record.check_in_time > deadline else 0
        if late > settings.late_tolerance_minutes:
            record.late_minutes = late
            record.status = AttendanceStatus.LATE
        else:
            record.late_minutes = 0
            record.status = AttendanceStatus.PRESENT

    @staticmethod
    def apply_early_leave(record: AttendanceRecord, settings: AttendanceSettings) -> None:
        deadline = settings.work_end_on(record.attendance_date)
        if record.check_out_time >= deadline:
            record.early_leave_minutes = 0
            return

        record.early_leave_minutes = _whole_minutes(record.check_out_time, deadline)
        if (
            record.early_leave_minutes > settings.early_leave_tolerance_minutes
            and record.status is AttendanceStatus.PRESENT
        ):
            record.status = AttendanceStatus.LEAVE
