from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .config import (
    DEFAULT_EARLY_LEAVE_TOLERANCE_MINUTES,
    DEFAULT_LATE_TOLERANCE_MINUTES,
    DEFAULT_WORK_DAYS,
    DEFAULT_WORK_END,
    DEFAULT_WORK_START,
)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    LEAVE = "leave"
    HOLIDAY = "holiday"


class AttendanceAction(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"

    @property
    def label(self) -> str:
        return "CHECK-IN" if self is AttendanceAction.CHECK_IN else "CHECK-OUT"


def parse_clock(value: str) -> time:
    try:
        hour_text, minute_text = value.strip().split(":", 1)
        return time(hour=int(hour_text), minute=int(minute_text))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM") from exc


def parse_work_days(tokens: Iterable[str]) -> FrozenSet[int]:
    days = set()
    for token in tokens:
        text = str(token).strip().lower()
        if not text:
            continue
        if text.isdigit():
            day = int(text)
        else:
            matches = [idx for idx, name in enumerate(WEEKDAY_NAMES) if name.lower().startswith(text[:3])]
            if not matches:
                raise ValueError(f"Unknown weekday {token!r}")
            day = matches[0]
        if not 0 <= day <= 6:
            raise ValueError(f"Weekday out of range: {day}")
        days.add(day)
    return frozenset(days)


@dataclass(frozen=True)
class AttendanceSettings:
    work_start: time
    work_end: time
    late_tolerance_minutes: int = 15
    early_leave_tolerance_minutes: int = 15
    # Python weekday numbers, 0 = Monday.
    work_days: FrozenSet[int] = frozenset({0, 1, 2, 3, 4})

    @classmethod
    def default(cls) -> "AttendanceSettings":
        return cls(
            work_start=parse_clock(DEFAULT_WORK_START),
            work_end=parse_clock(DEFAULT_WORK_END),
            late_tolerance_minutes=DEFAULT_LATE_TOLERANCE_MINUTES,
            early_leave_tolerance_minutes=DEFAULT_EARLY_LEAVE_TOLERANCE_MINUTES,
            work_days=parse_work_days(DEFAULT_WORK_DAYS),
        )

    def is_work_day(self, moment: date) -> bool:
        return moment.weekday() in self.work_days

    def work_start_on(self, day: date) -> datetime:
        return datetime.combine(day, self.work_start)

    def work_end_on(self, day: date) -> datetime:
        return datetime.combine(day, self.work_end)

    def schedule_description(self) -> str:
        names = ", ".join(WEEKDAY_NAMES[day] for day in sorted(self.work_days))
        return f"{names} • {self.work_start:%H:%M} - {self.work_end:%H:%M}"


@dataclass
class EmployeeRecord:
    employee_id: str
    name: str
    registered_face_id: Optional[str]
    department: str = ""
    position: str = ""
    is_active: bool = True
    created_at: str = ""


@dataclass
class AttendanceRecord:
    employee_id: str
    attendance_date: date
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    status: AttendanceStatus = AttendanceStatus.ABSENT
    late_minutes: int = 0
    early_leave_minutes: int = 0
    notes: Optional[str] = None
    id: Optional[int] = None

    @property
    def total_working_hours(self) -> float:
        if self.check_in_time is None or self.check_out_time is None:
            return 0.0
        return (self.check_out_time - self.check_in_time).total_seconds() / 3600.0

    @property
    def is_late(self) -> bool:
        return self.status is AttendanceStatus.LATE

    @property
    def is_early_leave(self) -> bool:
        return self.early_leave_minutes > 0

    @property
    def is_checked_out(self) -> bool:
        return self.check_out_time is not None


@dataclass(frozen=True)
class AttendanceDecisionResult:
    success: bool
    message: str
    action: AttendanceAction
    identity_name: str
    record: Optional[AttendanceRecord] = None
    error: Optional[str] = None
    decided_at: datetime = field(default_factory=datetime.now)
