import argparse
import sys
from dataclasses import replace
from datetime import date, timedelta

from face_checkin.attendance_types import AttendanceSettings, parse_clock, parse_work_days
from face_checkin.config import CAMERA_INDEX, DB_PATH, SAMPLES_PER_POSITION, SIMILARITY_METRIC, SIMILARITY_THRESHOLD
from face_checkin.database import CheckInDatabase
from face_checkin.exceptions import AttendanceError
from face_checkin.gallery import FaceGallery
from face_checkin.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face verification check-in and check-out")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register = subparsers.add_parser("register", help="Enroll a face with guided head positions")
    register.add_argument("--name", required=True, help="Display name")
    register.add_argument("--samples", type=int, default=SAMPLES_PER_POSITION, help="Samples per head position")
    register.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    checkin = subparsers.add_parser("checkin", help="Run the live check-in loop")
    checkin.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    checkin.add_argument("--threshold", type=float, default=SIMILARITY_THRESHOLD, help="Match similarity threshold")
    checkin.add_argument("--metric", choices=("cosine", "euclidean"), default=SIMILARITY_METRIC)

    list_cmd = subparsers.add_parser("list-faces", help="List enrolled faces")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    delete = subparsers.add_parser("delete-face", help="Remove an enrolled face")
    delete.add_argument("face_id", help="Identity id as shown by list-faces")

    settings = subparsers.add_parser("settings", help="Show or update the work schedule")
    settings.add_argument("--start", help="Work start, HH:MM")
    settings.add_argument("--end", help="Work end, HH:MM")
    settings.add_argument("--late-tolerance", type=int, help="Late tolerance in minutes")
    settings.add_argument("--early-tolerance", type=int, help="Early leave tolerance in minutes")
    settings.add_argument("--days", help="Work days, e.g. mon,tue,wed or 0,1,2")

    report = subparsers.add_parser("report", help="Print attendance records")
    report.add_argument("--date", type=date.fromisoformat, default=None, help="Day to report, YYYY-MM-DD")
    report.add_argument("--days", type=int, default=1, help="Number of days ending at --date")

    return parser


def update_settings(db: CheckInDatabase, args: argparse.Namespace) -> AttendanceSettings:
    current = db.ensure_default_settings()
    changes = {}
    try:
        if args.start:
            changes["work_start"] = parse_clock(args.start)
        if args.end:
            changes["work_end"] = parse_clock(args.end)
        if args.days:
            changes["work_days"] = parse_work_days(args.days.split(","))
    except ValueError as exc:
        raise AttendanceError(str(exc)) from exc
    if args.late_tolerance is not None:
        changes["late_tolerance_minutes"] = max(0, args.late_tolerance)
    if args.early_tolerance is not None:
        changes["early_leave_tolerance_minutes"] = max(0, args.early_tolerance)
    if not changes:
        return current

    updated = replace(current, **changes)
    if updated.work_end <= updated.work_start:
        raise AttendanceError("Work end must be after work start.")
    db.save_settings(updated)
    return updated


def print_report(db: CheckInDatabase, end_day: date, days: int) -> None:
    start_day = end_day - timedelta(days=max(1, days) - 1)
    names = {employee.employee_id: employee.name for employee in db.list_employees(active_only=False)}
    rows = []
    for offset in range((end_day - start_day).days + 1):
        rows.extend(db.records_for_day(start_day + timedelta(days=offset)))
    if not rows:
        print(f"No attendance records between {start_day} and {end_day}.")
        return

    print(f"{'Date':<11} {'Name':<20} {'In':<6} {'Out':<6} {'Status':<8} {'Late':>5} {'Early':>6} {'Hours':>6}")
    print("-" * 74)
    for record in rows:
        check_in = record.check_in_time.strftime("%H:%M") if record.check_in_time else "-"
        check_out = record.check_out_time.strftime("%H:%M") if record.check_out_time else "-"
        print(
            f"{record.attendance_date.isoformat():<11} {names.get(record.employee_id, record.employee_id):<20} "
            f"{check_in:<6} {check_out:<6} {record.status.value:<8} {record.late_minutes:>5} "
            f"{record.early_leave_minutes:>6} {record.total_working_hours:>6.1f}"
        )


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        db = CheckInDatabase(DB_PATH)

        if args.command == "register":
            from face_checkin.face_engine import FaceEngine, TorchEmbeddingProvider
            from face_checkin.registration_service import RegistrationService

            service = RegistrationService(FaceGallery(db), FaceEngine(max_faces=2), TorchEmbeddingProvider())
            identity = service.register(args.name, camera_index=args.camera, samples_per_position=args.samples)
            print(f"Registration successful for {identity.name} ({identity.identity_id}).")
            return 0

        if args.command == "checkin":
            from face_checkin.attendance_service import AttendanceDecisionEngine
            from face_checkin.face_engine import FaceEngine, TorchEmbeddingProvider
            from face_checkin.matcher import FaceMatcher
            from face_checkin.pipeline import FrameRecognitionPipeline
            from face_checkin.recognition_service import CheckInService

            db.ensure_default_settings()
            pipeline = FrameRecognitionPipeline(
                detector=FaceEngine(),
                provider=TorchEmbeddingProvider(),
                gallery=FaceGallery(db),
                engine=AttendanceDecisionEngine(db),
                matcher=FaceMatcher(threshold=args.threshold, metric=args.metric),
            )
            CheckInService(pipeline).run(camera_index=args.camera)
            print("Check-in stopped.")
            return 0

        if args.command == "list-faces":
            identities = db.list_registered_faces()
            if not identities:
                print("No faces registered.")
                return 0

            print(f"{'Face ID':<34} {'Name':<20} {'Registered':<20} Positions")
            print("-" * 96)
            for identity in identities[: args.limit]:
                positions = ",".join(position.value for position in identity.positions) or "-"
                print(f"{identity.identity_id:<34} {identity.name:<20} {identity.registered_at:<20} {positions}")
            return 0

        if args.command == "delete-face":
            if not FaceGallery(db).remove(args.face_id):
                print(f"No registered face with id {args.face_id}.")
                return 1
            print(f"Deleted face {args.face_id}.")
            return 0

        if args.command == "settings":
            settings = update_settings(db, args)
            print(f"Schedule: {settings.schedule_description()}")
            print(f"Late tolerance: {settings.late_tolerance_minutes} min")
            print(f"Early leave tolerance: {settings.early_leave_tolerance_minutes} min")
            return 0

        if args.command == "report":
            print_report(db, args.date or date.today(), args.days)
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
