import time
from datetime import date
from typing import Optional

import cv2
import numpy as np

from .attendance_types import AttendanceDecisionResult
from .camera import CameraStream
from .config import RESULT_BANNER_SECONDS, SHOW_LIVENESS_DETAILS
from .exceptions import AttendanceError
from .face_types import FaceOverlay, FrameOverlay, OverlayStyle
from .logger import setup_logger
from .pipeline import FrameRecognitionPipeline

# BGR
OVERLAY_COLORS = {
    OverlayStyle.NOT_LIVE: (40, 40, 220),
    OverlayStyle.LIVE_UNKNOWN: (40, 180, 40),
    OverlayStyle.LIVE_KNOWN: (220, 120, 30),
}


class ResultBanner:
    """Most recent attendance decision, visible for a fixed time after it arrives."""

    def __init__(self, duration: float = RESULT_BANNER_SECONDS):
        self.duration = duration
        self.result: Optional[AttendanceDecisionResult] = None
        self._shown_at = 0.0

    def show(self, result: AttendanceDecisionResult, now: float) -> None:
        self.result = result
        self._shown_at = now

    def current(self, now: float) -> Optional[AttendanceDecisionResult]:
        if self.result is not None and now - self._shown_at >= self.duration:
            self.result = None
        return self.result


class CheckInService:
    def __init__(self, pipeline: FrameRecognitionPipeline, banner: Optional[ResultBanner] = None):
        self.pipeline = pipeline
        self.banner = banner if banner is not None else ResultBanner()
        self.logger = setup_logger(self.__class__.__name__)
        self.current_day = date.today()

    def run(self, camera_index: int = 0) -> None:
        if not len(self.pipeline.gallery):
            raise AttendanceError("No registered faces found. Run registration first.")

        window_name = "Face Check-in - Press Q to exit"
        self.logger.info("Starting check-in loop with %d enrolled faces", len(self.pipeline.gallery))

        try:
            with CameraStream(camera_index) as cam:
                for frame, timestamp in cam.frames():
                    self._rollover_day_if_needed()
                    overlay = self.pipeline.process_frame(frame, timestamp)
                    self.collect_decisions(time.monotonic())

                    self.render(frame, overlay)
                    cv2.imshow(window_name, frame)
                    if cv2.waitKey(1) & 0xFF == ord("q"):
                        break
        finally:
            cv2.destroyWindow(window_name)
            self.pipeline.close()

    def collect_decisions(self, now: float) -> Optional[AttendanceDecisionResult]:
        latest = None
        while True:
            result = self.pipeline.poll_decision()
            if result is None:
                break
            latest = result
            level = self.logger.info if result.success else self.logger.warning
            level("%s %s: %s", result.action.label, result.identity_name, result.message.replace("\n", " | "))
        if latest is not None:
            self.banner.show(latest, now)
        return latest

    def render(self, frame: np.ndarray, overlay: FrameOverlay) -> None:
        for face in overlay.faces:
            self._draw_face(frame, face)
        banner = self.banner.current(time.monotonic())
        if banner is not None:
            self._draw_banner(frame, banner)

    def _rollover_day_if_needed(self) -> None:
        today = date.today()
        if today != self.current_day:
            self.current_day = today
            self.pipeline.reset()
            self.pipeline.engine.gate.reset()
            self.logger.info("Date changed. Recognition state cleared for %s.", today.isoformat())

    @staticmethod
    def _draw_face(frame: np.ndarray, face: FaceOverlay) -> None:
        height, width = frame.shape[:2]
        x1, y1, x2, y2 = face.box.to_pixels(width, height)
        color = OVERLAY_COLORS[face.style]
        cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)
        cv2.putText(frame, face.label, (x1, max(20, y1 - 10)), cv2.FONT_HERSHEY_SIMPLEX, 0.65, color, 2, cv2.LINE_AA)
        if SHOW_LIVENESS_DETAILS:
            detail = f"{face.pose_description} | {face.liveness.details}"
            cv2.putText(frame, detail, (x1, min(height - 8, y2 + 20)), cv2.FONT_HERSHEY_SIMPLEX, 0.45, color, 1, cv2.LINE_AA)

    @staticmethod
    def _draw_banner(frame: np.ndarray, result: AttendanceDecisionResult) -> None:
        lines = [f"{result.action.label}: {result.identity_name}"] + result.message.splitlines()
        fill = (40, 120, 40) if result.success else (40, 40, 160)
        cv2.rectangle(frame, (0, 0), (frame.shape[1], 20 + 30 * len(lines)), fill, -1)
        for row, text in enumerate(lines):
            cv2.putText(frame, text, (20, 33 + 30 * row), cv2.FONT_HERSHEY_SIMPLEX, 0.75, (255, 255, 255), 2, cv2.LINE_AA)
