import time
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import CAMERA_BACKEND_ORDER, CAMERA_INDEX, FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError
from .logger import setup_logger

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "v4l2": "V4L2",
    "avfoundation": "AVFoundation",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
}
_DEFAULT_BACKENDS = ("Auto", "V4L2", "AVFoundation", "DirectShow", "Media Foundation")


def capture_backends(order: Sequence[str] = CAMERA_BACKEND_ORDER) -> List[Tuple[str, Optional[int]]]:
    """Named OpenCV capture backends, preferred ones first, without duplicates."""
    backend_ids: Dict[str, Optional[int]] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
        "AVFoundation": getattr(cv2, "CAP_AVFOUNDATION", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
    }
    names: List[str] = []
    for token in order:
        name = _BACKEND_ALIASES.get(token.strip().lower())
        if name and name not in names:
            names.append(name)
    names.extend(name for name in _DEFAULT_BACKENDS if name not in names)

    candidates: List[Tuple[str, Optional[int]]] = []
    seen = set()
    for name in names:
        backend = backend_ids.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


class CameraStream:
    """OpenCV webcam yielding ``(frame, timestamp)`` pairs on a monotonic clock."""

    def __init__(self, camera_index: int = CAMERA_INDEX, probe_reads: int = 6):
        self.camera_index = camera_index
        self.probe_reads = probe_reads
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.logger = setup_logger(self.__class__.__name__)

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        attempted: List[str] = []
        for backend_name, backend in capture_backends():
            attempted.append(backend_name)
            cap = cv2.VideoCapture(self.camera_index) if backend is None else cv2.VideoCapture(self.camera_index, backend)
            if cap.isOpened() and self._probe(cap):
                self.cap = cap
                self.backend_name = backend_name
                break
            cap.release()
        else:
            raise CameraError(f"Unable to open webcam index {self.camera_index}. Tried backends: {', '.join(attempted)}.")

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        self.cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
        cv2.setUseOptimized(True)
        self.logger.info("Camera %s opened with %s backend", self.camera_index, self.backend_name)

    def _probe(self, cap: cv2.VideoCapture) -> bool:
        # Some backends report opened but never deliver a frame.
        for _ in range(self.probe_reads):
            ok, frame = cap.read()
            if ok and frame is not None:
                return True
            time.sleep(0.03)
        return False

    def read(self) -> Tuple[np.ndarray, float]:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.")
        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame, time.monotonic()

    def frames(self) -> Iterator[Tuple[np.ndarray, float]]:
        while self.cap is not None:
            yield self.read()

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
