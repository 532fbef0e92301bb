import math
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import mediapipe as mp
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import INFERENCE_DEVICE, MAX_TRACKED_FACES, MIN_DETECTION_CONFIDENCE
from .exceptions import EmbeddingError, FaceEngineError
from .face_types import BoundingBox, FaceObservation, FaceRegion, PoseAngles
from .logger import setup_logger

# Face Mesh indices. Eye contours are ordered corner, top, top, corner, bottom, bottom.
MESH_REGIONS: Dict[FaceRegion, Tuple[int, ...]] = {
    FaceRegion.LEFT_EYE: (33, 160, 158, 133, 153, 144),
    FaceRegion.RIGHT_EYE: (362, 385, 387, 263, 373, 380),
    FaceRegion.NOSE: (1, 4, 5, 195, 197),
    FaceRegion.OUTER_LIPS: (61, 146, 91, 181, 84, 17, 314, 405, 321, 375, 291, 409, 270, 269, 267, 0, 37, 39, 40, 185),
    FaceRegion.CONTOUR: (
        10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288, 397, 365, 379, 378, 400, 377,
        152, 148, 176, 149, 150, 136, 172, 58, 132, 93, 234, 127, 162, 21, 54, 103, 67, 109,
    ),
}

# Nose tip, chin, eye corners, mouth corners.
POSE_LANDMARKS = (1, 152, 33, 263, 61, 291)
POSE_MODEL_POINTS = np.array(
    [
        (0.0, 0.0, 0.0),
        (0.0, -330.0, -65.0),
        (-225.0, 170.0, -135.0),
        (225.0, 170.0, -135.0),
        (-150.0, -150.0, -125.0),
        (150.0, -150.0, -125.0),
    ],
    dtype=np.float64,
)


def resolve_device(preferred: str = INFERENCE_DEVICE) -> str:
    if preferred:
        return preferred
    return "cuda" if torch.cuda.is_available() else "cpu"


def _wrap_half_turn(degrees: float) -> float:
    if degrees > 90.0:
        return degrees - 180.0
    if degrees < -90.0:
        return degrees + 180.0
    return degrees


def estimate_pose(image_points: np.ndarray, frame_width: int, frame_height: int) -> PoseAngles:
    focal = float(frame_width)
    camera_matrix = np.array(
        [[focal, 0.0, frame_width / 2.0], [0.0, focal, frame_height / 2.0], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )
    ok, rotation_vec, _ = cv2.solvePnP(
        POSE_MODEL_POINTS,
        np.asarray(image_points, dtype=np.float64),
        camera_matrix,
        np.zeros((4, 1), dtype=np.float64),
        flags=cv2.SOLVEPNP_ITERATIVE,
    )
    if not ok:
        return PoseAngles()

    rotation, _ = cv2.Rodrigues(rotation_vec)
    angles = cv2.RQDecomp3x3(rotation)[0]
    pitch = _wrap_half_turn(float(angles[0]))
    yaw = float(angles[1])
    roll = _wrap_half_turn(float(angles[2]))
    return PoseAngles(yaw=math.radians(yaw), pitch=math.radians(pitch), roll=math.radians(roll))


class FaceEngine:
    """MediaPipe face detector plus Face Mesh landmarks and a solvePnP head pose."""

    def __init__(
        self,
        max_faces: int = MAX_TRACKED_FACES,
        min_confidence: float = MIN_DETECTION_CONFIDENCE,
    ):
        self.logger = setup_logger(self.__class__.__name__)
        self.min_confidence = min_confidence
        self.max_faces = max(1, int(max_faces))
        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=min_confidence,
            )
            self.face_mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=False,
                max_num_faces=self.max_faces,
                refine_landmarks=True,
                min_detection_confidence=0.5,
                min_tracking_confidence=0.5,
            )
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

    def close(self) -> None:
        self.detector.close()
        self.face_mesh.close()

    def detect(self, frame: np.ndarray) -> List[FaceObservation]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            detections = self.detector.process(rgb).detections or []
            meshes = self.face_mesh.process(rgb).multi_face_landmarks or []
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        height, width = frame.shape[:2]
        mesh_points = [
            np.array([(lm.x, lm.y) for lm in mesh.landmark], dtype=np.float64) for mesh in meshes
        ]

        observations: List[FaceObservation] = []
        for det in detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.min_confidence:
                continue

            rel = det.location_data.relative_bounding_box
            x = float(np.clip(rel.xmin, 0.0, 1.0))
            y = float(np.clip(rel.ymin, 0.0, 1.0))
            box = BoundingBox(
                x=x,
                y=y,
                width=float(np.clip(rel.width, 0.0, 1.0 - x)),
                height=float(np.clip(rel.height, 0.0, 1.0 - y)),
            )
            if box.area <= 0.0:
                continue

            points = self._claim_mesh(box, mesh_points)
            landmarks: Dict[FaceRegion, np.ndarray] = {}
            pose = PoseAngles()
            if points is not None:
                landmarks = self._box_relative_regions(points, box)
                pose = estimate_pose(points[list(POSE_LANDMARKS)] * (width, height), width, height)
            observations.append(FaceObservation(box=box, landmarks=landmarks, pose=pose, confidence=score))

        observations.sort(key=lambda obs: obs.confidence * obs.box.area, reverse=True)
        return observations[: self.max_faces]

    @staticmethod
    def _claim_mesh(box: BoundingBox, mesh_points: List[np.ndarray]) -> Optional[np.ndarray]:
        cx, cy = box.center
        best_idx = -1
        best_dist = float("inf")
        for idx, points in enumerate(mesh_points):
            mx, my = points.mean(axis=0)
            inside = box.x <= mx <= box.x + box.width and box.y <= my <= box.y + box.height
            dist = math.hypot(mx - cx, my - cy)
            if inside and dist < best_dist:
                best_idx = idx
                best_dist = dist
        if best_idx < 0:
            return None
        return mesh_points.pop(best_idx)

    @staticmethod
    def _box_relative_regions(points: np.ndarray, box: BoundingBox) -> Dict[FaceRegion, np.ndarray]:
        scale = np.array([max(box.width, 1e-6), max(box.height, 1e-6)], dtype=np.float64)
        origin = np.array([box.x, box.y], dtype=np.float64)
        return {
            region: ((points[list(indices)] - origin) / scale).astype(np.float32)
            for region, indices in MESH_REGIONS.items()
        }


class TorchEmbeddingProvider:
    """ResNet-18 descriptor on an illumination-normalized, center-weighted crop."""

    input_size = 224

    def __init__(self, device: Optional[str] = None):
        self.logger = setup_logger(self.__class__.__name__)
        self.device = torch.device(device or resolve_device())
        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize embedding model: {exc}") from exc
        self._mask = self._center_mask(self.input_size)
        self.logger.info("Embedding model ready on %s", self.device)

    def embed(self, face_crop: np.ndarray) -> np.ndarray:
        return self.embed_batch([face_crop])[0]

    def embed_batch(self, face_crops: Sequence[np.ndarray]) -> List[np.ndarray]:
        if not face_crops:
            return []
        try:
            batch = self._to_tensor_batch(face_crops)
            with torch.inference_mode():
                raw = self.embedder(batch)
                normed = f.normalize(raw.float(), p=2, dim=1)
                emb = normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise EmbeddingError(f"Embedding generation failed: {exc}") from exc
        return [emb[i] for i in range(emb.shape[0])]

    def _to_tensor_batch(self, face_crops: Sequence[np.ndarray]) -> torch.Tensor:
        processed = []
        for crop in face_crops:
            tensor = torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)
        batch = torch.stack(processed, dim=0).to(self.device)
        return (batch - self.mean) / self.std

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        size = self.input_size
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < size else cv2.INTER_AREA
        resized = cv2.resize(crop, (size, size), interpolation=interpolation)

        # Crops come from BGR camera frames; equalize luma only.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_BGR2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        balanced = cv2.cvtColor(
            cv2.merge([self.clahe.apply(y_channel), cr_channel, cb_channel]),
            cv2.COLOR_YCrCb2RGB,
        ).astype(np.float32)

        mean_color = balanced.mean(axis=(0, 1), keepdims=True)
        focused = balanced * self._mask + mean_color * (1.0 - self._mask)
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)

    @staticmethod
    def _center_mask(size: int) -> np.ndarray:
        mask = np.zeros((size, size), dtype=np.float32)
        center = size // 2
        cv2.ellipse(mask, (center, center), (int(size * 0.375), int(size * 0.446)), 0, 0, 360, 1.0, -1)
        return cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)[..., None]
