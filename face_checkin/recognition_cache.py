import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .config import RECOGNITION_CACHE_BUCKET, RECOGNITION_CACHE_TTL_SECONDS
from .face_types import BoundingBox, FaceRecognitionResult

CacheKey = Tuple[int, int]


def spatial_key(box: BoundingBox, bucket: float = RECOGNITION_CACHE_BUCKET) -> CacheKey:
    bucket = max(float(bucket), 1e-6)
    return int(round(box.x / bucket)), int(round(box.y / bucket))


@dataclass(frozen=True)
class CacheEntry:
    result: FaceRecognitionResult
    inserted_at: float


class RecognitionCache:
    """Recognition results memoized by coarse face position for a short TTL.

    Entries are only ever retired by age: an expired entry reads as a miss
    and is dropped on access, and every ``put`` sweeps the rest.
    """

    def __init__(self, ttl: float = RECOGNITION_CACHE_TTL_SECONDS, bucket: float = RECOGNITION_CACHE_BUCKET):
        self.ttl = float(ttl)
        self.bucket = float(bucket)
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def key_for(self, box: BoundingBox) -> CacheKey:
        return spatial_key(box, self.bucket)

    def get(self, key: CacheKey, now: float) -> Optional[FaceRecognitionResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.inserted_at < self.ttl:
                return entry.result
            del self._entries[key]
            return None

    def put(self, key: CacheKey, result: FaceRecognitionResult, now: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(result=result, inserted_at=now)
            self._sweep_locked(now)

    def invalidate(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._sweep_locked(now)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if now - entry.inserted_at >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)
