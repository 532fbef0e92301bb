from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import List, Protocol

import numpy as np

from .exceptions import EmbeddingError, EmbeddingTimeoutError
from .face_types import FaceObservation
from .vector_math import l2_normalize


class EmbeddingProvider(Protocol):
    def embed(self, face_crop: np.ndarray) -> np.ndarray:
        ...


class FaceDetector(Protocol):
    def detect(self, frame: np.ndarray) -> List[FaceObservation]:
        ...


def embed_with_timeout(
    provider: EmbeddingProvider,
    face_crop: np.ndarray,
    timeout: float,
    executor: Executor,
) -> np.ndarray:
    """Run ``provider.embed`` on ``executor`` and wait at most ``timeout`` seconds.

    An overrunning call is abandoned, not cancelled: the worker finishes it in
    the background and its result is discarded.
    """
    if face_crop is None or face_crop.size == 0:
        raise EmbeddingError("Empty face crop.")

    future = executor.submit(provider.embed, face_crop)
    try:
        vector = future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise EmbeddingTimeoutError(f"Descriptor extraction exceeded {timeout:.1f}s") from exc
    except EmbeddingError:
        raise
    except Exception as exc:
        raise EmbeddingError(f"Embedding provider failed: {exc}") from exc

    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    if vector.size == 0:
        raise EmbeddingError("Embedding provider returned an empty vector.")
    return l2_normalize(vector)

