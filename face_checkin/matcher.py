from typing import Callable, Optional, Sequence

import numpy as np

from .config import SIMILARITY_METRIC, SIMILARITY_THRESHOLD
from .face_types import EnrolledIdentity, FaceRecognitionResult
from .logger import setup_logger
from .vector_math import similarity_cosine, similarity_euclidean

SimilarityFn = Callable[[np.ndarray, np.ndarray], float]

_METRICS = {
    "cosine": similarity_cosine,
    "euclidean": similarity_euclidean,
}


class FaceMatcher:
    def __init__(self, threshold: float = SIMILARITY_THRESHOLD, metric: str = SIMILARITY_METRIC):
        if metric not in _METRICS:
            raise ValueError(f"Unknown similarity metric {metric!r}; expected one of {sorted(_METRICS)}")
        self.threshold = float(threshold)
        self.metric = metric
        self.similarity: SimilarityFn = _METRICS[metric]
        self.logger = setup_logger(self.__class__.__name__)

    def find_best_match(
        self,
        query: np.ndarray,
        gallery: Sequence[EnrolledIdentity],
    ) -> FaceRecognitionResult:
        if not gallery:
            self.logger.debug("No enrolled identities to compare against")
            return FaceRecognitionResult(identity=None, similarity=0.0, is_match=False)

        best: Optional[EnrolledIdentity] = None
        best_similarity = float("-inf")
        # Strict comparison keeps the first identity on ties.
        for identity in gallery:
            score = self.similarity(query, identity.embedding)
            if score > best_similarity:
                best_similarity = score
                best = identity

        is_match = best is not None and best_similarity > self.threshold
        if is_match:
            self.logger.info("Best match: %s (similarity %.3f)", best.name, best_similarity)
        else:
            self.logger.debug("No match above %.2f, highest similarity %.3f", self.threshold, best_similarity)
        return FaceRecognitionResult(identity=best, similarity=float(best_similarity), is_match=is_match)
