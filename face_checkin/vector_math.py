from typing import Sequence

import numpy as np

from .exceptions import DimensionMismatchError
from .logger import setup_logger

logger = setup_logger("VectorMath")


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


def _check_dimensions(a: np.ndarray, b: np.ndarray) -> None:
    if a.size != b.size:
        raise DimensionMismatchError(f"Embedding size mismatch: {a.size} vs {b.size}")


def l2_normalize(values) -> np.ndarray:
    vector = _as_vector(values)
    norm = float(np.linalg.norm(vector))
    if norm <= 1e-9:
        return vector.copy()
    return vector / norm


def euclidean_distance(a, b) -> float:
    va, vb = _as_vector(a), _as_vector(b)
    _check_dimensions(va, vb)
    return float(np.linalg.norm(va - vb))


def similarity_cosine(a, b, strict: bool = False) -> float:
    """Map the cosine of two pre-normalized embeddings from [-1, 1] onto [0, 1].

    A length mismatch is logged and scored 0.0 unless ``strict`` is set, in
    which case :class:`DimensionMismatchError` propagates.
    """
    va, vb = _as_vector(a), _as_vector(b)
    try:
        _check_dimensions(va, vb)
    except DimensionMismatchError as exc:
        if strict:
            raise
        logger.error("%s", exc)
        return 0.0
    return (float(np.dot(va, vb)) + 1.0) / 2.0


def similarity_euclidean(a, b, strict: bool = False) -> float:
    """Unit embeddings are at most 2 apart, so distance / 2 maps onto [0, 1]."""
    try:
        distance = euclidean_distance(a, b)
    except DimensionMismatchError as exc:
        if strict:
            raise
        logger.error("%s", exc)
        return 0.0
    return max(0.0, 1.0 - distance / 2.0)


def average_embedding(embeddings: Sequence[np.ndarray]) -> np.ndarray:
    if not embeddings:
        raise ValueError("At least one embedding is required.")
    vectors = [_as_vector(item) for item in embeddings]
    for vector in vectors[1:]:
        _check_dimensions(vectors[0], vector)
    mean = np.vstack(vectors).mean(axis=0)
    if float(np.linalg.norm(mean)) <= 1e-9:
        raise ValueError("Unable to normalize average embedding.")
    return l2_normalize(mean)
