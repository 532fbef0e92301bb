class AttendanceError(Exception):
    """Base exception for the check-in system."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class EmbeddingError(FaceEngineError):
    """Raised when a face descriptor cannot be produced for a crop."""


class EmbeddingTimeoutError(EmbeddingError):
    """Raised when descriptor extraction takes longer than the allowed wait."""


class DimensionMismatchError(AttendanceError):
    """Raised when embeddings of different lengths are compared."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class EnrollmentError(AttendanceError):
    """Raised when a face enrollment cannot be completed."""
