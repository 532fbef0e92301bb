import threading
import uuid
from datetime import datetime
from typing import Iterable, Optional, Tuple

import numpy as np

from .database import CheckInDatabase
from .exceptions import EnrollmentError
from .face_types import EnrolledIdentity, FacePosition
from .logger import setup_logger
from .vector_math import l2_normalize, similarity_cosine


def _frozen(identity: EnrolledIdentity) -> EnrolledIdentity:
    embedding = l2_normalize(identity.embedding)
    embedding.setflags(write=False)
    return EnrolledIdentity(
        identity_id=identity.identity_id,
        name=identity.name,
        embedding=embedding,
        registered_at=identity.registered_at,
        positions=tuple(identity.positions),
    )


class FaceGallery:
    """Read-mostly view of enrolled identities.

    Readers get an immutable tuple; writers persist first and then swap in a
    whole new tuple, so a matching pass never sees a half-applied change.
    """

    def __init__(self, db: CheckInDatabase):
        self.db = db
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._snapshot: Tuple[EnrolledIdentity, ...] = ()
        self._version = 0
        self.refresh()

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> Tuple[EnrolledIdentity, ...]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def refresh(self) -> None:
        identities = tuple(_frozen(item) for item in self.db.list_registered_faces())
        self._publish(identities)

    def enroll(
        self,
        name: str,
        embedding: np.ndarray,
        positions: Iterable[FacePosition] = (),
        identity_id: Optional[str] = None,
    ) -> EnrolledIdentity:
        if not name.strip():
            raise EnrollmentError("name cannot be empty.")

        identity = _frozen(
            EnrolledIdentity(
                identity_id=identity_id or uuid.uuid4().hex,
                name=name.strip(),
                embedding=np.asarray(embedding, dtype=np.float32),
                registered_at=datetime.now().isoformat(timespec="seconds"),
                positions=tuple(positions),
            )
        )
        self.db.save_registered_face(identity)
        self.refresh()
        self.logger.info("Enrolled %s (%s)", identity.name, identity.identity_id)
        return identity

    def remove(self, identity_id: str) -> bool:
        removed = self.db.delete_registered_face(identity_id)
        if removed:
            self.refresh()
            self.logger.info("Removed enrolled identity %s", identity_id)
        return removed

    def find_duplicate(
        self,
        embedding: np.ndarray,
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> Optional[Tuple[EnrolledIdentity, float]]:
        query = l2_normalize(embedding)
        best: Optional[Tuple[EnrolledIdentity, float]] = None
        for identity in self._snapshot:
            if identity.identity_id == exclude_id:
                continue
            score = similarity_cosine(query, identity.embedding)
            if score >= threshold and (best is None or score > best[1]):
                best = (identity, score)
        return best

    def _publish(self, identities: Tuple[EnrolledIdentity, ...]) -> None:
        with self._lock:
            self._snapshot = identities
            self._version += 1
