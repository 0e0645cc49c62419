from typing import Optional, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as _cosine_kernel
from sqlalchemy.exc import SQLAlchemyError

from facekiosk.config import MIN_FEATURE_NORM as MIN_NORM
from facekiosk.config import SIMILARITY_THRESHOLD
from facekiosk.face_embedding import l2_normalize
from facekiosk.log import get_logger
from facekiosk.models import MatchResult, Status

logger = get_logger(__name__)

STORE_ERROR_MESSAGE = "Face database error, please retry"


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity of two 1-D vectors, clamped to [-1, 1].
    Returns 0.0 for empty vectors, mismatched lengths or a near-zero norm.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.size == 0 or va.size != vb.size:
        return 0.0
    if float(np.linalg.norm(va)) < MIN_NORM or float(np.linalg.norm(vb)) < MIN_NORM:
        return 0.0
    sim = float(_cosine_kernel(va.reshape(1, -1), vb.reshape(1, -1))[0, 0])
    if not np.isfinite(sim):
        return 0.0
    return min(1.0, max(-1.0, sim))


class FeatureMatcher:
    """
    Enroll / recognize policy over a face store.

    Holds no collection state of its own; every decision reads a fresh
    snapshot from the store and scans it linearly.

    Duplicate rejection on enroll is a write-time check. The find-then-insert
    sequence is not locked, so two concurrent enrollments of the same face
    can both be stored.
    """

    def __init__(self, store, threshold: float = SIMILARITY_THRESHOLD):
        self.store = store
        self.threshold = float(threshold)

    def find_best_match(self, query: np.ndarray) -> Tuple[int, float]:
        """Returns (best_id, best_similarity), or (-1, 0.0) when nothing scores above zero."""
        best_id = -1
        best_similarity = 0.0
        for record in self.store.all_records():
            similarity = cosine_similarity(query, record.feature)
            if similarity > best_similarity:
                best_similarity = similarity
                best_id = record.id
        return best_id, best_similarity

    def _check_query(self, query) -> Tuple[Optional[np.ndarray], Optional[MatchResult]]:
        if not self.store.ready:
            return None, MatchResult(status=Status.NOT_READY, message="Face database is not ready")

        vec = np.asarray(query if query is not None else [], dtype=np.float32).reshape(-1)
        if vec.size == 0:
            return None, MatchResult(status=Status.INVALID_FEATURE, message="Feature vector is empty")
        if not np.all(np.isfinite(vec)):
            return None, MatchResult(status=Status.INVALID_FEATURE, message="Feature vector is not finite")
        if float(np.linalg.norm(vec)) < MIN_NORM:
            return None, MatchResult(status=Status.INVALID_FEATURE, message="Feature vector has zero norm")

        dim = self.store.dimension()
        if dim is not None and dim != vec.size:
            return None, MatchResult(
                status=Status.DIMENSION_MISMATCH,
                message=f"Feature has {vec.size} values, database expects {dim}",
            )
        return vec, None

    def enroll(self, query: np.ndarray) -> MatchResult:
        try:
            return self._enroll(query)
        except SQLAlchemyError:
            logger.exception("Face database failed during enroll")
            return MatchResult(status=Status.STORE_ERROR, message=STORE_ERROR_MESSAGE)

    def recognize(self, query: np.ndarray) -> MatchResult:
        try:
            return self._recognize(query)
        except SQLAlchemyError:
            logger.exception("Face database failed during recognize")
            return MatchResult(status=Status.STORE_ERROR, message=STORE_ERROR_MESSAGE)

    def _enroll(self, query: np.ndarray) -> MatchResult:
        vec, failure = self._check_query(query)
        if failure is not None:
            logger.warning("Enroll rejected: %s", failure.message)
            return failure

        best_id, best_similarity = self.find_best_match(vec)
        if best_id > 0 and best_similarity >= self.threshold:
            logger.info("Duplicate enrollment of No. %d (similarity %.4f)", best_id, best_similarity)
            return MatchResult(
                status=Status.DUPLICATE,
                face_id=best_id,
                similarity=best_similarity,
                message="Please do not enroll twice",
            )

        new_id = self.store.insert(l2_normalize(vec))
        return MatchResult(
            status=Status.ENROLLED,
            face_id=new_id,
            similarity=best_similarity,
            message=f"Enrolled as No. {new_id}",
        )

    def _recognize(self, query: np.ndarray) -> MatchResult:
        vec, failure = self._check_query(query)
        if failure is not None:
            logger.warning("Recognize rejected: %s", failure.message)
            return failure

        best_id, best_similarity = self.find_best_match(vec)
        if best_id > 0 and best_similarity >= self.threshold:
            logger.info("Recognized No. %d (similarity %.4f)", best_id, best_similarity)
            return MatchResult(
                status=Status.MATCHED,
                face_id=best_id,
                similarity=best_similarity,
                message=f"You are No. {best_id}",
            )

        logger.info("No match (best similarity %.4f)", best_similarity)
        return MatchResult(
            status=Status.NO_MATCH,
            similarity=best_similarity,
            message="Please enroll first",
        )
