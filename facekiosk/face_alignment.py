"""
5-point face alignment.

Maps detected landmarks (left eye, right eye, nose, left mouth corner, right
mouth corner) onto the ArcFace 112x112 template with a similarity transform
(rotation + uniform scale + translation) and resamples the frame into the
canonical crop the embedding model expects.
"""
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from facekiosk.config import ALIGNED_FACE_SIZE
from facekiosk.log import get_logger

logger = get_logger(__name__)

# ArcFace 112x112 template (InsightFace standard)
REFERENCE_LANDMARKS_112 = np.array([
    [38.2946, 51.6963], # left eye
    [73.5318, 51.5014], # right eye
    [56.0252, 71.7366], # nose
    [41.5493, 92.3655], # left mouth
    [70.7299, 92.2041], # right mouth
], dtype=np.float32)

# Relative singular-value floor below which the landmark cloud counts as collinear
_COLLINEAR_EPS = 1e-3


def reference_landmarks(output_size: int = ALIGNED_FACE_SIZE) -> np.ndarray:
    """Returns the template scaled to a square output size."""
    if output_size == 112:
        return REFERENCE_LANDMARKS_112.copy()
    return REFERENCE_LANDMARKS_112 * np.float32(output_size / 112.0)


def _is_degenerate(points: np.ndarray) -> bool:
    if points.shape != (5, 2) or not np.all(np.isfinite(points)):
        return True
    centered = points - points.mean(axis=0)
    s = np.linalg.svd(centered.astype(np.float64), compute_uv=False)
    if s[0] < 1e-6:
        return True # all points coincide
    return s[1] < _COLLINEAR_EPS * s[0]


def estimate_similarity_transform(
    landmarks: Sequence[Tuple[float, float]],
    output_size: int = ALIGNED_FACE_SIZE,
) -> Optional[np.ndarray]:
    """
    Least-median-of-squares partial-affine fit of the 5 landmarks onto the template.
    Returns a 2x3 float32 matrix, or None if the landmarks are degenerate.
    """
    src = np.asarray(landmarks, dtype=np.float32).reshape(-1, 2)
    if _is_degenerate(src):
        logger.info("Degenerate landmarks, cannot estimate alignment")
        return None

    dst = reference_landmarks(output_size)
    M, _ = cv2.estimateAffinePartial2D(src, dst, method=cv2.LMEDS)
    if M is None or not np.all(np.isfinite(M)):
        logger.info("Similarity transform estimation failed")
        return None

    # Zero scale would collapse the whole crop onto one point
    if abs(float(np.linalg.det(M[:, :2]))) < 1e-12:
        return None
    return M.astype(np.float32)


def align_face(
    image_np_bgr: np.ndarray,
    landmarks: Sequence[Tuple[float, float]],
    output_size: int = ALIGNED_FACE_SIZE,
) -> Optional[np.ndarray]:
    """Warps the frame into an output_size x output_size canonical face, or None if alignment fails."""
    if image_np_bgr is None or image_np_bgr.size == 0:
        return None

    M = estimate_similarity_transform(landmarks, output_size=output_size)
    if M is None:
        return None

    return cv2.warpAffine(
        image_np_bgr,
        M,
        (output_size, output_size),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )
