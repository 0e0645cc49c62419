from typing import Optional, Tuple

import cv2
import numpy as np

from facekiosk.config import EMBEDDING_INPUT_SIZE, MIN_FEATURE_NORM
from facekiosk.inference import InferenceError
from facekiosk.log import get_logger

logger = get_logger(__name__)


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2-normalize a 1-D vector; a zero vector is returned unchanged."""
    arr = np.asarray(vec, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(arr))
    if norm < eps:
        return arr
    return (arr / norm).astype(np.float32)


def preprocess_image_embedding(aligned_face_bgr: np.ndarray, input_size: Tuple[int, int] = EMBEDDING_INPUT_SIZE) -> Optional[np.ndarray]:
    """
    Prepares an aligned face crop for the MobileFaceNet/ArcFace embedder:
    BGR -> RGB, (x - 127.5) / 128, HWC -> NCHW float32.
    """
    if aligned_face_bgr is None or aligned_face_bgr.size == 0:
        logger.warning("Aligned face is empty, cannot preprocess for embedding")
        return None

    # blobFromImage subtracts the mean before applying scalefactor
    return cv2.dnn.blobFromImage(
        aligned_face_bgr,
        scalefactor=1.0 / 128.0,
        size=input_size,
        mean=(127.5, 127.5, 127.5),
        swapRB=True,
        crop=False,
    )


def get_embedding(embedding_session, embedding_blob: np.ndarray) -> Optional[np.ndarray]:
    """
    Runs the embedding model and returns the L2-normalized feature vector.
    Returns None if inference fails or the output is empty, non-finite or zero.
    """
    if embedding_blob is None:
        return None

    try:
        outputs = embedding_session.run(embedding_blob)
    except InferenceError:
        logger.exception("Error during embedding inference")
        return None

    feature = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
    if feature.size == 0 or not np.all(np.isfinite(feature)):
        logger.warning("Embedding model returned an unusable vector (size=%d)", feature.size)
        return None
    if float(np.linalg.norm(feature)) < MIN_FEATURE_NORM:
        logger.warning("Embedding model returned a zero vector")
        return None
    return l2_normalize(feature)
