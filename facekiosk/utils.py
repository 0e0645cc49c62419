from typing import Optional

import cv2
import numpy as np
from fastapi import HTTPException, UploadFile

from facekiosk.log import get_logger

logger = get_logger(__name__)


def decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """Decodes image bytes into an OpenCV BGR numpy array."""
    if not image_bytes:
        return None
    image_np_bgr = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
    if image_np_bgr is None:
        logger.warning("Could not decode %d image bytes", len(image_bytes))
        return None
    return image_np_bgr


async def read_upload_image(file: UploadFile) -> np.ndarray:
    """
    Reads an uploaded image into a BGR frame.
    Raises HTTPException(400) if it cannot be decoded.
    """
    try:
        image_bytes = await file.read()
    finally:
        await file.close()

    image_np_bgr = decode_image(image_bytes)
    if image_np_bgr is None:
        raise HTTPException(status_code=400, detail="Could not decode uploaded image.")
    return image_np_bgr
