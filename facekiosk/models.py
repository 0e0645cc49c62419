from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict

# --- Pydantic Models ---

class Detection(BaseModel):
    """One decoded face: box, face-class score and 5-point landmarks in original-image pixels."""
    box: Tuple[float, float, float, float] # x1, y1, x2, y2
    score: float # face-channel probability, within [0, 1]
    landmarks: List[Tuple[float, float]] # left eye, right eye, nose, left mouth, right mouth

    @property
    def width(self) -> float:
        return max(0.0, self.box[2] - self.box[0])

    @property
    def height(self) -> float:
        return max(0.0, self.box[3] - self.box[1])

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.box[0] + self.box[2]) / 2.0, (self.box[1] + self.box[3]) / 2.0)


class FaceRecord(BaseModel):
    """A persisted, L2-normalized feature vector and its store-assigned id."""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: int
    feature: np.ndarray


class Status(str, Enum):
    OK = "ok"
    ENROLLED = "enrolled"
    DUPLICATE = "duplicate"
    MATCHED = "matched"
    NO_MATCH = "no_match"
    NO_FACE = "no_face"
    ALIGNMENT_FAILED = "alignment_failed"
    DECODE_FAILED = "decode_failed"
    EMBEDDING_FAILED = "embedding_failed"
    INVALID_IMAGE = "invalid_image"
    INVALID_FEATURE = "invalid_feature"
    DIMENSION_MISMATCH = "dimension_mismatch"
    NOT_READY = "not_ready"
    STORE_ERROR = "store_error"


class MatchResult(BaseModel):
    """Result of an enroll/recognize decision against the feature store."""
    status: Status
    face_id: int = -1
    similarity: float = 0.0
    message: str = ""


class FeatureExtraction(BaseModel):
    """Result of running one frame through detect -> select -> align -> embed."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: Status
    feature: Optional[np.ndarray] = None
    detection: Optional[Detection] = None
    message: str = ""


class Outcome(BaseModel):
    """End-to-end result for a kiosk action on one frame."""
    status: Status
    face_id: int = -1
    similarity: float = 0.0
    message: str = ""
    detection: Optional[Detection] = None


class FaceCountResponse(BaseModel):
    count: int


class ClearResponse(BaseModel):
    message: str
