from typing import Optional

import numpy as np

from facekiosk.anchors import AnchorConfig
from facekiosk.config import (
    ALIGNED_FACE_SIZE,
    DETECTION_CONF_THRESHOLD,
    DETECTION_NMS_THRESHOLD,
    SIMILARITY_THRESHOLD,
)
from facekiosk.face_alignment import align_face
from facekiosk.face_detection import DecodeError, SelectionPolicy, detect_faces, select_face
from facekiosk.face_embedding import get_embedding, preprocess_image_embedding
from facekiosk.inference import InferenceError
from facekiosk.log import get_logger
from facekiosk.matcher import FeatureMatcher
from facekiosk.models import FeatureExtraction, MatchResult, Outcome, Status

logger = get_logger(__name__)


class FaceRecognitionService:
    """
    Runs one kiosk action on one frame:
    detect -> pick one face -> align to 112x112 -> embed -> enroll or recognize.

    Every failure comes back as a status in the returned model; nothing here
    raises for bad input, missing faces, model failures or database faults.
    """

    def __init__(
        self,
        detection_session,
        embedding_session,
        store,
        anchor_config: AnchorConfig = AnchorConfig(),
        conf_threshold: float = DETECTION_CONF_THRESHOLD,
        nms_threshold: float = DETECTION_NMS_THRESHOLD,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        selection_policy: SelectionPolicy = SelectionPolicy.LARGEST_AREA,
    ):
        self.detection_session = detection_session
        self.embedding_session = embedding_session
        self.store = store
        self.anchor_config = anchor_config
        self.conf_threshold = conf_threshold
        self.nms_threshold = nms_threshold
        self.selection_policy = selection_policy
        self.matcher = FeatureMatcher(store, threshold=similarity_threshold)

    def extract_feature(self, image_np_bgr: Optional[np.ndarray]) -> FeatureExtraction:
        """Detects, selects, aligns and embeds the subject in a frame."""
        if image_np_bgr is None or image_np_bgr.ndim != 3 or image_np_bgr.shape[2] != 3 or image_np_bgr.size == 0:
            return FeatureExtraction(status=Status.INVALID_IMAGE, message="Expected a non-empty BGR image")

        # Work on a private snapshot so a live capture buffer cannot change under the decoder
        frame = np.ascontiguousarray(image_np_bgr).copy()
        img_h, img_w = frame.shape[:2]

        try:
            detections = detect_faces(
                self.detection_session,
                frame,
                anchor_config=self.anchor_config,
                conf_thres=self.conf_threshold,
                iou_thres=self.nms_threshold,
            )
        except DecodeError as e:
            logger.error("Detection decode failed: %s", e)
            return FeatureExtraction(status=Status.DECODE_FAILED, message=str(e))
        except InferenceError as e:
            logger.exception("Error during detection inference")
            return FeatureExtraction(status=Status.DECODE_FAILED, message=str(e))

        face = select_face(detections, policy=self.selection_policy, image_size=(img_w, img_h))
        if face is None:
            logger.info("No face detected")
            return FeatureExtraction(status=Status.NO_FACE, message="No face detected, please face the camera")
        logger.info("Selected face %s (score %.3f) out of %d", [round(c) for c in face.box], face.score, len(detections))

        aligned = align_face(frame, face.landmarks, output_size=ALIGNED_FACE_SIZE)
        if aligned is None:
            logger.info("Face alignment failed")
            return FeatureExtraction(status=Status.ALIGNMENT_FAILED, detection=face, message="Face alignment failed, please retry")

        feature = get_embedding(self.embedding_session, preprocess_image_embedding(aligned))
        if feature is None:
            return FeatureExtraction(status=Status.EMBEDDING_FAILED, detection=face, message="Feature extraction failed, please retry")

        logger.debug("Extracted feature of dimension %d", feature.size)
        return FeatureExtraction(status=Status.OK, feature=feature, detection=face)

    def _act(self, image_np_bgr, action) -> Outcome:
        if not self.store.ready:
            return Outcome(status=Status.NOT_READY, message="Face database is not ready")

        extraction = self.extract_feature(image_np_bgr)
        if extraction.status != Status.OK:
            return Outcome(status=extraction.status, message=extraction.message, detection=extraction.detection)

        result: MatchResult = action(extraction.feature)
        return Outcome(
            status=result.status,
            face_id=result.face_id,
            similarity=result.similarity,
            message=result.message,
            detection=extraction.detection,
        )

    def enroll(self, image_np_bgr: np.ndarray) -> Outcome:
        return self._act(image_np_bgr, self.matcher.enroll)

    def recognize(self, image_np_bgr: np.ndarray) -> Outcome:
        return self._act(image_np_bgr, self.matcher.recognize)
