from enum import Enum
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from facekiosk.anchors import AnchorConfig, get_anchors
from facekiosk.config import (
    ANCHOR_VARIANCES,
    DETECTION_CONF_THRESHOLD,
    DETECTION_MEAN_BGR,
    DETECTION_NMS_THRESHOLD,
)
from facekiosk.log import get_logger
from facekiosk.models import Detection

logger = get_logger(__name__)


class DecodeError(ValueError):
    """Raised when the raw detection tensors do not match the anchor table."""


def preprocess_image_detection(image_np_bgr: np.ndarray, input_size: Tuple[int, int]) -> np.ndarray:
    """Prepares a BGR frame for RetinaFace: stretch-resize, subtract channel means, HWC -> NCHW."""
    return cv2.dnn.blobFromImage(
        image_np_bgr,
        scalefactor=1.0,
        size=input_size,
        mean=DETECTION_MEAN_BGR,
        swapRB=False, # RetinaFace takes BGR
        crop=False,
    )


def _as_2d(tensor: np.ndarray, width: int, name: str) -> np.ndarray:
    arr = np.asarray(tensor, dtype=np.float32)
    if arr.ndim == 3 and arr.shape[0] == 1:
        arr = arr[0] # drop batch dimension
    if arr.ndim != 2 or arr.shape[1] != width:
        raise DecodeError(f"{name} tensor must have shape [N, {width}], got {tuple(np.shape(tensor))}")
    return arr


def decode_detections(
    loc: np.ndarray,
    conf: np.ndarray,
    landms: np.ndarray,
    anchors: np.ndarray,
    image_size: Tuple[int, int],
    variances: Tuple[float, float] = ANCHOR_VARIANCES,
    conf_threshold: float = DETECTION_CONF_THRESHOLD,
) -> List[Detection]:
    """
    Decodes RetinaFace regression outputs against the anchor table.

    Args:
        loc: [N, 4] box offsets (dx, dy, dw, dh) per anchor.
        conf: [N, 2] post-softmax (background, face) probabilities.
        landms: [N, 10] landmark offsets, 5 x (dx, dy).
        anchors: [N, 4] (cx, cy, w, h) normalized anchors, in generation order.
        image_size: (width, height) of the original frame.
        variances: encoding variances (center, size).
        conf_threshold: minimum face probability for a candidate.

    Returns:
        Candidates whose face score reaches the threshold, in anchor order,
        with boxes and landmarks in original-image pixels.
    """
    loc = _as_2d(loc, 4, "location")
    conf = _as_2d(conf, 2, "score")
    landms = _as_2d(landms, 10, "landmark")
    anchors = np.asarray(anchors, dtype=np.float32)

    n = anchors.shape[0]
    if not (loc.shape[0] == conf.shape[0] == landms.shape[0] == n):
        raise DecodeError(
            f"Tensor rows (loc={loc.shape[0]}, score={conf.shape[0]}, landmark={landms.shape[0]}) "
            f"do not match anchor count {n}"
        )

    img_w, img_h = float(image_size[0]), float(image_size[1])
    v0, v1 = float(variances[0]), float(variances[1])

    scores = conf[:, 1]
    keep = np.where(scores >= conf_threshold)[0]
    if keep.size == 0:
        return []

    a = anchors[keep].astype(np.float64)
    l = loc[keep].astype(np.float64)
    lm = landms[keep].astype(np.float64).reshape(-1, 5, 2)

    cx = a[:, 0] + l[:, 0] * v0 * a[:, 2]
    cy = a[:, 1] + l[:, 1] * v0 * a[:, 3]
    w = a[:, 2] * np.exp(l[:, 2] * v1)
    h = a[:, 3] * np.exp(l[:, 3] * v1)

    x1 = (cx - w / 2.0) * img_w
    y1 = (cy - h / 2.0) * img_h
    x2 = x1 + w * img_w
    y2 = y1 + h * img_h

    lx = (a[:, 0:1] + lm[:, :, 0] * v0 * a[:, 2:3]) * img_w
    ly = (a[:, 1:2] + lm[:, :, 1] * v0 * a[:, 3:4]) * img_h

    face_scores = np.clip(scores[keep], 0.0, 1.0)

    results = []
    for i in range(keep.shape[0]):
        results.append(Detection(
            box=(float(x1[i]), float(y1[i]), float(x2[i]), float(y2[i])),
            score=float(face_scores[i]),
            landmarks=[(float(lx[i, k]), float(ly[i, k])) for k in range(5)],
        ))
    return results


def box_iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """Intersection-over-union of two (x1, y1, x2, y2) boxes."""
    xx1 = max(box_a[0], box_b[0])
    yy1 = max(box_a[1], box_b[1])
    xx2 = min(box_a[2], box_b[2])
    yy2 = min(box_a[3], box_b[3])
    inter = max(0.0, xx2 - xx1) * max(0.0, yy2 - yy1)
    area_a = max(0.0, box_a[2] - box_a[0]) * max(0.0, box_a[3] - box_a[1])
    area_b = max(0.0, box_b[2] - box_b[0]) * max(0.0, box_b[3] - box_b[1])
    union = area_a + area_b - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def non_max_suppression(
    detections: List[Detection],
    iou_threshold: float = DETECTION_NMS_THRESHOLD,
    score_threshold: Optional[float] = None,
) -> List[Detection]:
    """
    Greedy IoU suppression. Keeps the best-scoring box of each overlapping
    cluster; equal scores keep their input order. Output is sorted by score.
    """
    if score_threshold is not None:
        detections = [d for d in detections if d.score >= score_threshold]
    if not detections:
        return []

    boxes = np.array([d.box for d in detections], dtype=np.float64)
    scores = np.array([d.score for d in detections], dtype=np.float64)
    areas = np.maximum(0.0, boxes[:, 2] - boxes[:, 0]) * np.maximum(0.0, boxes[:, 3] - boxes[:, 1])

    keep = []
    order = np.argsort(-scores, kind="stable") # Sort by score desc, ties by position

    while order.size > 0:
        i = order[0]
        keep.append(i)
        if order.size == 1: break

        xx1 = np.maximum(boxes[i, 0], boxes[order[1:], 0])
        yy1 = np.maximum(boxes[i, 1], boxes[order[1:], 1])
        xx2 = np.minimum(boxes[i, 2], boxes[order[1:], 2])
        yy2 = np.minimum(boxes[i, 3], boxes[order[1:], 3])

        inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
        union = areas[i] + areas[order[1:]] - inter
        ovr = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)

        inds = np.where(ovr <= iou_threshold)[0]
        order = order[inds + 1]

    return [detections[i] for i in keep]


class SelectionPolicy(str, Enum):
    LARGEST_AREA = "largest_area"
    HIGHEST_SCORE = "highest_score"
    CLOSEST_TO_CENTER = "closest_to_center"


def select_face(
    detections: List[Detection],
    policy: SelectionPolicy = SelectionPolicy.LARGEST_AREA,
    image_size: Optional[Tuple[int, int]] = None,
) -> Optional[Detection]:
    """
    Picks the single face a kiosk acts on. The default is the largest box
    (closest subject); ties go to the first one encountered.
    Returns None for an empty set, which means "no face in frame".
    """
    if not detections:
        return None

    if policy == SelectionPolicy.LARGEST_AREA:
        return max(detections, key=lambda d: d.area)
    if policy == SelectionPolicy.HIGHEST_SCORE:
        return max(detections, key=lambda d: d.score)
    if policy == SelectionPolicy.CLOSEST_TO_CENTER:
        if image_size is None:
            raise ValueError("CLOSEST_TO_CENTER selection needs the frame size")
        fx, fy = image_size[0] / 2.0, image_size[1] / 2.0
        return min(detections, key=lambda d: (d.center[0] - fx) ** 2 + (d.center[1] - fy) ** 2)
    raise ValueError(f"Unknown selection policy: {policy}")


def split_outputs(outputs: Sequence[np.ndarray]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Finds the location / score / landmark tensors among the model outputs by their last dimension."""
    by_width = {}
    for out in outputs:
        arr = np.asarray(out)
        if arr.ndim >= 2:
            by_width.setdefault(int(arr.shape[-1]), arr)
    try:
        return by_width[4], by_width[2], by_width[10]
    except KeyError:
        shapes = [tuple(np.shape(o)) for o in outputs]
        raise DecodeError(f"Expected location/score/landmark outputs with widths 4/2/10, got shapes {shapes}")


def detect_faces(
    detection_session,
    image_np_bgr: np.ndarray,
    anchor_config: AnchorConfig = AnchorConfig(),
    conf_thres: float = DETECTION_CONF_THRESHOLD,
    iou_thres: float = DETECTION_NMS_THRESHOLD,
) -> List[Detection]:
    """
    Detects all faces in a BGR frame with a serialized RetinaFace session.
    Returns detections after suppression, sorted by score.
    Raises DecodeError when the model outputs do not fit the anchor config,
    and InferenceError when the model itself fails to run.
    """
    img_h, img_w = image_np_bgr.shape[:2]
    input_size = (anchor_config.input_width, anchor_config.input_height)

    input_tensor = preprocess_image_detection(image_np_bgr, input_size)
    outputs = detection_session.run(input_tensor)
    loc, conf, landms = split_outputs(outputs)

    candidates = decode_detections(
        loc, conf, landms,
        anchors=get_anchors(anchor_config),
        image_size=(img_w, img_h),
        conf_threshold=conf_thres,
    )
    detections = non_max_suppression(candidates, iou_threshold=iou_thres)
    logger.debug("Decoded %d candidates, %d after NMS", len(candidates), len(detections))
    return detections
