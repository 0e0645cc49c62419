"""Tests for detection decoding, suppression and face selection."""

import numpy as np
import pytest

from conftest import encode_face
from facekiosk.anchors import AnchorConfig, get_anchors
from facekiosk.face_detection import (
    DecodeError,
    SelectionPolicy,
    box_iou,
    decode_detections,
    detect_faces,
    non_max_suppression,
    preprocess_image_detection,
    select_face,
    split_outputs,
)
from facekiosk.models import Detection


def _det(box, score=0.9):
    return Detection(box=box, score=score, landmarks=[(0.0, 0.0)] * 5)


def _tensors(n):
    loc = np.zeros((n, 4), dtype=np.float32)
    conf = np.zeros((n, 2), dtype=np.float32)
    conf[:, 0] = 1.0
    landm = np.zeros((n, 10), dtype=np.float32)
    return loc, conf, landm


class TestDecode:
    def test_zero_regression_is_identity(self):
        anchors = np.array([[0.5, 0.25, 0.2, 0.1]], dtype=np.float32)
        loc, conf, landm = _tensors(1)
        conf[0] = (0.1, 0.9)

        dets = decode_detections(loc, conf, landm, anchors, image_size=(200, 400))

        assert len(dets) == 1
        d = dets[0]
        assert d.center == pytest.approx((0.5 * 200, 0.25 * 400))
        assert d.width == pytest.approx(0.2 * 200)
        assert d.height == pytest.approx(0.1 * 400)
        for lx, ly in d.landmarks:
            assert (lx, ly) == pytest.approx((100.0, 100.0))
        assert d.score == pytest.approx(0.9)

    def test_offsets_use_variances(self):
        anchors = np.array([[0.5, 0.5, 0.1, 0.2]], dtype=np.float32)
        loc, conf, landm = _tensors(1)
        conf[0] = (0.0, 1.0)
        loc[0] = (1.0, -1.0, 1.0, 0.0)
        landm[0, 2:4] = (2.0, 1.0) # right eye

        d = decode_detections(loc, conf, landm, anchors, image_size=(100, 100), variances=(0.1, 0.2))[0]

        cx = 0.5 + 1.0 * 0.1 * 0.1
        cy = 0.5 - 1.0 * 0.1 * 0.2
        w = 0.1 * np.exp(0.2)
        assert d.center == pytest.approx((cx * 100, cy * 100))
        assert d.width == pytest.approx(w * 100)
        assert d.height == pytest.approx(0.2 * 100)
        assert d.landmarks[1] == pytest.approx(((0.5 + 2.0 * 0.1 * 0.1) * 100, (0.5 + 1.0 * 0.1 * 0.2) * 100))

    def test_threshold_is_inclusive_and_uses_face_channel(self):
        anchors = np.tile(np.array([[0.5, 0.5, 0.1, 0.1]], dtype=np.float32), (3, 1))
        loc, conf, landm = _tensors(3)
        conf[0] = (0.5, 0.5) # exactly at threshold
        conf[1] = (0.51, 0.49) # just below
        conf[2] = (0.9, 0.1) # background channel high

        dets = decode_detections(loc, conf, landm, anchors, image_size=(10, 10), conf_threshold=0.5)

        assert [d.score for d in dets] == [pytest.approx(0.5)]

    def test_batched_tensors_are_accepted(self):
        anchors = np.array([[0.5, 0.5, 0.1, 0.1]], dtype=np.float32)
        loc, conf, landm = _tensors(1)
        conf[0] = (0.0, 0.8)
        dets = decode_detections(loc[None], conf[None], landm[None], anchors, image_size=(10, 10))
        assert len(dets) == 1

    def test_scores_are_clamped(self):
        anchors = np.array([[0.5, 0.5, 0.1, 0.1]], dtype=np.float32)
        loc, conf, landm = _tensors(1)
        conf[0] = (0.0, 1.2)
        d = decode_detections(loc, conf, landm, anchors, image_size=(10, 10))[0]
        assert d.score == 1.0

    def test_mismatched_anchor_count_raises(self):
        anchors = get_anchors(AnchorConfig())
        loc, conf, landm = _tensors(anchors.shape[0] - 1)
        with pytest.raises(DecodeError):
            decode_detections(loc, conf, landm, anchors, image_size=(320, 320))

    def test_wrong_tensor_width_raises(self):
        anchors = np.zeros((2, 4), dtype=np.float32)
        loc, conf, _ = _tensors(2)
        with pytest.raises(DecodeError):
            decode_detections(loc, conf, np.zeros((2, 8), dtype=np.float32), anchors, image_size=(10, 10))

    def test_encoded_face_decodes_in_original_pixels(self):
        anchors = get_anchors(AnchorConfig())
        box = (60.0, 40.0, 260.0, 280.0)
        landmarks = [(100.0, 120.0), (220.0, 120.0), (160.0, 180.0), (110.0, 230.0), (210.0, 230.0)]
        loc, conf, landm = _tensors(anchors.shape[0])
        loc[1234], landm[1234] = encode_face(anchors, 1234, box, landmarks, (640, 480))
        conf[1234] = (0.05, 0.95)

        dets = decode_detections(loc, conf, landm, anchors, image_size=(640, 480))

        assert len(dets) == 1
        assert dets[0].box == pytest.approx(box, abs=1e-3)
        for got, want in zip(dets[0].landmarks, landmarks):
            assert got == pytest.approx(want, abs=1e-3)


class TestSuppression:
    def test_overlapping_lower_score_is_removed(self):
        high = _det((0, 0, 10, 10), 0.9)
        low = _det((1, 1, 11, 11), 0.8)
        assert box_iou(high.box, low.box) > 0.4

        kept = non_max_suppression([low, high], iou_threshold=0.4)

        assert kept == [high]

    def test_disjoint_boxes_both_survive_sorted(self):
        a = _det((0, 0, 10, 10), 0.7)
        b = _det((20, 20, 30, 30), 0.95)

        kept = non_max_suppression([a, b], iou_threshold=0.4)

        assert kept == [b, a]

    def test_iou_equal_to_threshold_is_kept(self):
        a = _det((0, 0, 10, 10), 0.9)
        b = _det((0, 0, 10, 5), 0.8) # IoU = 0.5
        assert box_iou(a.box, b.box) == pytest.approx(0.5)
        assert non_max_suppression([a, b], iou_threshold=0.5) == [a, b]

    def test_equal_scores_keep_input_order(self):
        first = _det((0, 0, 10, 10), 0.8)
        second = _det((50, 50, 60, 60), 0.8)
        third = _det((100, 100, 110, 110), 0.8)
        assert non_max_suppression([first, second, third]) == [first, second, third]

    def test_equal_scores_overlap_keeps_first(self):
        first = _det((0, 0, 10, 10), 0.8)
        second = _det((0, 0, 10, 10), 0.8)
        kept = non_max_suppression([first, second])
        assert len(kept) == 1
        assert kept[0] is first

    def test_score_prefilter(self):
        a = _det((0, 0, 10, 10), 0.3)
        b = _det((20, 20, 30, 30), 0.6)
        assert non_max_suppression([a, b], score_threshold=0.5) == [b]

    def test_empty(self):
        assert non_max_suppression([]) == []

    def test_iou_of_degenerate_boxes_is_zero(self):
        assert box_iou((0, 0, 0, 0), (0, 0, 0, 0)) == 0.0


class TestSelection:
    def test_largest_area_wins(self):
        small = _det((0, 0, 10, 10), 0.99)
        big = _det((50, 50, 100, 100), 0.6)
        assert select_face([small, big]) is big

    def test_area_tie_goes_to_first(self):
        a = _det((0, 0, 10, 10))
        b = _det((20, 20, 30, 30))
        assert select_face([a, b]) is a

    def test_empty_set_means_no_face(self):
        assert select_face([]) is None

    def test_highest_score_policy(self):
        small = _det((0, 0, 10, 10), 0.99)
        big = _det((50, 50, 100, 100), 0.6)
        assert select_face([small, big], policy=SelectionPolicy.HIGHEST_SCORE) is small

    def test_center_policy(self):
        corner = _det((0, 0, 40, 40))
        middle = _det((40, 40, 60, 60))
        chosen = select_face([corner, middle], policy=SelectionPolicy.CLOSEST_TO_CENTER, image_size=(100, 100))
        assert chosen is middle

    def test_center_policy_needs_frame_size(self):
        with pytest.raises(ValueError):
            select_face([_det((0, 0, 1, 1))], policy=SelectionPolicy.CLOSEST_TO_CENTER)


class TestDetectFaces:
    def test_preprocess_shape_and_mean(self):
        frame = np.full((480, 640, 3), 104, dtype=np.uint8)
        blob = preprocess_image_detection(frame, (320, 320))
        assert blob.shape == (1, 3, 320, 320)
        assert blob.dtype == np.float32
        assert blob[0, 0].max() == pytest.approx(0.0)
        assert blob[0, 1].max() == pytest.approx(-13.0)

    def test_outputs_found_by_width(self):
        loc = np.zeros((1, 5, 4))
        conf = np.zeros((1, 5, 2))
        landm = np.zeros((1, 5, 10))
        got = split_outputs([landm, loc, conf])
        assert got[0] is loc and got[1] is conf and got[2] is landm

    def test_missing_output_raises(self):
        with pytest.raises(DecodeError):
            split_outputs([np.zeros((1, 5, 4)), np.zeros((1, 5, 2))])

    def test_end_to_end_with_duplicates(self, make_detection_session, face_frame):
        frame, box, landmarks = face_frame
        shifted = tuple(c + 2.0 for c in box)
        far = (10.0, 10.0, 40.0, 40.0)
        session = make_detection_session([
            (100, 0.80, shifted, landmarks),
            (2000, 0.97, box, landmarks),
            (3000, 0.70, far, landmarks),
        ])

        dets = detect_faces(session, frame)

        assert [d.score for d in dets] == [pytest.approx(0.97), pytest.approx(0.70)]
        assert dets[0].box == pytest.approx(box, abs=1e-3)

    def test_no_faces(self, make_detection_session, face_frame):
        frame, _, _ = face_frame
        assert detect_faces(make_detection_session([]), frame) == []
