"""Shared fixtures for facekiosk tests.

Model outputs are synthetic, so no ONNX model files are needed.
"""

from types import SimpleNamespace

import numpy as np
import pytest
from sqlalchemy import create_engine, text

from facekiosk.anchors import AnchorConfig, get_anchors
from facekiosk.config import ANCHOR_VARIANCES
from facekiosk.face_alignment import REFERENCE_LANDMARKS_112
from facekiosk.inference import InferenceSession
from facekiosk.persistence import FaceStore


class FakeOrtSession:
    """Quacks like onnxruntime.InferenceSession; returns canned outputs."""

    def __init__(self, outputs, input_name="input", output_names=None):
        self.outputs = outputs
        self.input_name = input_name
        self.output_names = output_names or [f"out{i}" for i in range(len(outputs))]
        self.calls = []

    def get_inputs(self):
        return [SimpleNamespace(name=self.input_name)]

    def get_outputs(self):
        return [SimpleNamespace(name=n) for n in self.output_names]

    def run(self, output_names, feed):
        self.calls.append(feed)
        return [np.array(o, copy=True) for o in self.outputs]


class FailingOrtSession(FakeOrtSession):
    """Fails the way onnxruntime does on a shape mismatch."""

    def __init__(self, message="[ONNXRuntimeError] : 2 : INVALID_ARGUMENT : Got invalid dimensions for input"):
        super().__init__([])
        self.message = message

    def run(self, output_names, feed):
        self.calls.append(feed)
        raise RuntimeError(self.message)


def drop_faces_table(store):
    """Breaks an initialized store underneath it, so every query fails."""
    engine = create_engine(store.database_url)
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE faces"))
    engine.dispose()


def encode_face(anchors, index, box, landmarks, image_size, variances=ANCHOR_VARIANCES):
    """Regression targets that make anchor `index` decode to `box` / `landmarks` (pixels)."""
    w_img, h_img = image_size
    v0, v1 = variances
    acx, acy, aw, ah = [float(x) for x in anchors[index]]
    x1, y1, x2, y2 = box
    cx = (x1 + x2) / 2.0 / w_img
    cy = (y1 + y2) / 2.0 / h_img
    bw = (x2 - x1) / w_img
    bh = (y2 - y1) / h_img
    loc = [
        (cx - acx) / (v0 * aw),
        (cy - acy) / (v0 * ah),
        np.log(bw / aw) / v1,
        np.log(bh / ah) / v1,
    ]
    landm = []
    for lx, ly in landmarks:
        landm.append((lx / w_img - acx) / (v0 * aw))
        landm.append((ly / h_img - acy) / (v0 * ah))
    return np.array(loc, dtype=np.float32), np.array(landm, dtype=np.float32)


def make_detection_outputs(anchor_config, faces, image_size):
    """
    Builds batched (loc, conf, landm) tensors. `faces` is a list of
    (anchor_index, score, box, landmarks) tuples; every other anchor is background.
    """
    anchors = get_anchors(anchor_config)
    n = anchors.shape[0]
    loc = np.zeros((n, 4), dtype=np.float32)
    conf = np.zeros((n, 2), dtype=np.float32)
    conf[:, 0] = 1.0
    landm = np.zeros((n, 10), dtype=np.float32)
    for index, score, box, landmarks in faces:
        loc[index], landm[index] = encode_face(anchors, index, box, landmarks, image_size)
        conf[index] = (1.0 - score, score)
    return loc[None], conf[None], landm[None]


@pytest.fixture
def anchor_config():
    return AnchorConfig()


@pytest.fixture
def face_frame():
    """A 320x320 noise frame with a canonical face placed at (100, 100)."""
    rng = np.random.default_rng(7)
    frame = rng.integers(0, 255, size=(320, 320, 3), dtype=np.uint8)
    landmarks = [tuple(p) for p in (REFERENCE_LANDMARKS_112 + 100.0).tolist()]
    box = (100.0, 100.0, 212.0, 212.0)
    return frame, box, landmarks


@pytest.fixture
def make_detection_session(anchor_config):
    def _make(faces, image_size=(320, 320)):
        loc, conf, landm = make_detection_outputs(anchor_config, faces, image_size)
        # Deliberately not in loc/conf/landm order
        return InferenceSession(FakeOrtSession([conf, landm, loc]), name="detection")
    return _make


@pytest.fixture
def make_embedding_session():
    def _make(vector):
        return InferenceSession(FakeOrtSession([np.asarray(vector, dtype=np.float32)[None]]), name="embedding")
    return _make


@pytest.fixture
def make_embedding():
    """Factory fixture for deterministic L2-normalized embeddings."""
    def _make(seed: int = 0, dim: int = 512) -> np.ndarray:
        rng = np.random.default_rng(seed)
        v = rng.standard_normal(dim).astype(np.float32)
        return v / np.linalg.norm(v)
    return _make


@pytest.fixture
def store(tmp_path):
    s = FaceStore(f"sqlite:///{tmp_path / 'faces.db'}")
    assert s.init()
    yield s
    s.close()
