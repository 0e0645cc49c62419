import threading
from typing import List, Optional, Sequence

import numpy as np
import onnxruntime as ort

from facekiosk.config import PROVIDERS
from facekiosk.log import get_logger

logger = get_logger(__name__)


class InferenceError(RuntimeError):
    """Raised when the ONNX Runtime engine fails to run a model."""


class InferenceSession:
    """
    Owns one ONNX Runtime session and serializes access to it.

    The underlying engine is not safe for concurrent invocation, so the whole
    "set input -> run -> read outputs" sequence happens under `lock`. Callers
    that need several runs back to back may hold `lock` themselves; it is
    reentrant.
    """

    def __init__(self, session, name: str = "model"):
        self._session = session
        self.name = name
        self.lock = threading.RLock()
        self.input_name = session.get_inputs()[0].name
        self.output_names = [o.name for o in session.get_outputs()]

    def run(self, input_tensor: np.ndarray, output_names: Optional[Sequence[str]] = None) -> List[np.ndarray]:
        names = list(output_names) if output_names is not None else self.output_names
        with self.lock:
            try:
                outputs = self._session.run(names, {self.input_name: input_tensor})
            except Exception as e:
                # onnxruntime reports bad shapes and engine faults as assorted exception types
                raise InferenceError(f"{self.name} model failed: {e}") from e
        return [np.asarray(o) for o in outputs]


def load_session(model_path: str, providers: Sequence[str] = PROVIDERS, name: str = "model") -> InferenceSession:
    """Loads an ONNX model into a lock-guarded session."""
    logger.info("Loading %s model from: %s", name, model_path)
    session = ort.InferenceSession(model_path, providers=list(providers))
    wrapped = InferenceSession(session, name=name)
    logger.info(
        "%s model ready: input=%s outputs=%s",
        name, wrapped.input_name, wrapped.output_names,
    )
    return wrapped
