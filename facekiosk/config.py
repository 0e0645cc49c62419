import os

# --- Configuration ---
# config.py is in facekiosk/, models live in ../assets/model by default
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
MODEL_DIR = os.environ.get("FACEKIOSK_MODEL_DIR", os.path.join(BASE_DIR, "assets", "model"))

DETECTION_MODEL_PATH = os.path.join(MODEL_DIR, "retinaface_320.onnx")
EMBEDDING_MODEL_PATH = os.path.join(MODEL_DIR, "w600k_mbf.onnx")

DATABASE_URL = os.environ.get("FACEKIOSK_DATABASE_URL", "sqlite:///face_database.db")

# --- Model Input Sizes ---
DETECTION_INPUT_SIZE = (320, 320) # (width, height)
EMBEDDING_INPUT_SIZE = (112, 112)
ALIGNED_FACE_SIZE = 112

# --- Anchor grid (RetinaFace, 320x320) ---
ANCHOR_STRIDES = (8, 16, 32)
ANCHOR_MIN_SIZES = ((16, 32), (64, 128), (256, 512))
# Training-time box encoding variances (center, size)
ANCHOR_VARIANCES = (0.1, 0.2)

# RetinaFace expects BGR input with the ImageNet-style channel means removed
DETECTION_MEAN_BGR = (104.0, 117.0, 123.0)

# --- Detection Thresholds ---
DETECTION_CONF_THRESHOLD = 0.5
DETECTION_NMS_THRESHOLD = 0.4

# --- Recognition Threshold ---
# Cosine similarity at or above this value means "same person"
SIMILARITY_THRESHOLD = 0.6
# Below this norm a feature vector has no usable direction
MIN_FEATURE_NORM = 1e-6

# --- Providers ---
PROVIDERS = ['CPUExecutionProvider']

# --- Function to check model existence ---
def check_model_files():
    """Checks if essential ONNX model files exist."""
    required_models = [
        DETECTION_MODEL_PATH,
        EMBEDDING_MODEL_PATH,
    ]
    missing_models = [p for p in required_models if not os.path.exists(p)]
    if missing_models:
        missing_str = "\n - ".join(missing_models)
        raise FileNotFoundError(
            f"Essential ONNX models not found. Set FACEKIOSK_MODEL_DIR or place the following files:\n - {missing_str}"
        )
