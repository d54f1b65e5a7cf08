"""
=============================================================================
CONFIGURATION FOR THE ADAPTIVE LEARNING EMOTION PIPELINE (config.py)
=============================================================================

WHAT THIS FILE DOES (in plain language):
----------------------------------------
This file holds ALL configurable settings for the emotion pipeline in one
place. Other files read from it. Values come from the environment (your .env
file or system variables), so a self-hosted deployment can point at its own
model mirrors without changing code.

MAIN GROUPS OF SETTINGS:
------------------------
  1. Primary classifier  — Where the neural emotion model and its labels live.
  2. MediaPipe fallback  — Landmark model URLs (face / hand / pose) and mirrors.
  3. Detection loop      — Backend preference, sampling interval, camera.
  4. Stabilizer          — Activation delay, minimum hold, deactivation delay.
  5. Telemetry           — Where emotion samples are logged, and how often.
  6. Server              — Host, port, debug mode, log level.

HOW VALUES ARE CHOSEN:
---------------------
  - Environment variables override everything.
  - If an env var is not set, we use a safe default (e.g. 1 s sampling).
  - Empty strings for URL overrides mean "use the default candidates".
=============================================================================
"""

import os
from typing import List, Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _strip_quotes(s: str) -> str:
    if not s:
        return s
    s = s.strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("'") and s.endswith("'")):
        return s[1:-1].strip()
    return s


# ============================================================================
# PRIMARY CLASSIFIER (neural emotion model)
# ============================================================================
# The model description is a small JSON file with a "format" field ("onnx" or
# "tflite"), the model file and any weight shards. URLs may be http(s) or
# local paths; remote assets are downloaded into MODEL_CACHE_DIR.
# ----------------------------------------------------------------------------
EMOTION_MODEL_URL: str = _strip_quotes(os.getenv("EMOTION_MODEL_URL", "static/model/model.json"))
EMOTION_METADATA_URL: str = _strip_quotes(os.getenv("EMOTION_METADATA_URL", "static/model/metadata.json"))
# Comma separated class names, used only when metadata.json has no labels.
EMOTION_LABELS: str = os.getenv("EMOTION_LABELS", "")
# "minus_one_to_one" (MobileNetV2 / Teachable Machine exports) or "zero_to_one".
# Must match how the model was trained; never guessed at runtime.
EMOTION_MODEL_NORMALIZATION: str = os.getenv("EMOTION_MODEL_NORMALIZATION", "minus_one_to_one").strip().lower()
# Used when neither the description nor the model signature declares an input size.
EMOTION_MODEL_DEFAULT_INPUT_SIZE: int = int(os.getenv("EMOTION_MODEL_DEFAULT_INPUT_SIZE", "224"))
MODEL_CACHE_DIR: str = os.getenv("MODEL_CACHE_DIR", os.path.join(os.path.expanduser("~"), ".cache", "adaptive-emotion", "models"))
MODEL_DOWNLOAD_TIMEOUT_SEC: float = _env_float("MODEL_DOWNLOAD_TIMEOUT_SEC", "30")

# ============================================================================
# MEDIAPIPE FALLBACK (face / hand / pose landmarkers)
# ============================================================================
# Public CDNs are blocked on some school networks. MEDIAPIPE_ASSET_BASE_URL
# points at a self-hosted mirror laid out like the public bucket; the
# per-model URLs override a single asset. Defaults are tried after both.
# ----------------------------------------------------------------------------
MEDIAPIPE_ASSET_BASE_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_ASSET_BASE_URL", "")).rstrip("/")
# Per-model mirrors; each falls back to MEDIAPIPE_ASSET_BASE_URL when unset.
MEDIAPIPE_FACE_BASE_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_FACE_BASE_URL", "")).rstrip("/")
MEDIAPIPE_HAND_BASE_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_HAND_BASE_URL", "")).rstrip("/")
MEDIAPIPE_POSE_BASE_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_POSE_BASE_URL", "")).rstrip("/")
MEDIAPIPE_FACE_MODEL_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_FACE_MODEL_URL", ""))
MEDIAPIPE_HAND_MODEL_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_HAND_MODEL_URL", ""))
MEDIAPIPE_POSE_MODEL_URL: str = _strip_quotes(os.getenv("MEDIAPIPE_POSE_MODEL_URL", ""))
# Hands and pose are optional context signals; disable them on weak devices.
MEDIAPIPE_ENABLE_HANDS: bool = _env_bool("MEDIAPIPE_ENABLE_HANDS", "true")
MEDIAPIPE_ENABLE_POSE: bool = _env_bool("MEDIAPIPE_ENABLE_POSE", "true")
MIN_FACE_CONFIDENCE: float = _env_float("MIN_FACE_CONFIDENCE", "0.5")

# ============================================================================
# DETECTION LOOP
# ============================================================================
#   "primary"  — Neural classifier first, MediaPipe fallback on failure.
#   "fallback" — MediaPipe heuristics only (no model download).
#   "auto"     — Same as primary; kept for parity with the runtime toggle.
# ----------------------------------------------------------------------------
DETECTOR_BACKEND: str = os.getenv("DETECTOR_BACKEND", "auto")
SAMPLING_INTERVAL_SEC: float = _env_float("SAMPLING_INTERVAL_SEC", "1.0")
# Delay before retrying when the camera has not produced a decodable frame yet.
FRAME_NOT_READY_RETRY_SEC: float = _env_float("FRAME_NOT_READY_RETRY_SEC", "0.05")
CAMERA_INDEX: int = int(os.getenv("CAMERA_INDEX", "0"))

# ============================================================================
# TEMPORAL STABILIZER (simplified-reading hysteresis)
# ============================================================================
STABILIZER_ACTIVATION_DELAY_SEC: float = _env_float("STABILIZER_ACTIVATION_DELAY_SEC", "4.0")
STABILIZER_MIN_HOLD_SEC: float = _env_float("STABILIZER_MIN_HOLD_SEC", "60.0")
STABILIZER_DEACTIVATION_DELAY_SEC: float = _env_float("STABILIZER_DEACTIVATION_DELAY_SEC", "6.0")

# ============================================================================
# TELEMETRY (emotion log sink)
# ============================================================================
# The fallback logs at lower confidence on purpose: it is itself a
# lower-precision signal and would otherwise rarely be recorded.
# ----------------------------------------------------------------------------
EMOTION_LOG_URL: str = _strip_quotes(os.getenv("EMOTION_LOG_URL", "")).rstrip("/")
EMOTION_LOG_TIMEOUT_SEC: float = _env_float("EMOTION_LOG_TIMEOUT_SEC", "5")
TELEMETRY_INTERVAL_SEC: float = _env_float("TELEMETRY_INTERVAL_SEC", "5.0")
TELEMETRY_FLOOR_PRIMARY: float = _env_float("TELEMETRY_FLOOR_PRIMARY", "0.35")
TELEMETRY_FLOOR_FALLBACK: float = _env_float("TELEMETRY_FLOOR_FALLBACK", "0.20")
TELEMETRY_AUTO_LOG: bool = _env_bool("TELEMETRY_AUTO_LOG", "true")

# ============================================================================
# EMOTION STORE PERSISTENCE
# ============================================================================
# JSON snapshot of the current emotion and history, restored on startup and
# written when detection stops. Empty disables persistence.
# ----------------------------------------------------------------------------
EMOTION_STORE_SNAPSHOT_PATH: str = _strip_quotes(os.getenv("EMOTION_STORE_SNAPSHOT_PATH", ""))

# ============================================================================
# Application Configuration
# ============================================================================
FLASK_PORT: int = int(os.getenv("FLASK_PORT", "5000"))
FLASK_DEBUG: bool = _env_bool("FLASK_DEBUG", "false")
FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ============================================================================
# Helper Functions
# ============================================================================

def warn_missing_config() -> None:
    """
    Print warnings when optional configuration is missing. Does not raise.
    Call from app startup (e.g. app.py) to help operators.
    """
    import sys
    missing = []
    if not EMOTION_LOG_URL:
        missing.append("EMOTION_LOG_URL (emotion samples will not be persisted)")
    if EMOTION_MODEL_NORMALIZATION not in ("zero_to_one", "minus_one_to_one"):
        missing.append("EMOTION_MODEL_NORMALIZATION must be 'zero_to_one' or 'minus_one_to_one'")
    if missing:
        print("Config warning:", "; ".join(missing), file=sys.stderr)


def get_configured_labels() -> Optional[List[str]]:
    """Labels from EMOTION_LABELS, or None when unset/empty."""
    labels = [s.strip() for s in (EMOTION_LABELS or "").split(",") if s.strip()]
    return labels or None


def get_landmark_overrides() -> dict:
    """Operator-supplied MediaPipe asset overrides (empty strings are dropped)."""
    return {
        "baseUrl": MEDIAPIPE_ASSET_BASE_URL or None,
        "face": MEDIAPIPE_FACE_MODEL_URL or None,
        "hand": MEDIAPIPE_HAND_MODEL_URL or None,
        "pose": MEDIAPIPE_POSE_MODEL_URL or None,
        "faceBaseUrl": MEDIAPIPE_FACE_BASE_URL or None,
        "handBaseUrl": MEDIAPIPE_HAND_BASE_URL or None,
        "poseBaseUrl": MEDIAPIPE_POSE_BASE_URL or None,
    }


def get_stabilizer_config() -> dict:
    return {
        "activationDelaySec": STABILIZER_ACTIVATION_DELAY_SEC,
        "minHoldSec": STABILIZER_MIN_HOLD_SEC,
        "deactivationDelaySec": STABILIZER_DEACTIVATION_DELAY_SEC,
    }


def get_telemetry_config() -> dict:
    return {
        "enabled": bool(EMOTION_LOG_URL) and TELEMETRY_AUTO_LOG,
        "intervalSec": TELEMETRY_INTERVAL_SEC,
        "floors": {"primary": TELEMETRY_FLOOR_PRIMARY, "fallback": TELEMETRY_FLOOR_FALLBACK},
    }
