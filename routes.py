"""
Flask routes for the adaptive learning emotion pipeline.

Handles emotion detection start/stop/retry/state, browser-pushed frames,
detector backend preference, adaptive surfaces (mount, stabilized adaptation,
manual override, performance score), config and health.
"""

import logging
import threading
from typing import Optional

from flask import Blueprint, jsonify, request

from services.detection_runtime import DetectionRuntime, SurfaceNotFoundError
from utils.adaptation_engine import average_performance
from utils.detector_preference import get_detector_backend, set_detector_backend
from utils.frame_source import FrameSourceType
from utils.helpers import build_config_response

logger = logging.getLogger(__name__)

# Create a blueprint for better organization
api = Blueprint('api', __name__)

# Global detection runtime (singleton), created on first use so importing
# routes does not start the event loop thread.
_runtime: Optional[DetectionRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> DetectionRuntime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = DetectionRuntime()
        return _runtime


def set_runtime(runtime: Optional[DetectionRuntime]) -> None:
    """Replace the runtime (tests inject one with fake backends)."""
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def register_routes(app) -> None:
    app.register_blueprint(api)


def _surface_not_found(surface_id: str):
    return jsonify({"error": f"Surface not mounted: {surface_id}"}), 404


# ============================================================================
# Health and Configuration Routes
# ============================================================================

@api.route("/health", methods=["GET"])
def health():
    """Liveness check plus the detector state, when detection has been started."""
    detector = get_runtime().manager.to_dict()
    return jsonify({"status": "ok", "detector": detector["state"], "backend": detector["backend"]})


@api.route("/config/all", methods=["GET"])
def get_all_config():
    """
    Get all configuration in one endpoint.

    Returns:
        JSON: Complete configuration dictionary
    """
    return jsonify(build_config_response())


@api.route("/config/detector", methods=["GET", "PUT"])
def detector_config():
    """
    GET: Current backend preference and detector state.
    PUT: Set preference. Body: {"backend": "primary" | "fallback" | "auto"}.
         A running detector is switched to the new backend.
    """
    runtime = get_runtime()
    if request.method == "GET":
        return jsonify({"backend": get_detector_backend(), "detector": runtime.manager.to_dict()})
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = request.get_json(silent=True) or {}
    backend = data.get("backend")
    if not backend:
        return jsonify({"error": "Missing 'backend'"}), 400
    try:
        set_detector_backend(backend)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    try:
        switched_to = runtime.apply_preference()
    except RuntimeError as e:
        return jsonify({"error": "Backend saved but cannot switch now", "details": str(e)}), 409
    return jsonify({"backend": get_detector_backend(), "switchingTo": switched_to})


# ============================================================================
# Emotion Detection Routes
# ============================================================================

@api.route("/emotion/start", methods=["POST"])
def start_emotion_detection():
    """
    Start emotion detection.

    Request Body:
        {
            "userId": "student id (enables telemetry when EMOTION_LOG_URL is set)",
            "materialId": "optional learning material id",
            "sourceType": "webcam" | "file" | "pushed",
            "sourcePath": "video path for file sources"
        }

    Returns:
        JSON: {"success": true, "detector": {...}}
    """
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = request.get_json(silent=True) or {}
    source_type_str = (data.get("sourceType") or "webcam").lower()
    source_type_map = {
        "webcam": FrameSourceType.WEBCAM,
        "file": FrameSourceType.FILE,
        "pushed": FrameSourceType.PUSHED,
    }
    source_type = source_type_map.get(source_type_str)
    if not source_type:
        return jsonify({
            "error": f"Invalid sourceType: {source_type_str}. Must be 'webcam', 'file', or 'pushed'"
        }), 400
    source_path = data.get("sourcePath") if source_type == FrameSourceType.FILE else None
    if source_type == FrameSourceType.FILE and not source_path:
        return jsonify({"error": "Missing 'sourcePath' for file source"}), 400

    runtime = get_runtime()
    try:
        if not runtime.start_detection(
            user_id=data.get("userId"),
            material_id=data.get("materialId"),
            source_type=source_type,
            source_path=source_path,
        ):
            return jsonify({"error": "Failed to start detection. Check video source."}), 500
        return jsonify({
            "success": True,
            "message": f"Emotion detection started from {source_type_str}",
            "detector": runtime.manager.to_dict(),
        })
    except Exception as e:
        logger.exception("Failed to start emotion detection")
        return jsonify({"error": "Failed to start emotion detection", "details": str(e)}), 500


@api.route("/emotion/stop", methods=["POST"])
def stop_emotion_detection():
    try:
        get_runtime().stop_detection()
        return jsonify({"success": True, "message": "Detection stopped"})
    except Exception as e:
        return jsonify({"error": "Failed to stop emotion detection", "details": str(e)}), 500


@api.route("/emotion/retry", methods=["POST"])
def retry_emotion_detection():
    """User-forced retry after every backend failed (no-op in other states)."""
    try:
        state = get_runtime().retry()
        return jsonify({"success": True, "state": state})
    except Exception as e:
        return jsonify({"error": "Failed to retry emotion detection", "details": str(e)}), 500


@api.route("/emotion/state", methods=["GET"])
def get_emotion_state():
    """
    Current emotion sample, detector state, status message and history trend.
    Read-only; the UI never writes emotion state.
    """
    try:
        return jsonify(get_runtime().state())
    except Exception as e:
        return jsonify({"error": "Failed to get emotion state", "details": str(e)}), 500


@api.route("/emotion/frame", methods=["POST"])
def push_frame():
    """
    Receive a single frame from the browser (sourceType 'pushed').
    Expects a raw JPEG/PNG body or multipart/form-data with an image file.
    """
    try:
        data = request.get_data()
        if not data and request.files:
            f = request.files.get("frame") or request.files.get("image") or next(iter(request.files.values()), None)
            if f:
                data = f.read()
        if not data:
            return jsonify({"error": "No image data"}), 400
        if not get_runtime().push_frame(data):
            return jsonify({"error": "Invalid or unsupported image"}), 400
        return "", 204
    except Exception as e:
        return jsonify({"error": "Failed to process frame", "details": str(e)}), 500


# ============================================================================
# Adaptive Surface Routes
# ============================================================================

@api.route("/surfaces/<surface_id>", methods=["POST", "DELETE"])
def surface(surface_id):
    """
    POST: Mount a surface. Optional body {"performance": 0-100}.
    DELETE: Unmount it and clear its stabilizer timers.
    """
    runtime = get_runtime()
    if request.method == "DELETE":
        if not runtime.unmount_surface(surface_id):
            return _surface_not_found(surface_id)
        return jsonify({"success": True})
    data = request.get_json(silent=True) or {}
    performance = data.get("performance")
    if performance is not None and not isinstance(performance, (int, float)):
        return jsonify({"error": "'performance' must be a number"}), 400
    return jsonify(runtime.mount_surface(surface_id, performance)), 201


@api.route("/surfaces/<surface_id>/adaptation", methods=["GET"])
def surface_adaptation(surface_id):
    """Stabilized adaptation config for a mounted surface."""
    try:
        return jsonify(get_runtime().surface_state(surface_id))
    except SurfaceNotFoundError:
        return _surface_not_found(surface_id)


@api.route("/surfaces/<surface_id>/override", methods=["PUT"])
def surface_override(surface_id):
    """Manual simplified-reading override. Body: {"mode": "auto" | "on" | "off"}."""
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    mode = (request.get_json(silent=True) or {}).get("mode")
    if not mode:
        return jsonify({"error": "Missing 'mode'"}), 400
    try:
        return jsonify(get_runtime().set_surface_override(surface_id, mode))
    except SurfaceNotFoundError:
        return _surface_not_found(surface_id)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@api.route("/surfaces/<surface_id>/performance", methods=["PUT"])
def surface_performance(surface_id):
    """
    Quiz performance for the surface. Body: {"score": 0-100}, or
    {"scores": [...]} to use the average of recent quiz scores.
    """
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = request.get_json(silent=True) or {}
    score = data.get("score")
    scores = data.get("scores")
    if score is None and isinstance(scores, list) and scores:
        if not all(isinstance(s, (int, float)) and not isinstance(s, bool) for s in scores):
            return jsonify({"error": "'scores' must be a list of numbers"}), 400
        score = average_performance(scores)
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        return jsonify({"error": "'score' must be a number"}), 400
    try:
        return jsonify(get_runtime().set_surface_performance(surface_id, score))
    except SurfaceNotFoundError:
        return _surface_not_found(surface_id)
