"""
Helper utility functions.

This module contains reusable utility functions used throughout the application.
"""

from typing import Any, Dict

import config
from utils.detector_preference import get_detector_backend


def build_config_response() -> Dict[str, Any]:
    """
    Build a complete configuration response dictionary.

    This function aggregates all configuration settings into a single
    dictionary for the /config/all endpoint. URL overrides are reported as
    configured; nothing here is secret.

    Returns:
        dict: Complete configuration dictionary
    """
    return {
        "detector": {
            "backend": get_detector_backend(),
            "samplingIntervalSec": config.SAMPLING_INTERVAL_SEC,
            "cameraIndex": config.CAMERA_INDEX,
        },
        "classifier": {
            "modelUrl": config.EMOTION_MODEL_URL,
            "metadataUrl": config.EMOTION_METADATA_URL,
            "normalization": config.EMOTION_MODEL_NORMALIZATION,
            "defaultInputSize": config.EMOTION_MODEL_DEFAULT_INPUT_SIZE,
            "labelsFromEnv": config.get_configured_labels(),
        },
        "landmarks": {
            **config.get_landmark_overrides(),
            "handsEnabled": config.MEDIAPIPE_ENABLE_HANDS,
            "poseEnabled": config.MEDIAPIPE_ENABLE_POSE,
            "minConfidence": config.MIN_FACE_CONFIDENCE,
        },
        "stabilizer": config.get_stabilizer_config(),
        "telemetry": config.get_telemetry_config(),
    }
