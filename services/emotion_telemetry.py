"""
Emotion telemetry: rate-limited, fire-and-forget logging of samples.

A sample is forwarded only when its confidence is above the floor for the
backend that produced it and at least `interval` seconds have passed since
the last forwarded sample. The HTTP sink posts on a daemon thread and never
raises into the detection loop.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

import requests

import config
from utils.emotion_detection_interface import BACKEND_FALLBACK, BACKEND_PRIMARY, EmotionSample

logger = logging.getLogger(__name__)


class HttpEmotionLogSink:
    """POSTs {userId, materialId, emotionLabel, confidence} to the log endpoint."""

    def __init__(self, url: Optional[str] = None, timeout_sec: Optional[float] = None):
        self.url = url or config.EMOTION_LOG_URL
        self.timeout_sec = config.EMOTION_LOG_TIMEOUT_SEC if timeout_sec is None else timeout_sec

    def build_payload(self, user_id: str, material_id: Optional[str], label: str, confidence: float) -> dict:
        return {
            "userId": user_id,
            "materialId": material_id,
            "emotionLabel": label,
            "confidence": round(float(confidence), 4),
        }

    def log_emotion(self, user_id: str, material_id: Optional[str], label: str, confidence: float) -> None:
        payload = self.build_payload(user_id, material_id, label, confidence)
        threading.Thread(target=self._post, args=(payload,), daemon=True, name="emotion-log").start()

    def _post(self, payload: dict) -> None:
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout_sec)
            if response.status_code >= 400:
                logger.warning("Emotion log rejected (%s): %s", response.status_code, response.text[:200])
        except requests.RequestException as e:
            logger.warning("Emotion log request failed: %s", e)


class EmotionTelemetry:
    """
    Throttle in front of a sink, one instance per learning surface/session.

    Usage:
        telemetry = EmotionTelemetry(HttpEmotionLogSink(), user_id="u1", material_id="m1")
        telemetry.maybe_log(sample)
    """

    def __init__(
        self,
        sink,
        user_id: str,
        material_id: Optional[str] = None,
        interval_sec: Optional[float] = None,
        floors: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.user_id = user_id
        self.material_id = material_id
        self.interval_sec = config.TELEMETRY_INTERVAL_SEC if interval_sec is None else float(interval_sec)
        self.floors = floors or {
            BACKEND_PRIMARY: config.TELEMETRY_FLOOR_PRIMARY,
            BACKEND_FALLBACK: config.TELEMETRY_FLOOR_FALLBACK,
        }
        self._clock = clock
        self._last_sent: Optional[float] = None
        self.sent_count = 0

    def floor_for(self, backend: str) -> float:
        return self.floors.get(backend, self.floors[BACKEND_PRIMARY])

    def maybe_log(self, sample: EmotionSample) -> bool:
        """Forward sample if it clears the floor and the throttle window. Never raises."""
        if sample.confidence <= self.floor_for(sample.backend):
            return False
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.interval_sec:
            return False
        self._last_sent = now
        try:
            self.sink.log_emotion(self.user_id, self.material_id, sample.label.value, sample.confidence)
        except Exception as e:
            logger.warning("Emotion telemetry sink failed: %s", e)
            return False
        self.sent_count += 1
        return True
