"""
Emotion Detection Interface Module

This module defines the abstract contract shared by the emotion detector
backends (the neural classifier and the MediaPipe landmark-heuristic
fallback), plus the value types that flow between the detectors, the
sampling loop and the adaptation layer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from utils.emotion_labels import EmotionLabel

BACKEND_PRIMARY = "primary"
BACKEND_FALLBACK = "fallback"


@dataclass(frozen=True)
class EmotionSample:
    """
    One detection cycle's output. Immutable once produced.
    """
    label: EmotionLabel
    confidence: float  # 0-1
    timestamp: int  # milliseconds
    backend: str = BACKEND_FALLBACK  # "primary" | "fallback"
    inferred_from_context: bool = False  # Label came from the hand/pose override (UI transparency only)

    def __post_init__(self):
        if not isinstance(self.label, EmotionLabel):
            raise ValueError(f"label must be an EmotionLabel, got {self.label!r}")
        if not (0.0 <= float(self.confidence) <= 1.0):
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    def to_dict(self) -> dict:
        return {
            "label": self.label.value,
            "confidence": round(float(self.confidence), 4),
            "timestamp": int(self.timestamp),
            "backend": self.backend,
            "inferredFromContext": self.inferred_from_context,
        }


@dataclass
class NormalizedLandmarkSet:
    """
    Landmarks from one sub-detector for one frame, in [0,1] x [0,1] image space.

    Ephemeral: discarded after the fusion step of the cycle that produced it.
    """
    points: np.ndarray  # (N, 2) or (N, 3)
    aspect_ratio: float = 1.0  # frame width / height
    visibility: Optional[np.ndarray] = None  # (N,) per-point visibility, pose only

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def point(self, index: int) -> np.ndarray:
        return self.points[index]


@dataclass(frozen=True)
class ProximityInfo:
    """Output of a single proximity heuristic (e.g. hand near cheek)."""
    available: bool  # The capability ran this cycle
    detected: bool  # Score crossed its threshold
    score: float = 0.0  # 0-1, closer = higher
    distance_ratio: Optional[float] = None  # min distance / face width

    @classmethod
    def unavailable(cls) -> "ProximityInfo":
        return cls(available=False, detected=False, score=0.0, distance_ratio=None)


class EmotionDetectorInterface(ABC):
    """
    Abstract interface for emotion detector backends.

    Both backends load asynchronously and detect asynchronously; the sampling
    loop awaits them one call at a time.
    """

    @abstractmethod
    async def load(self) -> None:
        """
        Load models and assets. Raises on failure; the lifecycle manager turns
        the exception into a state transition.
        """

    @abstractmethod
    async def detect(self, frame: np.ndarray, timestamp_ms: int) -> Optional[EmotionSample]:
        """
        Detect the emotion in one BGR frame.

        Returns:
            EmotionSample, or None when nothing was detected (not an error)
        """

    @abstractmethod
    def is_available(self) -> bool:
        """True once load() has succeeded and close() has not been called."""

    @abstractmethod
    def get_name(self) -> str:
        """Backend name ("primary" or "fallback")."""

    def close(self) -> None:
        """
        Clean up resources. Override if needed.

        Default implementation does nothing.
        """
        pass
