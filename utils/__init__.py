"""
Utilities package for the adaptive learning emotion pipeline.

This package contains the detector backends (neural classifier and MediaPipe
landmark fallback), the expression fusion math, the adaptation rules, the
temporal stabilizer, frame sources and model asset loading.
"""

from .emotion_labels import EmotionLabel, collapse_label
from .emotion_detection_interface import EmotionDetectorInterface, EmotionSample, ProximityInfo
from .adaptation_engine import AdaptationConfig, UITheme, adapt
from .temporal_stabilizer import TemporalStabilizer
from .monotonic_clock import MonotonicClock

__all__ = [
    'EmotionLabel',
    'collapse_label',
    'EmotionDetectorInterface',
    'EmotionSample',
    'ProximityInfo',
    'AdaptationConfig',
    'UITheme',
    'adapt',
    'TemporalStabilizer',
    'MonotonicClock',
]
