"""
Emotion label vocabulary.

Downstream logic only ever sees three canonical labels. Older model exports
and previously persisted client state may still carry the seven-class
vocabulary (Happy, Sad, Anxious, ...); those names are collapsed here, at the
boundary, and nowhere else.
"""

from enum import Enum
from typing import Optional


class EmotionLabel(Enum):
    """Canonical emotion labels."""
    NEGATIVE = "Negative"
    NEUTRAL = "Neutral"
    POSITIVE = "Positive"


# Legacy / model class names -> canonical label. Keys are lower-case.
LEGACY_LABEL_MAP = {
    "negative": EmotionLabel.NEGATIVE,
    "neutral": EmotionLabel.NEUTRAL,
    "positive": EmotionLabel.POSITIVE,
    # Seven-class vocabulary used by earlier builds
    "happy": EmotionLabel.POSITIVE,
    "surprised": EmotionLabel.POSITIVE,
    "surprise": EmotionLabel.POSITIVE,
    "sad": EmotionLabel.NEGATIVE,
    "anxious": EmotionLabel.NEGATIVE,
    "confused": EmotionLabel.NEGATIVE,
    "frustrated": EmotionLabel.NEGATIVE,
    # FER-2013 style names
    "angry": EmotionLabel.NEGATIVE,
    "fear": EmotionLabel.NEGATIVE,
    "disgust": EmotionLabel.NEGATIVE,
}


def collapse_label(name: Optional[str], default: EmotionLabel = EmotionLabel.NEUTRAL) -> EmotionLabel:
    """
    Map any class name (canonical, legacy 7-class, or FER) to a canonical label.

    Unknown names map to default (Neutral), matching how unrecognised model
    classes were always treated.
    """
    if isinstance(name, EmotionLabel):
        return name
    key = (name or "").strip().lower()
    return LEGACY_LABEL_MAP.get(key, default)


def parse_label(value: str) -> EmotionLabel:
    """Strict parse of a canonical label name. Raises ValueError for anything else."""
    for label in EmotionLabel:
        if label.value.lower() == (value or "").strip().lower():
            return label
    raise ValueError(f"label must be one of {[l.value for l in EmotionLabel]}, got {value!r}")
