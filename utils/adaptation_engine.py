"""
Adaptation Engine (fuzzy rules)

Maps (emotion, confidence, performance score) to a UI adaptation config.

Inputs are fuzzified with triangular/shoulder membership functions:
    confidence  LOW 0.0-0.5   MEDIUM 0.4-0.7   HIGH 0.6-1.0
    score       LOW 0-50      MEDIUM 40-70     HIGH 60-100

adapt() is pure: it reads no state, so the same inputs always produce the
same AdaptationConfig. The temporal stabilizer layers hysteresis on top.
"""

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Union

from utils.emotion_labels import EmotionLabel, collapse_label
from utils.signal_primitives import clamp, clamp01

DEFAULT_PERFORMANCE = 50.0


class UITheme(Enum):
    CALM = "CALM"
    DEFAULT = "DEFAULT"
    ENERGETIC = "ENERGETIC"


_DIFFICULTY_NAMES = {-1: "EASIER", 0: "SAME", 1: "HARDER"}


@dataclass(frozen=True)
class Membership:
    low: float
    medium: float
    high: float


@dataclass(frozen=True)
class AdaptationThresholds:
    struggling_confidence: float = 0.6  # Negative above this -> full calm assist
    engaged_confidence: float = 0.6  # Positive above this -> harder content
    membership_cut: float = 0.5  # Fuzzy set counts as "true" above this degree


DEFAULT_ADAPTATION_THRESHOLDS = AdaptationThresholds()


@dataclass(frozen=True)
class AdaptationConfig:
    """UI intent for one cycle. Never mutated; use with_simplify() to derive."""
    theme: UITheme = UITheme.DEFAULT
    show_hint: bool = False
    simplify_text: bool = False
    show_encouragement: bool = False
    show_breathing_exercise: bool = False
    difficulty_delta: int = 0  # -1 easier, 0 same, +1 harder
    background_color: str = "bg-white"
    text_color: str = "text-gray-900"

    @property
    def difficulty_adjustment(self) -> str:
        return _DIFFICULTY_NAMES[self.difficulty_delta]

    def with_simplify(self, enabled: bool) -> "AdaptationConfig":
        return replace(self, simplify_text=bool(enabled))

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "theme": self.theme.value,
            "showHint": d["show_hint"],
            "simplifyText": d["simplify_text"],
            "showEncouragement": d["show_encouragement"],
            "showBreathingExercise": d["show_breathing_exercise"],
            "difficultyDelta": d["difficulty_delta"],
            "difficultyAdjustment": self.difficulty_adjustment,
            "backgroundColor": d["background_color"],
            "textColor": d["text_color"],
        }


DEFAULT_CONFIG = AdaptationConfig()


# ====================================
# Membership functions
# ====================================

def _triangular(value: float, low: float, high: float) -> float:
    lo_to_peak = (high - low) / 2.0
    peak = low + lo_to_peak
    if value < low or value > high:
        return 0.0
    if value <= peak:
        return (value - low) / lo_to_peak
    return (high - value) / lo_to_peak


def fuzzify_confidence(confidence: float) -> Membership:
    c = clamp01(confidence)
    return Membership(
        low=1.0 - c / 0.5 if c <= 0.5 else 0.0,
        medium=_triangular(c, 0.4, 0.7),
        high=(c - 0.6) / 0.4 if c >= 0.6 else 0.0,
    )


def fuzzify_score(score: float) -> Membership:
    s = clamp(float(score), 0.0, 100.0)
    return Membership(
        low=1.0 - s / 50.0 if s <= 50.0 else 0.0,
        medium=_triangular(s, 40.0, 70.0),
        high=(s - 60.0) / 40.0 if s >= 60.0 else 0.0,
    )


# ====================================
# Rule engine
# ====================================

def adapt(
    emotion: Union[EmotionLabel, str],
    confidence: float,
    performance: Optional[float] = None,
    thresholds: AdaptationThresholds = DEFAULT_ADAPTATION_THRESHOLDS,
) -> AdaptationConfig:
    """
    Apply the adaptation rules.

    Args:
        emotion: Canonical label (legacy names are collapsed first)
        confidence: 0-1
        performance: Recent quiz score 0-100, or None when unknown

    Returns:
        AdaptationConfig
    """
    label = collapse_label(emotion)
    confidence = clamp01(confidence)
    score = fuzzify_score(DEFAULT_PERFORMANCE if performance is None else performance)
    score_low = score.low > thresholds.membership_cut
    score_high = score.high > thresholds.membership_cut

    if label == EmotionLabel.NEGATIVE:
        if confidence > thresholds.struggling_confidence:
            return AdaptationConfig(
                theme=UITheme.CALM,
                show_hint=True,
                simplify_text=True,
                show_encouragement=True,
                show_breathing_exercise=True,
                difficulty_delta=-1,
                background_color="bg-blue-50",
                text_color="text-blue-900",
            )
        return AdaptationConfig(
            theme=UITheme.CALM if score_low else UITheme.DEFAULT,
            show_hint=score_low,
            show_encouragement=True,
            difficulty_delta=-1 if score_low else 0,
            background_color="bg-purple-50",
            text_color="text-purple-900",
        )

    if label == EmotionLabel.POSITIVE:
        if confidence > thresholds.engaged_confidence:
            if score_high:
                return AdaptationConfig(
                    theme=UITheme.ENERGETIC,
                    show_encouragement=True,
                    difficulty_delta=1,
                    background_color="bg-green-50",
                    text_color="text-green-900",
                )
            return AdaptationConfig(difficulty_delta=1)
        if score_low:
            return AdaptationConfig(
                show_hint=True,
                show_encouragement=True,
                background_color="bg-yellow-50",
                text_color="text-yellow-900",
            )
        return DEFAULT_CONFIG

    return DEFAULT_CONFIG


# ====================================
# Utility functions
# ====================================

def encouragement_message(emotion: Union[EmotionLabel, str], score: Optional[float] = None) -> str:
    """Short message shown alongside show_encouragement."""
    label = collapse_label(emotion)
    if label == EmotionLabel.NEGATIVE:
        return "Take a deep breath. Let's break this down together; it's okay to take your time."
    if label == EmotionLabel.POSITIVE and score is not None and score > 70:
        return "Amazing work! Your effort is really paying off. Keep up the excellent progress!"
    if label == EmotionLabel.POSITIVE:
        return "Great attitude! Your positive energy makes learning easier!"
    return "You're on the right track. Keep going!"


def average_performance(scores: Sequence[float]) -> float:
    if not scores:
        return 0.0
    return sum(float(s) for s in scores) / len(scores)


def detect_struggle_pattern(recent: Iterable[Union[EmotionLabel, str]], min_samples: int = 3, ratio: float = 0.6) -> bool:
    """True when more than `ratio` of at least `min_samples` recent labels are Negative."""
    labels = [collapse_label(x) for x in recent]
    if len(labels) < min_samples:
        return False
    negative = sum(1 for x in labels if x == EmotionLabel.NEGATIVE)
    return negative / len(labels) > ratio


def membership_snapshot(confidence: float, performance: Optional[float]) -> Dict[str, dict]:
    """Fuzzified inputs, for diagnostics in the adaptation endpoint."""
    c = fuzzify_confidence(confidence)
    s = fuzzify_score(DEFAULT_PERFORMANCE if performance is None else performance)
    return {"confidence": asdict(c), "score": asdict(s)}
