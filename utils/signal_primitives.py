"""
Signal Primitives Module

Small geometric helpers shared by every heuristic in the fallback detector:
clamping to the unit interval, point-to-point distances in normalized landmark
space, and safe ratios. Kept free of MediaPipe types so the fusion math can be
tested with plain numpy arrays.
"""

import math
from typing import Iterable, Optional, Sequence

import numpy as np


def clamp01(value: float) -> float:
    """Clamp a value to [0, 1]. NaN maps to 0."""
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value to [low, high]."""
    return max(low, min(high, float(value)))


def distance(a: Sequence[float], b: Sequence[float], aspect_ratio: float = 1.0) -> float:
    """
    Euclidean distance between two 2-D points in normalized image space.

    Args:
        a: First point (x, y[, z]); only x and y are used
        b: Second point (x, y[, z])
        aspect_ratio: Frame width / height. Normalized x is scaled by this so a
            unit of x and a unit of y cover the same number of pixels.

    Returns:
        Distance in units of frame height
    """
    dx = (float(a[0]) - float(b[0])) * aspect_ratio
    dy = float(a[1]) - float(b[1])
    return math.hypot(dx, dy)


def safe_ratio(numerator: float, denominator: float, default: float = 0.0) -> float:
    """numerator / denominator, or default when the denominator is ~0."""
    if denominator is None or abs(denominator) < 1e-9:
        return default
    return float(numerator) / float(denominator)


def min_distance_to_targets(
    points: Iterable[Sequence[float]],
    targets: Iterable[Sequence[float]],
    aspect_ratio: float = 1.0,
) -> Optional[float]:
    """Smallest distance from any of points to any of targets, or None if either is empty."""
    targets = list(targets)
    best: Optional[float] = None
    for p in points:
        for t in targets:
            d = distance(p, t, aspect_ratio)
            if best is None or d < best:
                best = d
    return best


def proximity_score(distance_ratio: float, near_ratio: float, falloff: float) -> float:
    """
    Map a normalized distance to a closeness score in [0, 1].

    At or below near_ratio the score is 1; it decays linearly to 0 over the
    next falloff units. Closer means higher.
    """
    if falloff <= 0:
        return 1.0 if distance_ratio <= near_ratio else 0.0
    return clamp01(1.0 - (distance_ratio - near_ratio) / falloff)


def softmax(values: np.ndarray) -> np.ndarray:
    """Numerically stable softmax over a 1-D array."""
    v = np.asarray(values, dtype=np.float64)
    v = v - np.max(v)
    e = np.exp(v)
    return e / np.sum(e)
