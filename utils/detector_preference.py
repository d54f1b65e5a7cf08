"""
Runtime detector backend preference.

Stores the operator-selected backend: primary (neural classifier, MediaPipe
on failure), fallback (MediaPipe only) or auto. Falls back to
config.DETECTOR_BACKEND when unset.
"""

from typing import Optional

import config

_PREFERENCE: Optional[str] = None

VALID_METHODS = ("primary", "fallback", "auto")


def get_detector_backend() -> str:
    """Return the current backend preference (runtime choice or config default)."""
    method = (_PREFERENCE or config.DETECTOR_BACKEND or "auto").strip().lower()
    if method not in VALID_METHODS:
        return "auto"
    return method


def set_detector_backend(method: str) -> str:
    """
    Set the backend preference. Valid: 'primary', 'fallback', 'auto'.
    Returns the validated value that was set.
    """
    global _PREFERENCE
    m = (method or "").strip().lower()
    if m not in VALID_METHODS:
        raise ValueError("backend must be 'primary', 'fallback', or 'auto'")
    _PREFERENCE = m
    return _PREFERENCE


def reset_detector_backend() -> None:
    """Forget the runtime choice (used by tests)."""
    global _PREFERENCE
    _PREFERENCE = None
