"""
Emotion store: the single container for "current emotion" state.

One writer (the sampling loop) and many readers (routes, adaptive surfaces).
publish() swaps in a new immutable record under a lock, so readers never see
a torn value. Subscribers are called after every publish with the new sample.

Snapshots are versioned. Version 1 payloads stored the 7-class label
vocabulary (Happy, Anxious, Confused, ...); from_snapshot() migrates them to
the canonical three labels before anything else reads them. DetectionRuntime
restores the store from EMOTION_STORE_SNAPSHOT_PATH on startup and writes it
when detection stops.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from utils.emotion_detection_interface import BACKEND_FALLBACK, EmotionSample
from utils.emotion_labels import EmotionLabel, collapse_label, parse_label
from utils.signal_primitives import clamp01

logger = logging.getLogger(__name__)

STORE_VERSION = 2
HISTORY_LIMIT = 10
STRUGGLING_CONFIDENCE = 0.6


@dataclass(frozen=True)
class EmotionRecord:
    """Atomic unit of store state."""
    current: Optional[EmotionSample] = None
    history: Tuple[EmotionSample, ...] = field(default_factory=tuple)  # newest first
    camera_active: bool = False
    status_message: Optional[str] = None


def _migrate_v1(payload: dict) -> dict:
    """v1 -> v2: collapse the legacy label vocabulary; backend unknown (fallback)."""
    def convert(entry: Optional[dict]) -> Optional[dict]:
        if not entry:
            return None
        out = dict(entry)
        out["label"] = collapse_label(entry.get("label") or entry.get("emotion")).value
        out.setdefault("backend", BACKEND_FALLBACK)
        return out

    migrated = dict(payload)
    migrated["current"] = convert(payload.get("current"))
    migrated["history"] = [h for h in (convert(e) for e in payload.get("history") or []) if h]
    migrated["version"] = 2
    return migrated


_MIGRATIONS = {1: _migrate_v1}


def migrate_snapshot(payload: dict) -> dict:
    """Run every migration step from the payload's version up to STORE_VERSION."""
    version = int(payload.get("version", 1))
    if version > STORE_VERSION:
        raise ValueError(f"snapshot version {version} is newer than supported {STORE_VERSION}")
    while version < STORE_VERSION:
        payload = _MIGRATIONS[version](payload)
        version = int(payload["version"])
    return payload


def _sample_from_dict(entry: dict) -> EmotionSample:
    return EmotionSample(
        label=parse_label(entry["label"]),
        confidence=clamp01(float(entry.get("confidence", 0.0))),
        timestamp=int(entry.get("timestamp", 0)),
        backend=entry.get("backend", BACKEND_FALLBACK),
        inferred_from_context=bool(entry.get("inferredFromContext", False)),
    )


class EmotionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._record = EmotionRecord()
        self._subscribers: List[Callable[[EmotionSample], None]] = []

    # ---- reads -------------------------------------------------------

    def snapshot(self) -> EmotionRecord:
        with self._lock:
            return self._record

    @property
    def current(self) -> Optional[EmotionSample]:
        return self.snapshot().current

    @property
    def history(self) -> List[EmotionSample]:
        return list(self.snapshot().history)

    @property
    def camera_active(self) -> bool:
        return self.snapshot().camera_active

    @property
    def status_message(self) -> Optional[str]:
        return self.snapshot().status_message

    def trend(self) -> Optional[EmotionLabel]:
        """Most frequent label in the history; ties go to the most recent."""
        history = self.snapshot().history
        if not history:
            return None
        counts = Counter(s.label for s in history)
        best = max(counts.values())
        for sample in history:
            if counts[sample.label] == best:
                return sample.label
        return None

    def is_struggling(self) -> bool:
        current = self.snapshot().current
        return (
            current is not None
            and current.label == EmotionLabel.NEGATIVE
            and current.confidence > STRUGGLING_CONFIDENCE
        )

    # ---- writes ------------------------------------------------------

    def publish(self, sample: EmotionSample) -> None:
        with self._lock:
            record = self._record
            history = (sample,) + record.history[: HISTORY_LIMIT - 1]
            self._record = EmotionRecord(
                current=sample,
                history=history,
                camera_active=record.camera_active,
                status_message=record.status_message,
            )
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(sample)
            except Exception as e:
                logger.warning("Emotion subscriber failed: %s", e)

    def set_camera_active(self, active: bool) -> None:
        with self._lock:
            r = self._record
            self._record = EmotionRecord(r.current, r.history, bool(active), r.status_message)

    def set_status(self, message: Optional[str]) -> None:
        with self._lock:
            r = self._record
            self._record = EmotionRecord(r.current, r.history, r.camera_active, message)

    def clear(self) -> None:
        """Drop the current sample and history; keep camera flag and status."""
        with self._lock:
            r = self._record
            self._record = EmotionRecord(None, (), r.camera_active, r.status_message)

    def subscribe(self, callback: Callable[[EmotionSample], None]) -> Callable[[], None]:
        """Register callback(sample); returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # ---- persistence -------------------------------------------------

    def to_snapshot(self) -> dict:
        r = self.snapshot()
        return {
            "version": STORE_VERSION,
            "current": r.current.to_dict() if r.current else None,
            "history": [s.to_dict() for s in r.history],
        }

    @classmethod
    def from_snapshot(cls, payload: dict) -> "EmotionStore":
        """Rehydrate a store, migrating older snapshot versions first."""
        data = migrate_snapshot(dict(payload or {}))
        store = cls()
        history = tuple(_sample_from_dict(e) for e in data.get("history") or [])[:HISTORY_LIMIT]
        current = _sample_from_dict(data["current"]) if data.get("current") else None
        store._record = EmotionRecord(current=current, history=history)
        return store
