"""
Timestamp monotonicity guard.

MediaPipe landmarkers running in VIDEO mode reject any timestamp that is not
strictly greater than the previous one, and a rejected call leaves the graph
in a state that needs a full re-initialization. Every sub-detector call
(face, hands, pose) therefore takes its timestamp from one shared clock.
"""

import threading


class MonotonicClock:
    """
    Issues strictly increasing integer millisecond timestamps.

    Usage:
        clock = MonotonicClock()
        ts = clock.next_timestamp(int(time.time() * 1000))
    """

    def __init__(self):
        self._last_issued = 0
        self._lock = threading.Lock()

    @property
    def last_issued(self) -> int:
        return self._last_issued

    def next_timestamp(self, candidate_ms: int) -> int:
        """Return max(candidate_ms, last_issued + 1) and remember it."""
        with self._lock:
            ts = max(int(candidate_ms), self._last_issued + 1)
            self._last_issued = ts
            return ts

    def reset(self) -> None:
        """Restart from 0. Only valid after every sub-detector has been recreated."""
        with self._lock:
            self._last_issued = 0
