"""
Sampling loop: one inference per interval, never overlapping.

Each cycle reads the latest frame, dispatches it through the DetectorManager,
publishes the sample to the EmotionStore (the only place "current emotion" is
written) and offers it to telemetry. The next cycle is scheduled with
loop.call_later whatever the outcome, unless detection is UNAVAILABLE.

Cancellation is by generation: activate() and deactivate() bump the counter,
and every scheduled callback or in-flight cycle compares the generation it
captured before doing anything observable.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import config
from services.detector_manager import DetectorManager, DetectorState
from services.emotion_store import EmotionStore
from utils.frame_source import FrameSource

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class SamplingLoop:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        manager: DetectorManager,
        store: EmotionStore,
        frame_source: FrameSource,
        telemetry=None,
        interval: Optional[float] = None,
        retry_delay: Optional[float] = None,
        now_ms: Callable[[], int] = _wall_clock_ms,
    ):
        self._loop = loop
        self.manager = manager
        self.store = store
        self.frame_source = frame_source
        self.telemetry = telemetry
        self.interval = config.SAMPLING_INTERVAL_SEC if interval is None else float(interval)
        self.retry_delay = config.FRAME_NOT_READY_RETRY_SEC if retry_delay is None else float(retry_delay)
        self._now_ms = now_ms

        self.generation = 0
        self.active = False
        self.in_flight = False
        self.cycles_completed = 0
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def activate(self) -> None:
        """Start (or restart) sampling on a fresh generation."""
        self.generation += 1
        self.active = True
        self.in_flight = False
        self._cancel_pending()
        self.store.set_camera_active(True)
        self._schedule(0.0)

    def deactivate(self) -> None:
        """Stop sampling; any pending callback or in-flight cycle becomes a no-op."""
        self.generation += 1
        self.active = False
        self.in_flight = False
        self._cancel_pending()
        self.store.set_camera_active(False)

    async def retry(self) -> DetectorState:
        """Force a detector retry and resume scheduling if it recovered."""
        state = await self.manager.retry()
        if self.active and state != DetectorState.UNAVAILABLE and not self.in_flight and self._handle is None:
            self._schedule(0.0)
        return state

    def _cancel_pending(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self, delay: float) -> None:
        self._cancel_pending()
        self._handle = self._loop.call_later(delay, self._on_timer, self.generation)

    def _on_timer(self, generation: int) -> None:
        if generation != self.generation:
            return
        self._handle = None
        self._loop.create_task(self.run_cycle(generation))

    async def run_cycle(self, generation: Optional[int] = None) -> bool:
        """
        One sampling cycle.

        Returns:
            True if a cycle ran to completion (with or without a sample),
            False if it was skipped (inactive, in flight, stale, frame not ready)
        """
        gen = self.generation if generation is None else generation
        if not self.active or self.in_flight or gen != self.generation:
            return False

        frame = self.frame_source.latest_frame() if self.frame_source.is_frame_ready() else None
        if frame is None or frame.size == 0:
            self._schedule(self.retry_delay)
            return False

        self.in_flight = True
        completed = False
        try:
            sample = await self.manager.detect(frame, self._now_ms())
            if gen != self.generation:
                return False
            if sample is not None:
                self.store.publish(sample)
                if self.telemetry is not None:
                    self.telemetry.maybe_log(sample)
            self.cycles_completed += 1
            completed = True
        except Exception as e:
            logger.error("Sampling cycle failed: %s", e, exc_info=True)
        finally:
            if gen == self.generation:
                self.in_flight = False
                if self.manager.state == DetectorState.UNAVAILABLE:
                    logger.warning("Emotion detection unavailable; sampling paused until retry")
                else:
                    self._schedule(self.interval)
        return completed

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "inFlight": self.in_flight,
            "generation": self.generation,
            "cyclesCompleted": self.cycles_completed,
            "intervalSec": self.interval,
        }
