"""
Adaptive surfaces: one stabilized adaptation stream per learning page.

A surface subscribes to the EmotionStore when mounted. Every published
sample runs the adaptation rules and feeds the simplify-text recommendation
into the surface's TemporalStabilizer. Reads combine the latest sample with
the stabilizer's held state; the surface caches no AdaptationConfig.

All methods run on the detection runtime's event loop thread.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

import config
from services.emotion_store import EmotionStore
from utils.adaptation_engine import (
    DEFAULT_CONFIG,
    AdaptationConfig,
    adapt,
    detect_struggle_pattern,
    encouragement_message,
    membership_snapshot,
)
from utils.emotion_detection_interface import EmotionSample
from utils.signal_primitives import clamp
from utils.temporal_stabilizer import TemporalStabilizer

logger = logging.getLogger(__name__)


class AdaptiveSurface:
    def __init__(self, loop: asyncio.AbstractEventLoop, surface_id: str, store: EmotionStore, performance: Optional[float] = None):
        self.surface_id = surface_id
        self.store = store
        self.performance = performance
        stab = config.get_stabilizer_config()
        self.stabilizer = TemporalStabilizer(
            loop,
            activation_delay=stab["activationDelaySec"],
            min_hold=stab["minHoldSec"],
            deactivation_delay=stab["deactivationDelaySec"],
        )
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def mounted(self) -> bool:
        return self._unsubscribe is not None

    def mount(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.on_sample)

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.stabilizer.dispose()

    def set_performance(self, score: Optional[float]) -> None:
        self.performance = None if score is None else clamp(float(score), 0.0, 100.0)

    def recommendation(self) -> AdaptationConfig:
        """Instantaneous rule output for the latest sample (unstabilized)."""
        sample = self.store.current
        if sample is None:
            return DEFAULT_CONFIG
        return adapt(sample.label, sample.confidence, self.performance)

    def on_sample(self, sample: EmotionSample) -> None:
        recommended = adapt(sample.label, sample.confidence, self.performance)
        self.stabilizer.update(recommended.simplify_text)

    def adaptation(self) -> AdaptationConfig:
        """Stabilized config: the rule output with simplify_text held by the stabilizer."""
        return self.recommendation().with_simplify(self.stabilizer.is_enabled())

    def to_dict(self) -> dict:
        sample = self.store.current
        adaptation = self.adaptation()
        return {
            "surfaceId": self.surface_id,
            "adaptation": adaptation.to_dict(),
            "encouragement": encouragement_message(sample.label, self.performance) if adaptation.show_encouragement and sample else None,
            "struggling": detect_struggle_pattern(s.label for s in self.store.history),
            "performance": self.performance,
            "stabilizer": self.stabilizer.to_dict(),
            "membership": membership_snapshot(sample.confidence, self.performance) if sample else None,
        }


class SurfaceRegistry:
    """Mounted surfaces keyed by id."""

    def __init__(self, loop: asyncio.AbstractEventLoop, store: EmotionStore):
        self._loop = loop
        self._store = store
        self._surfaces: Dict[str, AdaptiveSurface] = {}

    def mount(self, surface_id: str, performance: Optional[float] = None) -> AdaptiveSurface:
        surface = self._surfaces.get(surface_id)
        if surface is None:
            surface = AdaptiveSurface(self._loop, surface_id, self._store, performance)
            self._surfaces[surface_id] = surface
            logger.info("Mounted adaptive surface %s", surface_id)
        elif performance is not None:
            surface.set_performance(performance)
        surface.mount()
        return surface

    def unmount(self, surface_id: str) -> bool:
        surface = self._surfaces.pop(surface_id, None)
        if surface is None:
            return False
        surface.unmount()
        logger.info("Unmounted adaptive surface %s", surface_id)
        return True

    def get(self, surface_id: str) -> Optional[AdaptiveSurface]:
        return self._surfaces.get(surface_id)

    def dispose_all(self) -> None:
        """Clear every stabilizer's timers (emotion source teardown); surfaces stay mounted."""
        for surface in self._surfaces.values():
            surface.stabilizer.dispose()

    def __len__(self) -> int:
        return len(self._surfaces)
