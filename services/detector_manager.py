"""
Detector lifecycle manager.

Owns the DetectorState and both backends, and decides which backend serves
each frame:

    UNINITIALIZED -> LOADING_PRIMARY -> READY_PRIMARY
                                     -> LOADING_FALLBACK -> READY_FALLBACK
                                                         -> UNAVAILABLE
    READY_PRIMARY -- inference error --> LOADING_FALLBACK
    READY_FALLBACK -- desync --> LOADING_FALLBACK (full teardown, clock reset)
    UNAVAILABLE -- retry() --> activation again

A user switch whose target fails to load returns to the backend that was
serving, if it is still loaded; UNAVAILABLE always means nothing can serve.

Backend initialisation is memoised as one asyncio.Task per target, so
concurrent callers share a single load. All coroutines run on the runtime's
event loop.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from utils.detector_preference import get_detector_backend
from utils.emotion_classifier import EmotionClassifier
from utils.emotion_detection_interface import (
    BACKEND_FALLBACK,
    BACKEND_PRIMARY,
    EmotionDetectorInterface,
    EmotionSample,
)
from utils.mediapipe_emotion_detector import LandmarkerDesyncError, MediaPipeEmotionDetector

logger = logging.getLogger(__name__)

VALID_TARGETS = (BACKEND_PRIMARY, BACKEND_FALLBACK)


class DetectorState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING_PRIMARY = "loading_primary"
    READY_PRIMARY = "ready_primary"
    LOADING_FALLBACK = "loading_fallback"
    READY_FALLBACK = "ready_fallback"
    UNAVAILABLE = "unavailable"


READY_STATES = (DetectorState.READY_PRIMARY, DetectorState.READY_FALLBACK)


class DetectorManager:
    """
    Usage:
        manager = DetectorManager()
        await manager.activate()
        sample = await manager.detect(frame, timestamp_ms)
    """

    def __init__(
        self,
        primary: Optional[EmotionDetectorInterface] = None,
        fallback: Optional[EmotionDetectorInterface] = None,
        primary_factory: Callable[[], EmotionDetectorInterface] = EmotionClassifier,
        fallback_factory: Callable[[], EmotionDetectorInterface] = MediaPipeEmotionDetector,
        preference: Callable[[], str] = get_detector_backend,
    ):
        self._backends: Dict[str, Optional[EmotionDetectorInterface]] = {
            BACKEND_PRIMARY: primary,
            BACKEND_FALLBACK: fallback,
        }
        self._factories = {BACKEND_PRIMARY: primary_factory, BACKEND_FALLBACK: fallback_factory}
        self._preference = preference
        self._init_tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[Callable[[DetectorState, Optional[str]], None]] = []

        self.state = DetectorState.UNINITIALIZED
        self.status_message: Optional[str] = None
        self.last_errors: Dict[str, Exception] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def backend_name(self) -> Optional[str]:
        if self.state == DetectorState.READY_PRIMARY:
            return BACKEND_PRIMARY
        if self.state == DetectorState.READY_FALLBACK:
            return BACKEND_FALLBACK
        return None

    @property
    def is_ready(self) -> bool:
        return self.state in READY_STATES

    def backend(self, target: str) -> EmotionDetectorInterface:
        """The backend instance for target, created on first use."""
        if self._backends[target] is None:
            self._backends[target] = self._factories[target]()
        return self._backends[target]

    def add_listener(self, callback: Callable[[DetectorState, Optional[str]], None]) -> None:
        """callback(state, status_message) after every state change."""
        self._listeners.append(callback)

    def to_dict(self) -> dict:
        fallback = self._backends[BACKEND_FALLBACK]
        capabilities = fallback.capabilities() if hasattr(fallback, "capabilities") else None
        return {
            "state": self.state.value,
            "backend": self.backend_name,
            "preference": self._preference(),
            "statusMessage": self.status_message,
            "fallbackCapabilities": capabilities,
        }

    def _set_state(self, state: DetectorState, message: Optional[str] = None) -> None:
        if state != self.state:
            logger.info("Detector state %s -> %s", self.state.value, state.value)
        self.state = state
        self.status_message = message
        for callback in list(self._listeners):
            try:
                callback(state, message)
            except Exception as e:
                logger.warning("Detector state listener failed: %s", e)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def _load(self, target: str) -> bool:
        backend = self.backend(target)
        try:
            await backend.load()
        except Exception as e:
            logger.warning("%s backend failed to load: %s", target, e)
            self.last_errors[target] = e
            return False
        self.last_errors.pop(target, None)
        return True

    def _ensure(self, target: str) -> asyncio.Task:
        """Memoised load task for target; at most one in flight."""
        task = self._init_tasks.get(target)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load(target))
            self._init_tasks[target] = task
        return task

    def _is_initialised(self, target: str) -> bool:
        task = self._init_tasks.get(target)
        return task is not None and task.done() and not task.cancelled() and task.result() is True

    def _forget_failure(self, target: str) -> None:
        task = self._init_tasks.get(target)
        if task is not None and task.done() and not self._is_initialised(target):
            del self._init_tasks[target]

    async def activate(self) -> DetectorState:
        """Bring up the preferred backend (no-op if already ready)."""
        if self.is_ready:
            return self.state
        if self._preference() == BACKEND_FALLBACK:
            await self._activate_fallback()
        else:
            await self._activate_primary()
        return self.state

    async def _activate_primary(self) -> None:
        self._set_state(DetectorState.LOADING_PRIMARY)
        if await self._ensure(BACKEND_PRIMARY):
            self._set_state(DetectorState.READY_PRIMARY)
            return
        error = self.last_errors.get(BACKEND_PRIMARY)
        await self._activate_fallback(f"Emotion model unavailable ({error}); using landmark fallback.")

    async def _activate_fallback(self, reason: Optional[str] = None) -> None:
        self._set_state(DetectorState.LOADING_FALLBACK, reason)
        if await self._ensure(BACKEND_FALLBACK):
            self._set_state(DetectorState.READY_FALLBACK, reason)
            return
        error = self.last_errors.get(BACKEND_FALLBACK)
        self._set_state(
            DetectorState.UNAVAILABLE,
            f"Emotion detection unavailable: {error}. Use retry to try again.",
        )

    def check_switch(self, target: str) -> None:
        """Raise if switch_backend(target) is not allowed right now."""
        if target not in VALID_TARGETS:
            raise ValueError("target must be 'primary' or 'fallback'")
        if not self.is_ready:
            raise RuntimeError(f"cannot switch backend while {self.state.value}")

    async def switch_backend(self, target: str) -> DetectorState:
        """
        Explicit user switch between backends.

        Raises:
            ValueError: Unknown target
            RuntimeError: Manager is not in a READY state
        """
        self.check_switch(target)
        if self.backend_name == target:
            return self.state
        if self._is_initialised(target):
            ready = DetectorState.READY_PRIMARY if target == BACKEND_PRIMARY else DetectorState.READY_FALLBACK
            self._set_state(ready)
            return self.state
        self._forget_failure(target)
        if target == BACKEND_PRIMARY:
            # A failed primary load lands on the already loaded fallback.
            await self._activate_primary()
            return self.state
        previous = self.state
        self._set_state(DetectorState.LOADING_FALLBACK)
        if await self._ensure(BACKEND_FALLBACK):
            self._set_state(DetectorState.READY_FALLBACK)
        elif self._is_initialised(BACKEND_PRIMARY):
            error = self.last_errors.get(BACKEND_FALLBACK)
            self._set_state(previous, f"Landmark fallback unavailable ({error}); staying on the emotion model.")
        else:
            error = self.last_errors.get(BACKEND_FALLBACK)
            self._set_state(
                DetectorState.UNAVAILABLE,
                f"Emotion detection unavailable: {error}. Use retry to try again.",
            )
        return self.state

    async def retry(self) -> DetectorState:
        """User-forced retry from UNAVAILABLE: clear memoised failures and activate again."""
        if self.state != DetectorState.UNAVAILABLE:
            return self.state
        for target in VALID_TARGETS:
            self._forget_failure(target)
        self.last_errors.clear()
        self._set_state(DetectorState.UNINITIALIZED)
        return await self.activate()

    async def _reinitialise_fallback(self, cause: Exception) -> None:
        logger.warning("Reinitialising landmark fallback after desync: %s", cause)
        backend = self.backend(BACKEND_FALLBACK)
        backend.close()
        self._init_tasks.pop(BACKEND_FALLBACK, None)
        await self._activate_fallback(self.status_message)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def detect(self, frame: np.ndarray, timestamp_ms: int) -> Optional[EmotionSample]:
        """
        Run the active backend on one frame. Never raises: failures become
        state transitions and the frame yields no sample.
        """
        if self.state == DetectorState.READY_PRIMARY:
            try:
                return await self.backend(BACKEND_PRIMARY).detect(frame, timestamp_ms)
            except Exception as e:
                logger.error("Primary inference failed, demoting to fallback: %s", e)
                self.last_errors[BACKEND_PRIMARY] = e
                await self._activate_fallback(f"Emotion model failed ({e}); using landmark fallback.")
                return None

        if self.state == DetectorState.READY_FALLBACK:
            try:
                return await self.backend(BACKEND_FALLBACK).detect(frame, timestamp_ms)
            except LandmarkerDesyncError as e:
                await self._reinitialise_fallback(e)
                return None
            except Exception as e:
                logger.warning("Fallback detection failed on this frame: %s", e)
                return None

        return None

    async def shutdown(self) -> None:
        """Close both backends and return to UNINITIALIZED."""
        for task in self._init_tasks.values():
            if not task.done():
                task.cancel()
        self._init_tasks.clear()
        for target in VALID_TARGETS:
            backend = self._backends[target]
            if backend is not None:
                backend.close()
        self._set_state(DetectorState.UNINITIALIZED)
