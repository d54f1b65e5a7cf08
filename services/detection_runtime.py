"""
Detection runtime: hosts the emotion pipeline on a background event loop.

One asyncio loop runs on a daemon thread. The DetectorManager, SamplingLoop,
EmotionStore subscribers and every stabilizer timer live on that loop;
Flask handler threads reach them only through run_coroutine_threadsafe.

Usage:
    runtime = DetectionRuntime()
    runtime.start_detection(user_id="u1", source_type=FrameSourceType.WEBCAM)
    runtime.mount_surface("lesson-1")
    runtime.surface_state("lesson-1")
    runtime.stop_detection()
"""

import asyncio
import json
import logging
import os
import threading
from typing import Any, Callable, Optional

import config
from services.adaptive_surface import SurfaceRegistry
from services.detector_manager import DetectorManager, DetectorState
from services.emotion_store import EmotionStore
from services.emotion_telemetry import EmotionTelemetry, HttpEmotionLogSink
from services.sampling_loop import SamplingLoop
from utils.detector_preference import get_detector_backend
from utils.emotion_detection_interface import BACKEND_FALLBACK, BACKEND_PRIMARY
from utils.frame_source import FrameSource, FrameSourceType

logger = logging.getLogger(__name__)

CALL_TIMEOUT_SEC = 10.0


class SurfaceNotFoundError(KeyError):
    """No adaptive surface is mounted under the requested id."""


class DetectionRuntime:
    def __init__(
        self,
        manager: Optional[DetectorManager] = None,
        store: Optional[EmotionStore] = None,
        frame_source: Optional[FrameSource] = None,
        sink_factory: Callable[[], Any] = HttpEmotionLogSink,
        snapshot_path: Optional[str] = None,
    ):
        self.snapshot_path = config.EMOTION_STORE_SNAPSHOT_PATH if snapshot_path is None else snapshot_path
        self.manager = manager or DetectorManager()
        self.store = store or self._restore_store()
        self.frame_source = frame_source or FrameSource()
        self._sink_factory = sink_factory
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.sampling: Optional[SamplingLoop] = None
        self.surfaces: Optional[SurfaceRegistry] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._background: set = set()
        self.session: dict = {}

        self.manager.add_listener(self._on_detector_state)

    # ------------------------------------------------------------------
    # Event loop thread
    # ------------------------------------------------------------------

    def ensure_started(self) -> asyncio.AbstractEventLoop:
        """Start the loop thread on first use."""
        with self._lock:
            if self.loop is None:
                loop = asyncio.new_event_loop()
                ready = threading.Event()

                def run() -> None:
                    asyncio.set_event_loop(loop)
                    loop.call_soon(ready.set)
                    loop.run_forever()

                self._thread = threading.Thread(target=run, daemon=True, name="emotion-runtime")
                self._thread.start()
                ready.wait(timeout=5.0)
                self.sampling = SamplingLoop(loop, self.manager, self.store, self.frame_source)
                self.surfaces = SurfaceRegistry(loop, self.store)
                self.loop = loop
            return self.loop

    def run(self, coro, timeout: Optional[float] = CALL_TIMEOUT_SEC):
        """Run a coroutine on the runtime loop and wait for its result."""
        loop = self.ensure_started()
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout)

    def call(self, fn: Callable, *args, timeout: Optional[float] = CALL_TIMEOUT_SEC):
        """Call a plain function on the runtime loop thread and return its result."""
        async def invoke():
            return fn(*args)
        return self.run(invoke(), timeout)

    def _spawn(self, coro) -> None:
        """Fire-and-forget task on the loop; called from the loop thread."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_detector_state(self, state: DetectorState, message: Optional[str]) -> None:
        self.store.set_status(message)

    def _restore_store(self) -> EmotionStore:
        """Load the persisted store, migrating old snapshots; empty store when there is none."""
        if not self.snapshot_path or not os.path.exists(self.snapshot_path):
            return EmotionStore()
        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as f:
                store = EmotionStore.from_snapshot(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable emotion snapshot %s: %s", self.snapshot_path, e)
            return EmotionStore()
        logger.info("Restored emotion history from %s", self.snapshot_path)
        return store

    def save_snapshot(self) -> bool:
        """Write the store to snapshot_path. Returns False when persistence is off or the write fails."""
        if not self.snapshot_path:
            return False
        try:
            directory = os.path.dirname(self.snapshot_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.snapshot_path, "w", encoding="utf-8") as f:
                json.dump(self.store.to_snapshot(), f)
        except OSError as e:
            logger.warning("Could not write emotion snapshot %s: %s", self.snapshot_path, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Detection lifecycle
    # ------------------------------------------------------------------

    def start_detection(
        self,
        user_id: Optional[str] = None,
        material_id: Optional[str] = None,
        source_type: FrameSourceType = FrameSourceType.WEBCAM,
        source_path: Optional[str] = None,
    ) -> bool:
        """
        Open the frame source and start sampling. Backend loading continues in
        the background; poll state() for progress.

        Returns:
            False if the frame source could not be opened
        """
        self.ensure_started()
        if self.sampling.active:
            self.stop_detection()
        if not self.frame_source.open(source_type, source_path, camera_index=config.CAMERA_INDEX):
            logger.error("Failed to open frame source %s %s", source_type.value, source_path or "")
            return False

        telemetry = None
        if user_id and config.get_telemetry_config()["enabled"]:
            telemetry = EmotionTelemetry(self._sink_factory(), user_id=user_id, material_id=material_id)
        self.session = {"userId": user_id, "materialId": material_id, "sourceType": source_type.value}

        async def start() -> None:
            self.sampling.telemetry = telemetry
            self.sampling.activate()
            self._spawn(self.manager.activate())

        self.run(start())
        logger.info("Emotion detection started: source=%s user=%s", source_type.value, user_id)
        return True

    def stop_detection(self) -> None:
        """Stop sampling, clear stabilizer timers and release the camera."""
        if self.loop is None:
            return

        def stop() -> None:
            self.sampling.deactivate()
            self.surfaces.dispose_all()

        self.call(stop)
        self.frame_source.release()
        self.session = {}
        self.save_snapshot()
        logger.info("Emotion detection stopped")

    def retry(self) -> str:
        """Start a forced retry in the background; returns the state at the time of the call."""
        async def retry() -> str:
            self._spawn(self.sampling.retry())
            return self.manager.state.value

        return self.run(retry())

    def apply_preference(self) -> Optional[str]:
        """
        Switch the live backend to the stored preference ("auto" means primary).
        Returns the target switched to, or None when nothing is running yet.

        Raises:
            RuntimeError: Detector is loading or unavailable
        """
        target = BACKEND_FALLBACK if get_detector_backend() == BACKEND_FALLBACK else BACKEND_PRIMARY
        if self.loop is None or self.manager.state == DetectorState.UNINITIALIZED:
            return None

        async def switch() -> str:
            self.manager.check_switch(target)
            self._spawn(self.manager.switch_backend(target))
            return target

        return self.run(switch())

    def push_frame(self, image_bytes: bytes) -> bool:
        return self.frame_source.push_frame_bytes(image_bytes)

    def state(self) -> dict:
        record = self.store.snapshot()
        trend = self.store.trend()
        return {
            "cameraActive": record.camera_active,
            "current": record.current.to_dict() if record.current else None,
            "history": [s.to_dict() for s in record.history],
            "trend": trend.value if trend else None,
            "struggling": self.store.is_struggling(),
            "statusMessage": record.status_message,
            "detector": self.manager.to_dict(),
            "sampling": self.sampling.to_dict() if self.sampling else None,
            "session": dict(self.session),
        }

    # ------------------------------------------------------------------
    # Adaptive surfaces
    # ------------------------------------------------------------------

    def mount_surface(self, surface_id: str, performance: Optional[float] = None) -> dict:
        self.ensure_started()
        return self.call(lambda: self.surfaces.mount(surface_id, performance).to_dict())

    def unmount_surface(self, surface_id: str) -> bool:
        self.ensure_started()
        return self.call(self.surfaces.unmount, surface_id)

    def _surface(self, surface_id: str):
        surface = self.surfaces.get(surface_id)
        if surface is None:
            raise SurfaceNotFoundError(surface_id)
        return surface

    def surface_state(self, surface_id: str) -> dict:
        self.ensure_started()
        return self.call(lambda: self._surface(surface_id).to_dict())

    def set_surface_override(self, surface_id: str, mode: str) -> dict:
        self.ensure_started()

        def apply() -> dict:
            surface = self._surface(surface_id)
            surface.stabilizer.set_override(mode)
            return surface.to_dict()

        return self.call(apply)

    def set_surface_performance(self, surface_id: str, score: float) -> dict:
        self.ensure_started()

        def apply() -> dict:
            surface = self._surface(surface_id)
            surface.set_performance(score)
            return surface.to_dict()

        return self.call(apply)

    def shutdown(self) -> None:
        """Stop detection, close backends and stop the loop thread."""
        if self.loop is None:
            return
        self.stop_detection()
        self.run(self.manager.shutdown())
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self.loop = None
