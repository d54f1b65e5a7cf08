"""
Frame Source Module

Provides the latest camera frame to the sampling loop. Supported sources:
- Webcam (OpenCV capture, read continuously on a daemon thread)
- Local video files (same reader thread, stops at end of file)
- Pushed frames (JPEG/PNG bytes posted by the browser)

The sampling loop never blocks on the camera: it asks is_frame_ready() and
takes a copy of the most recent decodable frame.
"""

import logging
import sys
import threading
import time
from enum import Enum
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Frames wider than this are resized to reduce memory and detection latency
PUSHED_FRAME_MAX_WIDTH = 1280


class FrameSourceType(Enum):
    """Enumeration of supported frame source types."""
    WEBCAM = "webcam"
    FILE = "file"
    PUSHED = "pushed"


def decode_frame(image_bytes: bytes, max_width: int = PUSHED_FRAME_MAX_WIDTH) -> Optional[np.ndarray]:
    """Decode image bytes to BGR; None if the bytes are not a decodable image."""
    if not image_bytes:
        return None
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if frame is None:
        return None
    h, w = frame.shape[:2]
    if w > max_width:
        scale = max_width / w
        frame = cv2.resize(frame, (max_width, int(round(h * scale))), interpolation=cv2.INTER_AREA)
    return frame


class FrameSource:
    """
    Latest-frame holder for one video source.

    Usage:
        source = FrameSource()
        source.open(FrameSourceType.WEBCAM)
        if source.is_frame_ready():
            frame = source.latest_frame()
    """

    def __init__(self):
        self.source_type: Optional[FrameSourceType] = None
        self.source_path: Optional[str] = None
        self._cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None

    def open(self, source_type: FrameSourceType, source_path: Optional[str] = None, camera_index: int = 0) -> bool:
        """
        Open a frame source.

        Args:
            source_type: WEBCAM, FILE or PUSHED
            source_path: Video file path (required for FILE)
            camera_index: Preferred webcam index

        Returns:
            True if the source opened (PUSHED always opens)
        """
        self.release()
        self.source_type = source_type
        self.source_path = source_path

        if source_type == FrameSourceType.PUSHED:
            return True
        if source_type == FrameSourceType.FILE:
            if not source_path:
                raise ValueError("source_path is required for FILE source type")
            self._cap = cv2.VideoCapture(source_path)
        elif source_type == FrameSourceType.WEBCAM:
            self._cap = self._open_webcam(camera_index)
        else:
            raise ValueError(f"Unsupported source type: {source_type}")

        if self._cap is None or not self._cap.isOpened():
            logger.warning("Could not open %s source %s", source_type.value, source_path or camera_index)
            self.release()
            return False

        self._stop.clear()
        self._reader = threading.Thread(target=self._read_loop, daemon=True, name="frame-reader")
        self._reader.start()
        return True

    @staticmethod
    def _open_webcam(camera_index: int) -> Optional[cv2.VideoCapture]:
        apis = [cv2.CAP_DSHOW, cv2.CAP_MSMF, cv2.CAP_ANY] if sys.platform == "win32" else [cv2.CAP_ANY]
        for api in apis:
            cap = cv2.VideoCapture(camera_index, api)
            if cap.isOpened():
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, 640)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 480)
                cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
                return cap
            cap.release()
        return None

    def _read_loop(self) -> None:
        is_file = self.source_type == FrameSourceType.FILE
        fps = self._cap.get(cv2.CAP_PROP_FPS) if is_file else 0
        delay = 1.0 / fps if fps and fps > 0 else 0.0
        while not self._stop.is_set():
            cap = self._cap
            if cap is None:
                break
            ret, frame = cap.read()
            if not ret or frame is None:
                if is_file:
                    logger.info("End of video file %s", self.source_path)
                    break
                time.sleep(0.01)
                continue
            with self._lock:
                self._frame = frame
            if delay:
                time.sleep(delay)

    def push_frame(self, frame_bgr: Optional[np.ndarray]) -> None:
        with self._lock:
            self._frame = frame_bgr.copy() if frame_bgr is not None else None

    def push_frame_bytes(self, image_bytes: bytes) -> bool:
        """Decode and store a browser-posted frame. Returns False if undecodable."""
        frame = decode_frame(image_bytes)
        if frame is None:
            return False
        self.push_frame(frame)
        return True

    def is_frame_ready(self) -> bool:
        """True once at least one decodable frame has arrived."""
        with self._lock:
            return self._frame is not None and self._frame.size > 0

    def latest_frame(self) -> Optional[np.ndarray]:
        """Copy of the most recent frame, or None."""
        with self._lock:
            return self._frame.copy() if self._frame is not None else None

    def release(self) -> None:
        """Stop the reader thread and release the capture."""
        self._stop.set()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._reader = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        with self._lock:
            self._frame = None
        self.source_type = None
        self.source_path = None
