"""
MediaPipe Emotion Detector (fallback backend)

Landmark-heuristic emotion detection built on the MediaPipe Tasks API:
1. FaceLandmarker (required): 478 landmarks + blendshapes -> expression scores
2. HandLandmarker (optional): hand-near-cheek context signal
3. PoseLandmarker (optional): wrist/elbow-near-cheek context signal

All three run in VIDEO mode and share one MonotonicClock, so every
detect_for_video call receives a strictly increasing timestamp even though
the sub-detectors run back to back on the same frame. If a landmarker still
reports a timestamp or graph error, the detector raises LandmarkerDesyncError;
the lifecycle manager then closes it, resets the clock and loads it again.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import cv2
import mediapipe as mp
import numpy as np

import config
from utils.emotion_detection_interface import (
    BACKEND_FALLBACK,
    EmotionDetectorInterface,
    EmotionSample,
    NormalizedLandmarkSet,
)
from utils.expression_fusion import DEFAULT_THRESHOLDS, MIN_FACE_LANDMARKS, FusionResult, FusionThresholds, fuse
from utils.model_assets import (
    FACE_LANDMARKER_ASSET,
    HAND_LANDMARKER_ASSET,
    POSE_LANDMARKER_ASSET,
    LandmarkAsset,
    LandmarkerInitError,
    candidate_urls,
    load_with_candidates,
)
from utils.monotonic_clock import MonotonicClock

logger = logging.getLogger(__name__)

# Substrings MediaPipe uses when a graph rejects an input packet
_DESYNC_MARKERS = (
    "timestamp",
    "monotonically increasing",
    "calculatorgraph",
    "graph has errors",
    "packet",
)


class LandmarkerDesyncError(Exception):
    """A landmarker rejected its input timestamp; it must be torn down and rebuilt."""

    def __init__(self, kind: str, cause: Exception):
        self.kind = kind
        self.cause = cause
        super().__init__(f"{kind} landmarker desynchronized: {cause}")


def is_desync_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _DESYNC_MARKERS)


def _to_landmark_set(landmarks, aspect_ratio: float, with_visibility: bool = False) -> NormalizedLandmarkSet:
    points = np.array([[lm.x, lm.y, lm.z] for lm in landmarks], dtype=np.float64)
    visibility = None
    if with_visibility:
        visibility = np.array([getattr(lm, "visibility", 1.0) or 0.0 for lm in landmarks], dtype=np.float64)
    return NormalizedLandmarkSet(points=points, aspect_ratio=aspect_ratio, visibility=visibility)


def _create_landmarker(kind: str, model_path: str, min_confidence: float):
    vision = mp.tasks.vision
    base_options = mp.tasks.BaseOptions(model_asset_path=model_path)
    running_mode = vision.RunningMode.VIDEO
    if kind == "face":
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=running_mode,
            num_faces=1,
            output_face_blendshapes=True,
            min_face_detection_confidence=min_confidence,
            min_face_presence_confidence=min_confidence,
            min_tracking_confidence=min_confidence,
        )
        return vision.FaceLandmarker.create_from_options(options)
    if kind == "hand":
        options = vision.HandLandmarkerOptions(
            base_options=base_options,
            running_mode=running_mode,
            num_hands=2,
            min_hand_detection_confidence=min_confidence,
            min_hand_presence_confidence=min_confidence,
            min_tracking_confidence=min_confidence,
        )
        return vision.HandLandmarker.create_from_options(options)
    if kind == "pose":
        options = vision.PoseLandmarkerOptions(
            base_options=base_options,
            running_mode=running_mode,
            num_poses=1,
            min_pose_detection_confidence=min_confidence,
            min_pose_presence_confidence=min_confidence,
            min_tracking_confidence=min_confidence,
        )
        return vision.PoseLandmarker.create_from_options(options)
    raise ValueError(f"unknown landmarker kind: {kind}")


class MediaPipeEmotionDetector(EmotionDetectorInterface):
    """
    Fallback emotion detector: face expression heuristics plus hand/pose context.

    Hands and pose are optional. When either fails to initialize (or is
    disabled) the detector keeps working and the matching availability flag
    stays False, so fusion never treats a missing capability as "not near".
    """

    def __init__(
        self,
        enable_hands: Optional[bool] = None,
        enable_pose: Optional[bool] = None,
        overrides: Optional[Dict[str, Optional[str]]] = None,
        cache_dir: Optional[str] = None,
        min_confidence: Optional[float] = None,
        clock: Optional[MonotonicClock] = None,
        thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
        landmarker_factory=None,
    ):
        """
        Args:
            enable_hands: Load the hand landmarker (defaults to MEDIAPIPE_ENABLE_HANDS)
            enable_pose: Load the pose landmarker (defaults to MEDIAPIPE_ENABLE_POSE)
            overrides: {"baseUrl", "face", "hand", "pose", "faceBaseUrl",
                "handBaseUrl", "poseBaseUrl"} URL overrides
                (defaults to config.get_landmark_overrides())
            cache_dir: Download cache for .task bundles
            min_confidence: Detection/presence/tracking confidence floor
            clock: Shared monotonic timestamp source
            thresholds: Fusion thresholds
            landmarker_factory: (kind, model_path, min_confidence) -> landmarker;
                replaceable for tests
        """
        self.enable_hands = config.MEDIAPIPE_ENABLE_HANDS if enable_hands is None else enable_hands
        self.enable_pose = config.MEDIAPIPE_ENABLE_POSE if enable_pose is None else enable_pose
        self._overrides = overrides if overrides is not None else config.get_landmark_overrides()
        self._cache_dir = cache_dir or config.MODEL_CACHE_DIR
        self._min_confidence = float(config.MIN_FACE_CONFIDENCE if min_confidence is None else min_confidence)
        self.clock = clock or MonotonicClock()
        self.thresholds = thresholds
        self._factory = landmarker_factory or _create_landmarker

        self._face = None
        self._hands = None
        self._pose = None
        self.loaded_urls: Dict[str, str] = {}
        self.last_fusion: Optional[FusionResult] = None

    @property
    def hands_available(self) -> bool:
        return self._hands is not None

    @property
    def pose_available(self) -> bool:
        return self._pose is not None

    def _candidates(self, asset: LandmarkAsset) -> List[str]:
        base_url = self._overrides.get(f"{asset.kind}BaseUrl") or self._overrides.get("baseUrl")
        return candidate_urls(asset, self._overrides.get(asset.kind), base_url)

    def _load_one(self, asset: LandmarkAsset):
        landmarker, url = load_with_candidates(
            asset.kind,
            self._candidates(asset),
            lambda path: self._factory(asset.kind, path, self._min_confidence),
            self._cache_dir,
            config.MODEL_DOWNLOAD_TIMEOUT_SEC,
        )
        self.loaded_urls[asset.kind] = url
        return landmarker

    async def load(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.load_sync)

    def load_sync(self) -> None:
        """
        Load the face landmarker (required) and the optional hand/pose landmarkers.

        Raises:
            LandmarkerInitError: Face landmarker could not be loaded from any candidate
        """
        self.close()
        self._face = self._load_one(FACE_LANDMARKER_ASSET)
        if self.enable_hands:
            try:
                self._hands = self._load_one(HAND_LANDMARKER_ASSET)
            except LandmarkerInitError as e:
                logger.warning("Hand context disabled: %s", e)
        if self.enable_pose:
            try:
                self._pose = self._load_one(POSE_LANDMARKER_ASSET)
            except LandmarkerInitError as e:
                logger.warning("Pose context disabled: %s", e)
        logger.info(
            "MediaPipe fallback ready (hands=%s, pose=%s)", self.hands_available, self.pose_available
        )

    def _run(self, kind: str, landmarker, image, timestamp_ms: int):
        ts = self.clock.next_timestamp(timestamp_ms)
        try:
            return landmarker.detect_for_video(image, ts)
        except Exception as e:
            if is_desync_error(e):
                raise LandmarkerDesyncError(kind, e) from e
            raise

    def _run_optional(self, kind: str, landmarker, image, timestamp_ms: int):
        """Run a context landmarker; non-desync failures make it unavailable for this frame."""
        try:
            return self._run(kind, landmarker, image, timestamp_ms), True
        except LandmarkerDesyncError:
            raise
        except Exception as e:
            logger.warning("%s landmarker failed on this frame: %s", kind, e)
            return None, False

    def detect_sync(self, frame: np.ndarray, timestamp_ms: int) -> Optional[EmotionSample]:
        if self._face is None:
            raise RuntimeError("fallback detector not loaded")
        if frame is None or frame.size == 0:
            return None
        height, width = frame.shape[:2]
        aspect = float(width) / float(height) if height else 1.0
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        face_result = self._run("face", self._face, image, timestamp_ms)
        if not face_result.face_landmarks:
            self.last_fusion = None
            return None
        face = _to_landmark_set(face_result.face_landmarks[0], aspect)
        if len(face) < MIN_FACE_LANDMARKS:
            self.last_fusion = None
            return None
        blendshapes = None
        if getattr(face_result, "face_blendshapes", None):
            blendshapes = {c.category_name: float(c.score) for c in face_result.face_blendshapes[0]}

        hands: Optional[List[NormalizedLandmarkSet]] = None
        if self._hands is not None:
            hand_result, ok = self._run_optional("hand", self._hands, image, timestamp_ms)
            if ok:
                hands = [_to_landmark_set(h, aspect) for h in (hand_result.hand_landmarks or [])]

        pose: Optional[NormalizedLandmarkSet] = None
        pose_ok = False
        if self._pose is not None:
            pose_result, pose_ok = self._run_optional("pose", self._pose, image, timestamp_ms)
            if pose_ok and pose_result.pose_landmarks:
                pose = _to_landmark_set(pose_result.pose_landmarks[0], aspect, with_visibility=True)

        result = fuse(face, blendshapes, hands, pose, pose_available=pose_ok, thresholds=self.thresholds)
        self.last_fusion = result
        return EmotionSample(
            label=result.label,
            confidence=result.confidence,
            timestamp=int(timestamp_ms),
            backend=BACKEND_FALLBACK,
            inferred_from_context=result.inferred_from_context,
        )

    async def detect(self, frame: np.ndarray, timestamp_ms: int) -> Optional[EmotionSample]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.detect_sync, frame, timestamp_ms)

    def is_available(self) -> bool:
        return self._face is not None

    def get_name(self) -> str:
        return BACKEND_FALLBACK

    def capabilities(self) -> Dict[str, bool]:
        return {"face": self.is_available(), "hands": self.hands_available, "pose": self.pose_available}

    def close(self) -> None:
        """Close every landmarker and reset the shared clock."""
        for attr in ("_face", "_hands", "_pose"):
            landmarker = getattr(self, attr)
            if landmarker is not None:
                try:
                    landmarker.close()
                except Exception as e:
                    logger.debug("Error closing %s: %s", attr, e)
                setattr(self, attr, None)
        self.clock.reset()
        self.loaded_urls = {}
        self.last_fusion = None
