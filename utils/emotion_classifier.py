"""
Primary Emotion Classifier

Neural frame classifier (frame -> label probabilities), the preferred backend.

Model asset contract:
    model.json      {"format": "onnx" | "tflite",
                     "modelFile": "model.onnx",
                     "weightFiles": ["model.onnx.data", ...],   # optional shards
                     "inputSize": [224, 224],                   # optional
                     "normalization": "minus_one_to_one"}       # optional
    metadata.json   {"labels": ["happy", "neutral", "sad", ...]}

Files listed in the description are resolved relative to it. The "format"
field is inspected before any loader runs, so a TF.js export or a typo fails
with ModelFormatError instead of an opaque runtime error; retrieval and parse
problems fail with ModelLoadError.

Preprocessing is fixed per model: resize to the declared input size, scale
pixels with the normalization the model was trained with, add a batch
dimension. The normalization is always chosen explicitly (constructor,
description or EMOTION_MODEL_NORMALIZATION); it is never inferred from data.
"""

import asyncio
import hashlib
import logging
import os
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

import config
from utils.emotion_detection_interface import BACKEND_PRIMARY, EmotionDetectorInterface, EmotionSample
from utils.emotion_labels import EmotionLabel, collapse_label
from utils.model_assets import AssetFetchError, fetch_asset, read_json_asset, resolve_relative
from utils.signal_primitives import clamp01, softmax

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("onnx", "tflite")
NORMALIZATION_ZERO_TO_ONE = "zero_to_one"  # pixel / 255
NORMALIZATION_MINUS_ONE_TO_ONE = "minus_one_to_one"  # pixel / 127.5 - 1
VALID_NORMALIZATIONS = (NORMALIZATION_ZERO_TO_ONE, NORMALIZATION_MINUS_ONE_TO_ONE)


class ModelAssetError(Exception):
    """Base class for primary model load failures."""


class ModelFormatError(ModelAssetError):
    """The description declares a format this loader does not handle (wrong format attempted)."""


class ModelLoadError(ModelAssetError):
    """Network, file or parse failure while loading the model."""


class LabelMetadataError(ModelAssetError):
    """No usable label list; refusing to return unlabeled guesses."""


def preprocess_frame(
    frame_bgr: np.ndarray,
    input_size: Tuple[int, int],
    normalization: str,
    channels_first: bool = False,
) -> np.ndarray:
    """
    Convert a BGR frame into a (1, H, W, 3) or (1, 3, H, W) float32 batch.

    Args:
        frame_bgr: OpenCV frame
        input_size: (height, width) the model expects
        normalization: "zero_to_one" or "minus_one_to_one"
        channels_first: True for NCHW models
    """
    if normalization not in VALID_NORMALIZATIONS:
        raise ValueError(f"normalization must be one of {VALID_NORMALIZATIONS}, got {normalization!r}")
    h, w = int(input_size[0]), int(input_size[1])
    rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
    resized = cv2.resize(rgb, (w, h), interpolation=cv2.INTER_LINEAR).astype(np.float32)
    if normalization == NORMALIZATION_ZERO_TO_ONE:
        scaled = resized / 255.0
    else:
        scaled = resized / 127.5 - 1.0
    if channels_first:
        scaled = np.transpose(scaled, (2, 0, 1))
    return np.expand_dims(scaled, axis=0).astype(np.float32)


def to_probabilities(output: np.ndarray) -> np.ndarray:
    """Flatten model output; apply softmax unless it already is a distribution."""
    v = np.asarray(output, dtype=np.float64).reshape(-1)
    if v.size == 0:
        return v
    if np.all(v >= 0) and np.all(v <= 1) and abs(float(np.sum(v)) - 1.0) < 1e-3:
        return v
    return softmax(v)


def _input_layout(shape: Sequence) -> Tuple[Optional[Tuple[int, int]], bool]:
    """(height, width) and channels_first from a 4-D NHWC/NCHW signature, if static."""
    dims = [d if isinstance(d, (int, np.integer)) and d > 0 else None for d in list(shape)]
    if len(dims) != 4:
        return None, False
    if dims[1] == 3 and dims[3] != 3:
        hw = (dims[2], dims[3])
        channels_first = True
    else:
        hw = (dims[1], dims[2])
        channels_first = False
    if hw[0] is None or hw[1] is None:
        return None, channels_first
    return (int(hw[0]), int(hw[1])), channels_first


class _OnnxRunner:
    def __init__(self, model_path: str):
        import onnxruntime as ort
        self._session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])
        inp = self._session.get_inputs()[0]
        self._input_name = inp.name
        self.input_shape = list(inp.shape)
        out_shape = self._session.get_outputs()[0].shape
        last = out_shape[-1] if out_shape else None
        self.num_classes = int(last) if isinstance(last, (int, np.integer)) else None

    def run(self, batch: np.ndarray) -> np.ndarray:
        return self._session.run(None, {self._input_name: batch})[0]


class _TfliteRunner:
    def __init__(self, model_path: str):
        try:
            from tflite_runtime.interpreter import Interpreter
        except ImportError as e:
            raise ModelLoadError("model format is 'tflite' but tflite-runtime is not installed") from e
        self._interpreter = Interpreter(model_path=model_path)
        self._interpreter.allocate_tensors()
        self._input = self._interpreter.get_input_details()[0]
        self._output = self._interpreter.get_output_details()[0]
        self.input_shape = [int(d) for d in self._input["shape"]]
        self.num_classes = int(self._output["shape"][-1])

    def run(self, batch: np.ndarray) -> np.ndarray:
        self._interpreter.set_tensor(self._input["index"], batch)
        self._interpreter.invoke()
        return self._interpreter.get_tensor(self._output["index"])


class EmotionClassifier(EmotionDetectorInterface):
    """
    Neural emotion classifier backend.

    Usage:
        clf = EmotionClassifier()
        await clf.load()
        sample = await clf.detect(frame_bgr, timestamp_ms)
    """

    def __init__(
        self,
        model_url: Optional[str] = None,
        metadata_url: Optional[str] = None,
        normalization: Optional[str] = None,
        default_input_size: Optional[int] = None,
        cache_dir: Optional[str] = None,
        fallback_labels: Optional[List[str]] = None,
    ):
        """
        Args:
            model_url: Model description (defaults to config.EMOTION_MODEL_URL)
            metadata_url: Label sidecar (defaults to config.EMOTION_METADATA_URL)
            normalization: Overrides the description and config normalization
            default_input_size: Square size used when nothing declares one
            cache_dir: Download cache (defaults to config.MODEL_CACHE_DIR)
            fallback_labels: Used when metadata.json has no labels
                (defaults to config EMOTION_LABELS)
        """
        self.model_url = model_url or config.EMOTION_MODEL_URL
        self.metadata_url = metadata_url or config.EMOTION_METADATA_URL
        self._normalization_override = normalization
        self._default_input_size = int(default_input_size or config.EMOTION_MODEL_DEFAULT_INPUT_SIZE)
        self._cache_dir = cache_dir or config.MODEL_CACHE_DIR
        self._fallback_labels = fallback_labels if fallback_labels is not None else config.get_configured_labels()

        self._runner = None
        self.labels: List[str] = []
        self.model_format: Optional[str] = None
        self.input_size: Tuple[int, int] = (self._default_input_size, self._default_input_size)
        self.channels_first = False
        self.normalization = NORMALIZATION_MINUS_ONE_TO_ONE
        self._available = False

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.load_sync)

    def load_sync(self) -> None:
        """Blocking load; raises a ModelAssetError subclass on failure."""
        description = self._read_description()
        fmt = self._check_format(description)
        model_path = self._fetch_model_files(description)
        try:
            runner = _OnnxRunner(model_path) if fmt == "onnx" else _TfliteRunner(model_path)
        except ModelAssetError:
            raise
        except Exception as e:
            raise ModelLoadError(f"could not create {fmt} runtime for {model_path}: {e}") from e

        labels = self._resolve_labels()
        if runner.num_classes is not None and runner.num_classes != len(labels):
            raise LabelMetadataError(
                f"model has {runner.num_classes} outputs but {len(labels)} labels were provided"
            )

        declared = description.get("inputSize")
        signature_size, channels_first = _input_layout(runner.input_shape)
        if isinstance(declared, (list, tuple)) and len(declared) == 2:
            self.input_size = (int(declared[0]), int(declared[1]))
        elif isinstance(declared, int):
            self.input_size = (declared, declared)
        elif signature_size:
            self.input_size = signature_size
        else:
            self.input_size = (self._default_input_size, self._default_input_size)
        self.channels_first = bool(description.get("channelsFirst", channels_first))

        normalization = (
            self._normalization_override
            or description.get("normalization")
            or config.EMOTION_MODEL_NORMALIZATION
        )
        if normalization not in VALID_NORMALIZATIONS:
            raise ModelLoadError(f"unsupported normalization {normalization!r}; use one of {VALID_NORMALIZATIONS}")

        self.normalization = normalization
        self.model_format = fmt
        self.labels = labels
        self._runner = runner
        self._available = True
        logger.info(
            "Emotion model loaded: format=%s input=%s normalization=%s labels=%s",
            fmt, self.input_size, normalization, labels,
        )

    def _read_description(self) -> dict:
        try:
            description = read_json_asset(self.model_url, config.MODEL_DOWNLOAD_TIMEOUT_SEC)
        except AssetFetchError as e:
            raise ModelLoadError(f"could not fetch model description {self.model_url}: {e}") from e
        except ValueError as e:
            raise ModelLoadError(f"model description {self.model_url} is not valid JSON: {e}") from e
        if not isinstance(description, dict):
            raise ModelLoadError(f"model description {self.model_url} must be a JSON object")
        return description

    def _check_format(self, description: dict) -> str:
        fmt = description.get("format")
        if not isinstance(fmt, str) or not fmt.strip():
            raise ModelFormatError(f"model description {self.model_url} has no 'format' field")
        fmt = fmt.strip().lower()
        if fmt in ("graph-model", "layers-model"):
            raise ModelFormatError(
                f"'{fmt}' is a TensorFlow.js export; convert it to ONNX or TFLite before loading"
            )
        if fmt not in SUPPORTED_FORMATS:
            raise ModelFormatError(f"unsupported model format '{fmt}'; expected one of {SUPPORTED_FORMATS}")
        if not description.get("modelFile"):
            raise ModelLoadError(f"model description {self.model_url} has no 'modelFile'")
        return fmt

    def _fetch_model_files(self, description: dict) -> str:
        # Shards must keep their original names next to the model file
        target_dir = os.path.join(
            self._cache_dir, hashlib.sha1(self.model_url.encode("utf-8")).hexdigest()[:12]
        )
        try:
            model_src = resolve_relative(self.model_url, description["modelFile"])
            model_path = fetch_asset(
                model_src, self._cache_dir, config.MODEL_DOWNLOAD_TIMEOUT_SEC,
                dest_path=os.path.join(target_dir, os.path.basename(description["modelFile"])),
            )
            for shard in description.get("weightFiles") or []:
                fetch_asset(
                    resolve_relative(self.model_url, shard), self._cache_dir, config.MODEL_DOWNLOAD_TIMEOUT_SEC,
                    dest_path=os.path.join(target_dir, os.path.basename(shard)),
                )
        except AssetFetchError as e:
            raise ModelLoadError(str(e)) from e
        return model_path

    def _resolve_labels(self) -> List[str]:
        labels: Optional[List[str]] = None
        try:
            metadata = read_json_asset(self.metadata_url, config.MODEL_DOWNLOAD_TIMEOUT_SEC)
            raw = metadata.get("labels") if isinstance(metadata, dict) else None
            if isinstance(raw, list) and raw and all(isinstance(x, str) for x in raw):
                labels = list(raw)
        except (AssetFetchError, ValueError) as e:
            logger.info("Label metadata unavailable (%s); trying EMOTION_LABELS", e)
        if not labels and self._fallback_labels:
            labels = list(self._fallback_labels)
        if not labels:
            raise LabelMetadataError(
                "Emotion model loaded but labels are missing. Provide metadata.json or EMOTION_LABELS."
            )
        return labels

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def classify(self, frame_bgr: np.ndarray) -> np.ndarray:
        """Probabilities over self.labels for one frame."""
        if self._runner is None:
            raise RuntimeError("classifier not loaded")
        batch = preprocess_frame(frame_bgr, self.input_size, self.normalization, self.channels_first)
        return to_probabilities(self._runner.run(batch))

    def top_prediction(self, probabilities: np.ndarray) -> Tuple[EmotionLabel, float, str]:
        """(canonical label, confidence, raw class name) of the arg-max class."""
        idx = int(np.argmax(probabilities))
        class_name = self.labels[idx] if idx < len(self.labels) else ""
        return collapse_label(class_name), clamp01(float(probabilities[idx])), class_name

    async def detect(self, frame: np.ndarray, timestamp_ms: int) -> Optional[EmotionSample]:
        loop = asyncio.get_running_loop()
        probabilities = await loop.run_in_executor(None, self.classify, frame)
        if probabilities.size == 0:
            return None
        label, confidence, _ = self.top_prediction(probabilities)
        return EmotionSample(label=label, confidence=confidence, timestamp=int(timestamp_ms), backend=BACKEND_PRIMARY)

    def is_available(self) -> bool:
        return self._available

    def get_name(self) -> str:
        return BACKEND_PRIMARY

    def close(self) -> None:
        self._runner = None
        self._available = False
