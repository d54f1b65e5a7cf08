"""
Detector backend tests.

Tests model asset resolution, the primary classifier's load contract and
inference path, and the MediaPipe fallback's sub-detector orchestration.
ONNX sessions and MediaPipe landmarkers are replaced with fakes; the real
geometry and fusion code runs unchanged.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import numpy as np


class TestModelAssets(unittest.TestCase):
    """Test candidate URLs, relative resolution and downloads."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_candidate_order_and_dedup(self):
        """Override first, then mirror, then public defaults; no duplicates."""
        from utils.model_assets import FACE_LANDMARKER_ASSET, candidate_urls
        urls = candidate_urls(
            FACE_LANDMARKER_ASSET,
            model_url="https://cdn.school.example/face.task",
            base_url="https://mirror.school.example/mp/",
        )
        self.assertEqual(urls[0], "https://cdn.school.example/face.task")
        self.assertEqual(urls[1], "https://mirror.school.example/mp/" + FACE_LANDMARKER_ASSET.relative_path)
        self.assertEqual(urls[2:], list(FACE_LANDMARKER_ASSET.default_urls))
        again = candidate_urls(FACE_LANDMARKER_ASSET, model_url=FACE_LANDMARKER_ASSET.default_urls[0])
        self.assertEqual(len(again), len(set(again)))

    def test_resolve_relative(self):
        """Relative files resolve against remote URLs and local paths."""
        from utils.model_assets import resolve_relative
        self.assertEqual(
            resolve_relative("https://host/models/emotion/model.json", "model.onnx"),
            "https://host/models/emotion/model.onnx",
        )
        self.assertEqual(
            resolve_relative(os.path.join("static", "model", "model.json"), "model.onnx"),
            os.path.join("static", "model", "model.onnx"),
        )
        self.assertEqual(resolve_relative("https://host/a/model.json", "https://other/b.onnx"), "https://other/b.onnx")

    def test_missing_local_file(self):
        """A local path that does not exist raises AssetFetchError."""
        from utils.model_assets import AssetFetchError, fetch_asset
        with self.assertRaises(AssetFetchError):
            fetch_asset(os.path.join(self.tmp, "nope.task"), self.tmp)

    def test_remote_download_is_cached(self):
        """Remote assets are streamed to the cache once."""
        from utils.model_assets import fetch_asset
        response = MagicMock()
        response.__enter__.return_value = response
        response.iter_content.return_value = [b"task-", b"bytes"]
        with patch("utils.model_assets.requests.get", return_value=response) as get:
            path = fetch_asset("https://host/face_landmarker.task", self.tmp)
            again = fetch_asset("https://host/face_landmarker.task", self.tmp)
        self.assertEqual(path, again)
        self.assertTrue(path.endswith("face_landmarker.task"))
        with open(path, "rb") as f:
            self.assertEqual(f.read(), b"task-bytes")
        get.assert_called_once()

    def test_download_failure(self):
        """Network errors become AssetFetchError and leave no partial file."""
        import requests
        from utils.model_assets import AssetFetchError, fetch_asset
        with patch("utils.model_assets.requests.get", side_effect=requests.ConnectionError("blocked")):
            with self.assertRaises(AssetFetchError):
                fetch_asset("https://host/hand_landmarker.task", self.tmp)
        self.assertEqual(os.listdir(self.tmp), [])

    def test_load_with_candidates_reports_every_attempt(self):
        """The first working candidate wins; total failure lists every URL."""
        from utils.model_assets import LandmarkerInitError, load_with_candidates

        def factory(path):
            if "bad" in path:
                raise RuntimeError("corrupt bundle")
            return "landmarker:" + path

        with patch("utils.model_assets.fetch_asset", side_effect=lambda url, *a, **k: url):
            obj, url = load_with_candidates("face", ["https://bad/1", "https://good/2"], factory, self.tmp)
            self.assertEqual((obj, url), ("landmarker:https://good/2", "https://good/2"))
            with self.assertRaises(LandmarkerInitError) as ctx:
                load_with_candidates("pose", ["https://bad/1", "https://bad/2"], factory, self.tmp)
        self.assertEqual(ctx.exception.attempted_urls, ["https://bad/1", "https://bad/2"])
        self.assertIn("corrupt bundle", str(ctx.exception))


class FakeRunner:
    """Stands in for an onnxruntime session wrapper."""
    input_shape = [1, 48, 48, 3]
    num_classes = 3
    output = np.array([[2.0, 0.1, 0.1]], dtype=np.float32)
    created_with = None

    def __init__(self, model_path):
        FakeRunner.created_with = model_path
        self.batches = []

    def run(self, batch):
        self.batches.append(batch)
        return self.output


class TestEmotionClassifier(unittest.TestCase):
    """Test the primary model load contract and inference."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.model_dir = os.path.join(self.tmp, "model")
        os.makedirs(self.model_dir)
        self.cache = os.path.join(self.tmp, "cache")
        for name in ("model.onnx", "model.onnx.data"):
            with open(os.path.join(self.model_dir, name), "wb") as f:
                f.write(b"\x00")
        self.write_description({
            "format": "onnx",
            "modelFile": "model.onnx",
            "weightFiles": ["model.onnx.data"],
            "normalization": "zero_to_one",
        })
        self.write_metadata({"labels": ["happy", "neutral", "sad"]})
        FakeRunner.created_with = None

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def write_description(self, payload):
        with open(os.path.join(self.model_dir, "model.json"), "w", encoding="utf-8") as f:
            json.dump(payload, f)

    def write_metadata(self, payload):
        with open(os.path.join(self.model_dir, "metadata.json"), "w", encoding="utf-8") as f:
            json.dump(payload, f)

    def classifier(self, **kwargs):
        from utils.emotion_classifier import EmotionClassifier
        kwargs.setdefault("fallback_labels", [])
        return EmotionClassifier(
            model_url=os.path.join(self.model_dir, "model.json"),
            metadata_url=os.path.join(self.model_dir, "metadata.json"),
            cache_dir=self.cache,
            **kwargs,
        )

    def test_load_and_detect(self):
        """A valid ONNX description loads and classifies into canonical labels."""
        from utils.emotion_labels import EmotionLabel
        clf = self.classifier()
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            clf.load_sync()
            sample = asyncio.run(clf.detect(np.zeros((120, 160, 3), np.uint8), 42))
        self.assertTrue(clf.is_available())
        self.assertEqual(clf.input_size, (48, 48))
        self.assertEqual(clf.normalization, "zero_to_one")
        self.assertEqual(os.path.basename(FakeRunner.created_with), "model.onnx")
        self.assertTrue(os.path.isfile(os.path.join(os.path.dirname(FakeRunner.created_with), "model.onnx.data")))
        self.assertEqual(sample.label, EmotionLabel.POSITIVE)
        self.assertEqual(sample.backend, "primary")
        self.assertEqual(sample.timestamp, 42)
        self.assertGreater(sample.confidence, 0.7)

    def test_tfjs_export_is_wrong_format(self):
        """A TF.js graph-model fails the format check before any runtime is created."""
        from utils.emotion_classifier import ModelFormatError
        self.write_description({"format": "graph-model", "modelTopology": {}})
        clf = self.classifier()
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            with self.assertRaises(ModelFormatError):
                clf.load_sync()
        self.assertIsNone(FakeRunner.created_with)
        self.assertFalse(clf.is_available())

    def test_missing_format_field(self):
        """A description without format is a format error."""
        from utils.emotion_classifier import ModelFormatError
        self.write_description({"modelFile": "model.onnx"})
        with self.assertRaises(ModelFormatError):
            self.classifier().load_sync()

    def test_missing_description_is_load_error(self):
        """An unreachable description is a load error."""
        from utils.emotion_classifier import EmotionClassifier, ModelLoadError
        clf = EmotionClassifier(model_url=os.path.join(self.tmp, "missing.json"), cache_dir=self.cache, fallback_labels=[])
        with self.assertRaises(ModelLoadError):
            clf.load_sync()

    def test_missing_weight_shard_is_load_error(self):
        """A listed shard that cannot be fetched is a load error."""
        from utils.emotion_classifier import ModelLoadError
        self.write_description({"format": "onnx", "modelFile": "model.onnx", "weightFiles": ["missing.bin"]})
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            with self.assertRaises(ModelLoadError):
                self.classifier().load_sync()

    def test_missing_labels(self):
        """No metadata and no configured labels refuses to run."""
        from utils.emotion_classifier import LabelMetadataError
        os.remove(os.path.join(self.model_dir, "metadata.json"))
        clf = self.classifier()
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            with self.assertRaises(LabelMetadataError):
                clf.load_sync()
        self.assertFalse(clf.is_available())

    def test_configured_labels_fallback(self):
        """Configured labels are used when metadata has none."""
        self.write_metadata({"labels": []})
        clf = self.classifier(fallback_labels=["Negative", "Neutral", "Positive"])
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            clf.load_sync()
        self.assertEqual(clf.labels, ["Negative", "Neutral", "Positive"])

    def test_label_count_mismatch(self):
        """Label count must match the model's outputs."""
        from utils.emotion_classifier import LabelMetadataError
        self.write_metadata({"labels": ["happy", "sad"]})
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            with self.assertRaises(LabelMetadataError):
                self.classifier().load_sync()

    def test_invalid_normalization(self):
        """An unknown normalization is refused rather than guessed."""
        from utils.emotion_classifier import ModelLoadError
        self.write_description({"format": "onnx", "modelFile": "model.onnx", "normalization": "auto"})
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            with self.assertRaises(ModelLoadError):
                self.classifier().load_sync()

    def test_declared_input_size_wins(self):
        """inputSize in the description overrides the signature."""
        self.write_description({"format": "onnx", "modelFile": "model.onnx", "inputSize": [96, 64], "normalization": "zero_to_one"})
        clf = self.classifier()
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            clf.load_sync()
        self.assertEqual(clf.input_size, (96, 64))

    def test_legacy_class_names_collapse(self):
        """Seven-class model outputs collapse to canonical labels."""
        from utils.emotion_labels import EmotionLabel
        clf = self.classifier()
        with patch("utils.emotion_classifier._OnnxRunner", FakeRunner):
            clf.load_sync()
        label, confidence, raw = clf.top_prediction(np.array([0.1, 0.2, 0.7]))
        self.assertEqual((label, raw), (EmotionLabel.NEGATIVE, "sad"))
        self.assertAlmostEqual(confidence, 0.7)

    def test_classify_before_load(self):
        """Classifying without a loaded model raises."""
        with self.assertRaises(RuntimeError):
            self.classifier().classify(np.zeros((4, 4, 3), np.uint8))


class TestPreprocessing(unittest.TestCase):
    """Test fixed-normalization preprocessing."""

    def test_normalization_ranges(self):
        """zero_to_one maps 255 to 1; minus_one_to_one maps 0 to -1."""
        from utils.emotion_classifier import preprocess_frame
        white = np.full((10, 10, 3), 255, np.uint8)
        black = np.zeros((10, 10, 3), np.uint8)
        batch = preprocess_frame(white, (4, 6), "zero_to_one")
        self.assertEqual(batch.shape, (1, 4, 6, 3))
        self.assertEqual(batch.dtype, np.float32)
        self.assertAlmostEqual(float(batch.max()), 1.0)
        self.assertAlmostEqual(float(preprocess_frame(black, (4, 4), "minus_one_to_one").min()), -1.0)

    def test_channels_first(self):
        """NCHW models get a transposed batch."""
        from utils.emotion_classifier import preprocess_frame
        batch = preprocess_frame(np.zeros((10, 10, 3), np.uint8), (8, 8), "zero_to_one", channels_first=True)
        self.assertEqual(batch.shape, (1, 3, 8, 8))

    def test_unknown_normalization(self):
        """Unknown normalization names raise ValueError."""
        from utils.emotion_classifier import preprocess_frame
        with self.assertRaises(ValueError):
            preprocess_frame(np.zeros((4, 4, 3), np.uint8), (4, 4), "imagenet")

    def test_to_probabilities(self):
        """Distributions pass through; logits are softmaxed."""
        from utils.emotion_classifier import to_probabilities
        dist = np.array([[0.2, 0.3, 0.5]])
        np.testing.assert_allclose(to_probabilities(dist), [0.2, 0.3, 0.5])
        probs = to_probabilities(np.array([3.0, -1.0, 0.0]))
        self.assertAlmostEqual(float(probs.sum()), 1.0, places=6)
        self.assertEqual(int(np.argmax(probs)), 0)

    def test_input_layout(self):
        """Static NHWC and NCHW signatures are recognized."""
        from utils.emotion_classifier import _input_layout
        self.assertEqual(_input_layout([1, 3, 224, 224]), ((224, 224), True))
        self.assertEqual(_input_layout(["batch", 112, 112, 3]), ((112, 112), False))
        self.assertEqual(_input_layout(["batch", "h", "w", 3]), (None, False))
        self.assertEqual(_input_layout([1, 7]), (None, False))


class FakeLandmarker:
    def __init__(self, kind, result=None, error=None):
        self.kind = kind
        self.result = result
        self.error = error
        self.timestamps = []
        self.closed = False

    def detect_for_video(self, image, timestamp_ms):
        self.timestamps.append(timestamp_ms)
        if self.error is not None:
            raise self.error
        return self.result

    def close(self):
        self.closed = True


class TestMediaPipeEmotionDetector(unittest.TestCase):
    """Test the fallback detector with fake landmarkers."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.frame = np.zeros((100, 100, 3), np.uint8)
        self.created = {}
        self.fail_kinds = set()
        self.patches = [
            patch("utils.model_assets.fetch_asset", side_effect=lambda url, *a, **k: url),
            patch("utils.mediapipe_emotion_detector.mp"),
        ]
        for p in self.patches:
            p.start()

    def tearDown(self):
        for p in reversed(self.patches):
            p.stop()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def factory(self, kind, path, min_confidence):
        if kind in self.fail_kinds:
            raise RuntimeError(f"cannot open {path}")
        landmarker = FakeLandmarker(kind)
        self.created[kind] = landmarker
        return landmarker

    def detector(self, overrides=None):
        from utils.mediapipe_emotion_detector import MediaPipeEmotionDetector
        det = MediaPipeEmotionDetector(
            enable_hands=True,
            enable_pose=True,
            overrides=overrides or {},
            cache_dir=self.tmp,
            min_confidence=0.5,
            landmarker_factory=self.factory,
        )
        det.load_sync()
        return det

    def set_results(self, face, hands=(), pose=None):
        from tests.fixtures.synthetic_landmarks import face_result, hand_result, pose_result
        self.created["face"].result = face_result(face)
        if "hand" in self.created:
            self.created["hand"].result = hand_result(list(hands))
        if "pose" in self.created:
            self.created["pose"].result = pose_result(pose)

    def test_shared_clock_orders_sub_detectors(self):
        """Face, hand and pose get strictly increasing timestamps, across frames too."""
        from tests.fixtures.synthetic_landmarks import neutral_face
        det = self.detector()
        self.set_results(neutral_face())
        det.detect_sync(self.frame, 1000)
        det.detect_sync(self.frame, 1000)
        self.assertEqual(self.created["face"].timestamps, [1000, 1003])
        self.assertEqual(self.created["hand"].timestamps, [1001, 1004])
        self.assertEqual(self.created["pose"].timestamps, [1002, 1005])

    def test_neutral_face(self):
        """A neutral face gives a Neutral fallback sample."""
        from tests.fixtures.synthetic_landmarks import neutral_face
        from utils.emotion_labels import EmotionLabel
        det = self.detector()
        self.set_results(neutral_face())
        sample = det.detect_sync(self.frame, 10)
        self.assertEqual(sample.label, EmotionLabel.NEUTRAL)
        self.assertEqual(sample.backend, "fallback")
        self.assertFalse(sample.inferred_from_context)

    def test_hand_on_cheek_is_negative(self):
        """Hand landmarks on the cheek override a neutral face."""
        from tests.fixtures.synthetic_landmarks import CHEEK_RIGHT_XY, hand_at, neutral_face
        from utils.emotion_labels import EmotionLabel
        det = self.detector()
        self.set_results(neutral_face(), hands=[hand_at(CHEEK_RIGHT_XY)])
        sample = det.detect_sync(self.frame, 10)
        self.assertEqual(sample.label, EmotionLabel.NEGATIVE)
        self.assertTrue(sample.inferred_from_context)
        self.assertTrue(det.last_fusion.hand.detected)

    def test_smile_is_positive(self):
        """Smile geometry is read through the landmarker output."""
        from tests.fixtures.synthetic_landmarks import smiling_face
        from utils.emotion_labels import EmotionLabel
        det = self.detector()
        self.set_results(smiling_face())
        self.assertEqual(det.detect_sync(self.frame, 10).label, EmotionLabel.POSITIVE)

    def test_no_face_is_no_sample(self):
        """No face in frame is not an error."""
        det = self.detector()
        self.set_results(None)
        self.assertIsNone(det.detect_sync(self.frame, 10))

    def test_timestamp_error_is_desync(self):
        """A rejected timestamp surfaces as LandmarkerDesyncError."""
        from utils.mediapipe_emotion_detector import LandmarkerDesyncError
        det = self.detector()
        self.created["face"].error = RuntimeError("Packet timestamp mismatch on a calculator receiving from stream")
        with self.assertRaises(LandmarkerDesyncError) as ctx:
            det.detect_sync(self.frame, 10)
        self.assertEqual(ctx.exception.kind, "face")

    def test_optional_landmarker_error_degrades(self):
        """A non-desync hand error makes hands unavailable for that frame only."""
        from tests.fixtures.synthetic_landmarks import neutral_face
        det = self.detector()
        self.set_results(neutral_face())
        self.created["hand"].error = ValueError("bad image")
        sample = det.detect_sync(self.frame, 10)
        self.assertIsNotNone(sample)
        self.assertFalse(det.last_fusion.hand.available)
        self.assertTrue(det.last_fusion.pose.available)

    def test_hand_and_pose_load_failure_is_tolerated(self):
        """Optional landmarkers failing to load leave face-only operation."""
        from tests.fixtures.synthetic_landmarks import neutral_face
        self.fail_kinds = {"hand", "pose"}
        det = self.detector()
        self.assertEqual(det.capabilities(), {"face": True, "hands": False, "pose": False})
        self.set_results(neutral_face())
        self.assertIsNotNone(det.detect_sync(self.frame, 10))
        self.assertFalse(det.last_fusion.hand.available)
        self.assertFalse(det.last_fusion.pose.available)

    def test_face_failure_lists_candidates(self):
        """Face load failure raises with every attempted URL, override first."""
        from utils.model_assets import LandmarkerInitError
        self.fail_kinds = {"face"}
        with self.assertRaises(LandmarkerInitError) as ctx:
            self.detector(overrides={"face": "https://mirror.school.example/face.task"})
        self.assertEqual(ctx.exception.attempted_urls[0], "https://mirror.school.example/face.task")
        self.assertGreaterEqual(len(ctx.exception.attempted_urls), 3)

    def test_loaded_urls_follow_overrides(self):
        """The mirror base URL is tried before public defaults."""
        from utils.model_assets import FACE_LANDMARKER_ASSET
        det = self.detector(overrides={"baseUrl": "https://mirror.school.example/mp"})
        self.assertEqual(
            det.loaded_urls["face"],
            "https://mirror.school.example/mp/" + FACE_LANDMARKER_ASSET.relative_path,
        )

    def test_per_model_base_url_beats_shared_mirror(self):
        """A model-specific mirror wins; the other models keep the shared one."""
        from utils.model_assets import FACE_LANDMARKER_ASSET, HAND_LANDMARKER_ASSET, POSE_LANDMARKER_ASSET
        det = self.detector(overrides={
            "baseUrl": "https://mirror.school.example/mp",
            "handBaseUrl": "https://hands.school.example/mp/",
        })
        self.assertEqual(det.loaded_urls["hand"], "https://hands.school.example/mp/" + HAND_LANDMARKER_ASSET.relative_path)
        self.assertEqual(det.loaded_urls["face"], "https://mirror.school.example/mp/" + FACE_LANDMARKER_ASSET.relative_path)
        self.assertEqual(det.loaded_urls["pose"], "https://mirror.school.example/mp/" + POSE_LANDMARKER_ASSET.relative_path)

    def test_close_resets_clock(self):
        """close() tears down every landmarker and restarts the clock."""
        from tests.fixtures.synthetic_landmarks import neutral_face
        det = self.detector()
        self.set_results(neutral_face())
        det.detect_sync(self.frame, 5000)
        landmarkers = dict(self.created)
        det.close()
        self.assertTrue(all(lm.closed for lm in landmarkers.values()))
        self.assertEqual(det.clock.last_issued, 0)
        self.assertFalse(det.is_available())
        with self.assertRaises(RuntimeError):
            det.detect_sync(self.frame, 10)


if __name__ == "__main__":
    unittest.main()
