"""
Utility module tests.

Tests signal primitives, the monotonic clock, label collapsing, the sample
type, adaptation rules, detector preference, frame sources and helpers.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import math
import random
import unittest
from unittest.mock import patch

import numpy as np


class TestSignalPrimitives(unittest.TestCase):
    """Test distance/ratio/clamp helpers."""

    def test_clamp01_bounds_and_nan(self):
        """clamp01 should clip to [0,1] and map NaN to 0."""
        from utils.signal_primitives import clamp01
        self.assertEqual(clamp01(-0.5), 0.0)
        self.assertEqual(clamp01(1.7), 1.0)
        self.assertEqual(clamp01(0.25), 0.25)
        self.assertEqual(clamp01(float("nan")), 0.0)

    def test_distance_scales_x_by_aspect_ratio(self):
        """A horizontal normalized distance should grow with frame aspect ratio."""
        from utils.signal_primitives import distance
        self.assertAlmostEqual(distance((0.0, 0.0), (0.3, 0.4)), 0.5)
        self.assertAlmostEqual(distance((0.0, 0.0), (0.1, 0.0), aspect_ratio=16 / 9), 0.1 * 16 / 9)

    def test_safe_ratio_zero_denominator(self):
        """safe_ratio should return the default instead of dividing by zero."""
        from utils.signal_primitives import safe_ratio
        self.assertEqual(safe_ratio(1.0, 0.0), 0.0)
        self.assertEqual(safe_ratio(1.0, 0.0, default=-1.0), -1.0)
        self.assertEqual(safe_ratio(1.0, 4.0), 0.25)

    def test_min_distance_to_targets(self):
        """Minimum over every (point, target) pair; None when either side is empty."""
        from utils.signal_primitives import min_distance_to_targets
        d = min_distance_to_targets([(0.0, 0.0), (1.0, 1.0)], [(1.0, 0.5)])
        self.assertAlmostEqual(d, 0.5)
        self.assertIsNone(min_distance_to_targets([], [(0.0, 0.0)]))

    def test_proximity_score_range(self):
        """Closer than near_ratio scores 1; beyond near + falloff scores 0."""
        from utils.signal_primitives import proximity_score
        self.assertEqual(proximity_score(0.1, 0.42, 0.35), 1.0)
        self.assertEqual(proximity_score(2.0, 0.42, 0.35), 0.0)
        self.assertAlmostEqual(proximity_score(0.42 + 0.175, 0.42, 0.35), 0.5)

    def test_softmax_sums_to_one(self):
        """softmax should produce a probability vector preserving the arg-max."""
        from utils.signal_primitives import softmax
        p = softmax(np.array([2.0, 1.0, -3.0]))
        self.assertAlmostEqual(float(np.sum(p)), 1.0, places=6)
        self.assertEqual(int(np.argmax(p)), 0)


class TestMonotonicClock(unittest.TestCase):
    """Test the shared timestamp guard."""

    def test_strictly_increasing_for_any_candidates(self):
        """Returned timestamps must be strictly increasing whatever is fed in."""
        from utils.monotonic_clock import MonotonicClock
        rng = random.Random(7)
        clock = MonotonicClock()
        candidates = [rng.choice([0, 5, 5, 1000, 999, 1000, 2000, 1]) for _ in range(200)]
        issued = [clock.next_timestamp(c) for c in candidates]
        for a, b in zip(issued, issued[1:]):
            self.assertLess(a, b)

    def test_returns_candidate_when_ahead(self):
        """A candidate ahead of the last issued value is returned unchanged."""
        from utils.monotonic_clock import MonotonicClock
        clock = MonotonicClock()
        self.assertEqual(clock.next_timestamp(100), 100)
        self.assertEqual(clock.next_timestamp(100), 101)
        self.assertEqual(clock.next_timestamp(50), 102)
        self.assertEqual(clock.next_timestamp(500), 500)

    def test_reset_restarts_from_zero(self):
        """reset() should allow small timestamps again."""
        from utils.monotonic_clock import MonotonicClock
        clock = MonotonicClock()
        clock.next_timestamp(10_000)
        clock.reset()
        self.assertEqual(clock.last_issued, 0)
        self.assertEqual(clock.next_timestamp(5), 5)


class TestEmotionLabels(unittest.TestCase):
    """Test label collapsing to the three canonical labels."""

    def test_legacy_vocabulary_collapses(self):
        """Seven-class names should map onto Negative/Neutral/Positive."""
        from utils.emotion_labels import EmotionLabel, collapse_label
        self.assertEqual(collapse_label("Happy"), EmotionLabel.POSITIVE)
        self.assertEqual(collapse_label("surprised"), EmotionLabel.POSITIVE)
        for name in ("Sad", "Anxious", "confused", "Frustrated", "angry", "fear", "disgust"):
            self.assertEqual(collapse_label(name), EmotionLabel.NEGATIVE, msg=name)
        self.assertEqual(collapse_label("neutral"), EmotionLabel.NEUTRAL)

    def test_unknown_and_canonical(self):
        """Unknown names default to Neutral; canonical names and enums pass through."""
        from utils.emotion_labels import EmotionLabel, collapse_label
        self.assertEqual(collapse_label("bored"), EmotionLabel.NEUTRAL)
        self.assertEqual(collapse_label(None), EmotionLabel.NEUTRAL)
        self.assertEqual(collapse_label("Positive"), EmotionLabel.POSITIVE)
        self.assertEqual(collapse_label(EmotionLabel.NEGATIVE), EmotionLabel.NEGATIVE)

    def test_parse_label_is_strict(self):
        """parse_label accepts canonical names only."""
        from utils.emotion_labels import EmotionLabel, parse_label
        self.assertEqual(parse_label("negative"), EmotionLabel.NEGATIVE)
        with self.assertRaises(ValueError):
            parse_label("Happy")


class TestEmotionSample(unittest.TestCase):
    """Test EmotionSample validation."""

    def test_confidence_out_of_range_raises(self):
        """Confidence outside [0,1] is rejected at construction."""
        from utils.emotion_detection_interface import EmotionSample
        from utils.emotion_labels import EmotionLabel
        with self.assertRaises(ValueError):
            EmotionSample(label=EmotionLabel.POSITIVE, confidence=1.2, timestamp=0)
        with self.assertRaises(ValueError):
            EmotionSample(label=EmotionLabel.POSITIVE, confidence=-0.1, timestamp=0)

    def test_label_must_be_enum(self):
        """A raw string label is rejected."""
        from utils.emotion_detection_interface import EmotionSample
        with self.assertRaises(ValueError):
            EmotionSample(label="Positive", confidence=0.5, timestamp=0)

    def test_to_dict(self):
        """to_dict should expose camelCase keys for the UI."""
        from utils.emotion_detection_interface import EmotionSample
        from utils.emotion_labels import EmotionLabel
        s = EmotionSample(EmotionLabel.NEGATIVE, 0.5, 1234, backend="primary", inferred_from_context=True)
        d = s.to_dict()
        self.assertEqual(d["label"], "Negative")
        self.assertEqual(d["timestamp"], 1234)
        self.assertEqual(d["backend"], "primary")
        self.assertTrue(d["inferredFromContext"])


class TestAdaptationEngine(unittest.TestCase):
    """Test the fuzzy adaptation rules."""

    def test_struggling_negative_gets_full_assist(self):
        """Confident Negative -> calm theme, hint, simplify, breathing, easier."""
        from utils.adaptation_engine import UITheme, adapt
        cfg = adapt("Negative", 0.9)
        self.assertEqual(cfg.theme, UITheme.CALM)
        self.assertTrue(cfg.show_hint)
        self.assertTrue(cfg.simplify_text)
        self.assertTrue(cfg.show_encouragement)
        self.assertTrue(cfg.show_breathing_exercise)
        self.assertEqual(cfg.difficulty_delta, -1)
        self.assertEqual(cfg.difficulty_adjustment, "EASIER")

    def test_weak_negative_encourages_without_simplifying(self):
        """Low-confidence Negative encourages but does not simplify; hint only with low score."""
        from utils.adaptation_engine import adapt
        cfg = adapt("Negative", 0.4, performance=80)
        self.assertTrue(cfg.show_encouragement)
        self.assertFalse(cfg.simplify_text)
        self.assertFalse(cfg.show_hint)
        self.assertEqual(cfg.difficulty_delta, 0)
        low = adapt("Negative", 0.4, performance=10)
        self.assertTrue(low.show_hint)
        self.assertEqual(low.difficulty_delta, -1)

    def test_neutral_is_default(self):
        """Neutral -> default theme, standard difficulty, no assists."""
        from utils.adaptation_engine import DEFAULT_CONFIG, adapt
        self.assertEqual(adapt("Neutral", 0.99), DEFAULT_CONFIG)
        self.assertEqual(adapt("Neutral", 0.99, performance=5), DEFAULT_CONFIG)

    def test_engaged_positive_is_harder_without_assists(self):
        """Confident Positive -> harder content, no hint, no simplify."""
        from utils.adaptation_engine import UITheme, adapt
        cfg = adapt("Positive", 0.9)
        self.assertEqual(cfg.difficulty_delta, 1)
        self.assertFalse(cfg.show_hint)
        self.assertFalse(cfg.simplify_text)
        high = adapt("Positive", 0.9, performance=95)
        self.assertEqual(high.theme, UITheme.ENERGETIC)
        self.assertEqual(high.difficulty_adjustment, "HARDER")

    def test_adapt_is_referentially_transparent(self):
        """Same inputs, same output."""
        from utils.adaptation_engine import adapt
        for args in (("Negative", 0.7, 30), ("Positive", 0.5, None), ("Neutral", 0.1, 90)):
            self.assertEqual(adapt(*args), adapt(*args))

    def test_legacy_label_input_is_collapsed(self):
        """Legacy names reaching adapt() are collapsed first."""
        from utils.adaptation_engine import adapt
        self.assertEqual(adapt("Anxious", 0.9), adapt("Negative", 0.9))

    def test_membership_functions(self):
        """Confidence and score membership shapes follow the low/medium/high ranges."""
        from utils.adaptation_engine import fuzzify_confidence, fuzzify_score
        c = fuzzify_confidence(0.55)
        self.assertAlmostEqual(c.medium, 1.0)
        self.assertEqual(c.high, 0.0)
        self.assertAlmostEqual(fuzzify_confidence(1.0).high, 1.0)
        self.assertAlmostEqual(fuzzify_confidence(0.0).low, 1.0)
        s = fuzzify_score(100)
        self.assertAlmostEqual(s.high, 1.0)
        self.assertEqual(s.low, 0.0)
        self.assertAlmostEqual(fuzzify_score(25).low, 0.5)

    def test_to_dict_keys(self):
        """to_dict should expose the presentation hints and named difficulty."""
        from utils.adaptation_engine import adapt
        d = adapt("Negative", 0.9).to_dict()
        for key in ("theme", "showHint", "simplifyText", "showEncouragement", "showBreathingExercise",
                    "difficultyDelta", "difficultyAdjustment", "backgroundColor", "textColor"):
            self.assertIn(key, d)
        self.assertEqual(d["theme"], "CALM")

    def test_encouragement_and_patterns(self):
        """Encouragement text, average performance and struggle pattern detection."""
        from utils.adaptation_engine import average_performance, detect_struggle_pattern, encouragement_message
        self.assertIn("Amazing", encouragement_message("Positive", 85))
        self.assertIn("breath", encouragement_message("Negative"))
        self.assertEqual(average_performance([]), 0.0)
        self.assertAlmostEqual(average_performance([50, 70, 90]), 70.0)
        self.assertFalse(detect_struggle_pattern(["Negative", "Negative"]))
        self.assertTrue(detect_struggle_pattern(["Negative", "Sad", "Frustrated", "Neutral"]))
        self.assertFalse(detect_struggle_pattern(["Negative", "Neutral", "Positive"]))


class TestDetectorPreference(unittest.TestCase):
    """Test runtime backend preference."""

    def tearDown(self):
        from utils.detector_preference import reset_detector_backend
        reset_detector_backend()

    def test_set_and_get(self):
        """A valid preference is stored and normalized."""
        from utils.detector_preference import get_detector_backend, set_detector_backend
        self.assertEqual(set_detector_backend(" Fallback "), "fallback")
        self.assertEqual(get_detector_backend(), "fallback")

    def test_invalid_preference_raises(self):
        """Unknown backends raise ValueError."""
        from utils.detector_preference import set_detector_backend
        with self.assertRaises(ValueError):
            set_detector_backend("azure")

    def test_default_comes_from_config(self):
        """Without a runtime choice the config default is used."""
        import config
        from utils.detector_preference import get_detector_backend
        with patch.object(config, "DETECTOR_BACKEND", "primary"):
            self.assertEqual(get_detector_backend(), "primary")


class TestFrameSource(unittest.TestCase):
    """Test frame decoding and readiness."""

    def test_pushed_frames(self):
        """Pushed JPEG bytes become the latest frame; garbage is rejected."""
        import cv2
        from utils.frame_source import FrameSource, FrameSourceType
        source = FrameSource()
        self.assertTrue(source.open(FrameSourceType.PUSHED))
        self.assertFalse(source.is_frame_ready())
        self.assertFalse(source.push_frame_bytes(b"not an image"))
        ok, buf = cv2.imencode(".jpg", np.full((48, 64, 3), 128, dtype=np.uint8))
        self.assertTrue(ok)
        self.assertTrue(source.push_frame_bytes(buf.tobytes()))
        self.assertTrue(source.is_frame_ready())
        self.assertEqual(source.latest_frame().shape, (48, 64, 3))
        source.release()
        self.assertFalse(source.is_frame_ready())

    def test_wide_frames_are_downscaled(self):
        """Frames wider than the max width are resized keeping aspect ratio."""
        import cv2
        from utils.frame_source import decode_frame
        ok, buf = cv2.imencode(".png", np.zeros((100, 400, 3), dtype=np.uint8))
        frame = decode_frame(buf.tobytes(), max_width=200)
        self.assertEqual(frame.shape[:2], (50, 200))

    def test_file_source_requires_path(self):
        """FILE sources need a path."""
        from utils.frame_source import FrameSource, FrameSourceType
        with self.assertRaises(ValueError):
            FrameSource().open(FrameSourceType.FILE)


class TestHelpers(unittest.TestCase):
    """Test helpers module."""

    def test_build_config_response_sections(self):
        """build_config_response should return every config section."""
        from utils.helpers import build_config_response
        cfg = build_config_response()
        for key in ("detector", "classifier", "landmarks", "stabilizer", "telemetry"):
            self.assertIn(key, cfg)
        self.assertIn(cfg["detector"]["backend"], ("primary", "fallback", "auto"))
        self.assertTrue(math.isfinite(cfg["stabilizer"]["minHoldSec"]))


if __name__ == "__main__":
    unittest.main()
