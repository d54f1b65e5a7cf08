"""
Expression Fusion Module

Turns the weak signals produced by the MediaPipe sub-detectors into one
categorical emotion and confidence:

1. Expression scores (smile, frown, brow tension, eye widening, mouth stretch)
   read from FaceLandmarker blendshapes, or derived from landmark geometry
   when blendshapes are missing.
2. Proximity heuristics: hand-near-cheek from hand landmarks, and a looser
   wrist/elbow-near-cheek from pose landmarks for when the hand detector
   cannot see an occluded hand.
3. Fusion into Positive / Negative / Neutral, followed by a contextual
   override where a hand resting on the cheek turns anything short of a
   confident smile into Negative.

Every function here is pure. The landmark indices and numeric thresholds were
tuned empirically against webcam footage; they are collected in
FusionThresholds so they can be revalidated and overridden rather than
treated as derived constants.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from utils.emotion_detection_interface import NormalizedLandmarkSet, ProximityInfo
from utils.emotion_labels import EmotionLabel
from utils.signal_primitives import (
    clamp01,
    distance,
    min_distance_to_targets,
    proximity_score,
    safe_ratio,
)

# MediaPipe face mesh indices (478-point topology with refined iris)
FACE_LEFT_EDGE, FACE_RIGHT_EDGE = 234, 454
CHEEK_LANDMARKS = (50, 280)
BROW_INNER_RIGHT, BROW_INNER_LEFT = 55, 285
BROW_MID_RIGHT, BROW_MID_LEFT = 105, 334
MOUTH_LEFT, MOUTH_RIGHT = 61, 291
LIP_UPPER_INNER, LIP_LOWER_INNER = 13, 14
RIGHT_EYE_TOP, RIGHT_EYE_BOTTOM, RIGHT_EYE_OUTER, RIGHT_EYE_INNER = 159, 145, 33, 133
LEFT_EYE_TOP, LEFT_EYE_BOTTOM, LEFT_EYE_OUTER, LEFT_EYE_INNER = 386, 374, 263, 362
MIN_FACE_LANDMARKS = 468

# Hand landmarker: wrist + finger MCP joints (stable under finger curl)
HAND_KEYPOINTS = (0, 5, 9, 13, 17)
# Pose landmarker: elbows and wrists
POSE_KEYPOINTS = (13, 14, 15, 16)


@dataclass(frozen=True)
class FusionThresholds:
    """Tunable constants for the fallback heuristics."""
    neutral_floor: float = 0.35  # max(positive, negative) below this -> Neutral
    strong_positive: float = 0.7  # Positive at/above this is never overridden
    override_min_confidence: float = 0.35
    # Hand-to-cheek: min distance / face width mapped through (near, falloff)
    hand_near_ratio: float = 0.42
    hand_falloff: float = 0.35
    hand_threshold: float = 0.5  # detected only when the score exceeds this
    # Pose wrist/elbow-to-cheek: looser, noisier signal
    pose_near_ratio: float = 0.6
    pose_falloff: float = 0.6
    pose_threshold: float = 0.6
    pose_min_visibility: float = 0.5
    # Geometry fallback: inter-eyebrow gap / face width
    brow_gap_relaxed: float = 0.24
    brow_gap_tense: float = 0.16


DEFAULT_THRESHOLDS = FusionThresholds()


@dataclass(frozen=True)
class ExpressionScores:
    """Blendshape-like expression activations, each 0-1."""
    smile: float = 0.0
    frown: float = 0.0
    brow_inner_up: float = 0.0
    brow_down: float = 0.0
    nose_sneer: float = 0.0
    eye_wide: float = 0.0
    mouth_stretch: float = 0.0
    jaw_open: float = 0.0
    brow_tension: float = 0.0


@dataclass(frozen=True)
class FusionResult:
    """Final label plus the intermediate scores, for diagnostics."""
    label: EmotionLabel
    confidence: float
    inferred_from_context: bool
    positive_score: float
    negative_score: float
    hand: ProximityInfo
    pose: ProximityInfo


def _bs(scores: Dict[str, float], key: str) -> float:
    value = scores.get(key)
    return float(value) if isinstance(value, (int, float)) else 0.0


def _bs_pair(scores: Dict[str, float], prefix: str) -> float:
    return max(_bs(scores, prefix + "Left"), _bs(scores, prefix + "Right"))


def face_width(face: NormalizedLandmarkSet) -> float:
    """Distance between the outer face contour points, in frame-height units."""
    if len(face) < MIN_FACE_LANDMARKS:
        return 0.0
    return distance(face.point(FACE_LEFT_EDGE), face.point(FACE_RIGHT_EDGE), face.aspect_ratio)


def brow_tension_from_landmarks(
    face: NormalizedLandmarkSet,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> float:
    """
    Brow tension from the gap between the inner eyebrow points.

    The gap is normalized by face width; a smaller gap means the brows are
    drawn together, which maps to a higher tension score.
    """
    width = face_width(face)
    if width <= 0:
        return 0.0
    gap = distance(face.point(BROW_INNER_RIGHT), face.point(BROW_INNER_LEFT), face.aspect_ratio)
    ratio = safe_ratio(gap, width)
    span = thresholds.brow_gap_relaxed - thresholds.brow_gap_tense
    return clamp01(safe_ratio(thresholds.brow_gap_relaxed - ratio, span))


def scores_from_blendshapes(
    blendshapes: Dict[str, float],
    face: Optional[NormalizedLandmarkSet] = None,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> ExpressionScores:
    """Read expression scores from FaceLandmarker blendshape categories."""
    tension = brow_tension_from_landmarks(face, thresholds) if face is not None else 0.0
    return ExpressionScores(
        smile=clamp01(_bs_pair(blendshapes, "mouthSmile")),
        frown=clamp01(_bs_pair(blendshapes, "mouthFrown")),
        brow_inner_up=clamp01(_bs(blendshapes, "browInnerUp")),
        brow_down=clamp01(_bs_pair(blendshapes, "browDown")),
        nose_sneer=clamp01(_bs_pair(blendshapes, "noseSneer")),
        eye_wide=clamp01(_bs_pair(blendshapes, "eyeWide")),
        mouth_stretch=clamp01(_bs_pair(blendshapes, "mouthStretch")),
        jaw_open=clamp01(_bs(blendshapes, "jawOpen")),
        brow_tension=tension,
    )


def scores_from_landmarks(
    face: NormalizedLandmarkSet,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> ExpressionScores:
    """
    Approximate expression scores from face mesh geometry alone.

    Used when the landmarker returned no blendshapes. Nose sneer has no
    reliable geometric proxy and stays 0.
    """
    width = face_width(face)
    if width <= 0:
        return ExpressionScores()
    ar = face.aspect_ratio
    p = face.point

    mouth_width = safe_ratio(distance(p(MOUTH_LEFT), p(MOUTH_RIGHT), ar), width)
    lip_center_y = (float(p(LIP_UPPER_INNER)[1]) + float(p(LIP_LOWER_INNER)[1])) / 2.0
    corner_y = (float(p(MOUTH_LEFT)[1]) + float(p(MOUTH_RIGHT)[1])) / 2.0
    # Image y grows downward: corners above the lip centre means lift
    lift = safe_ratio(lip_center_y - corner_y, width)
    lip_gap = safe_ratio(distance(p(LIP_UPPER_INNER), p(LIP_LOWER_INNER), ar), width)

    width_term = clamp01((mouth_width - 0.40) / 0.12)
    lift_term = clamp01(lift / 0.04)
    smile = clamp01(0.6 * width_term + 0.4 * lift_term) if lift > 0 else 0.0
    frown = clamp01(-lift / 0.04)
    mouth_stretch = clamp01(width_term * (1.0 - lift_term))
    jaw_open = clamp01((lip_gap - 0.02) / 0.12)

    def aperture(top: int, bottom: int, outer: int, inner: int) -> float:
        return safe_ratio(distance(p(top), p(bottom), ar), distance(p(outer), p(inner), ar))

    eye_open = (
        aperture(RIGHT_EYE_TOP, RIGHT_EYE_BOTTOM, RIGHT_EYE_OUTER, RIGHT_EYE_INNER)
        + aperture(LEFT_EYE_TOP, LEFT_EYE_BOTTOM, LEFT_EYE_OUTER, LEFT_EYE_INNER)
    ) / 2.0
    eye_wide = clamp01((eye_open - 0.30) / 0.12)

    brow_raise = (
        safe_ratio(float(p(RIGHT_EYE_TOP)[1]) - float(p(BROW_MID_RIGHT)[1]), width)
        + safe_ratio(float(p(LEFT_EYE_TOP)[1]) - float(p(BROW_MID_LEFT)[1]), width)
    ) / 2.0
    brow_down = clamp01((0.07 - brow_raise) / 0.03)
    brow_inner_up = clamp01((brow_raise - 0.10) / 0.04)

    return ExpressionScores(
        smile=smile,
        frown=frown,
        brow_inner_up=brow_inner_up,
        brow_down=brow_down,
        nose_sneer=0.0,
        eye_wide=eye_wide,
        mouth_stretch=mouth_stretch,
        jaw_open=jaw_open,
        brow_tension=brow_tension_from_landmarks(face, thresholds),
    )


def negative_score(scores: ExpressionScores) -> float:
    """Strongest of the negative-expression combinations."""
    return max(
        clamp01(scores.frown * 0.8 + scores.brow_inner_up * 0.4),
        clamp01(scores.brow_down * 0.7 + scores.nose_sneer * 0.5),
        clamp01(scores.eye_wide * 0.6 + scores.mouth_stretch * 0.6),
        clamp01(scores.brow_tension * 0.75 + max(scores.brow_down, scores.brow_inner_up) * 0.35),
    )


def positive_score(scores: ExpressionScores) -> float:
    return clamp01(scores.smile)


def fuse_scores(
    positive: float,
    negative: float,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> Tuple[EmotionLabel, float]:
    """
    Pick a label from the positive and negative scores.

    If neither reaches the neutral floor the result is Neutral at that
    (low) confidence; otherwise the larger score wins. Ties go to Negative.
    """
    positive = clamp01(positive)
    negative = clamp01(negative)
    best = max(positive, negative)
    if best < thresholds.neutral_floor:
        return EmotionLabel.NEUTRAL, best
    if positive > negative:
        return EmotionLabel.POSITIVE, positive
    return EmotionLabel.NEGATIVE, negative


def _keypoints(landmarks: NormalizedLandmarkSet, indices: Sequence[int], min_visibility: float = 0.0) -> List[np.ndarray]:
    out = []
    for idx in indices:
        if idx >= len(landmarks):
            continue
        if landmarks.visibility is not None and float(landmarks.visibility[idx]) < min_visibility:
            continue
        out.append(landmarks.point(idx))
    return out


def _cheek_proximity(
    face: NormalizedLandmarkSet,
    candidates: List[np.ndarray],
    near_ratio: float,
    falloff: float,
    threshold: float,
) -> ProximityInfo:
    width = face_width(face)
    if width <= 0 or not candidates:
        return ProximityInfo(available=True, detected=False, score=0.0, distance_ratio=None)
    cheeks = [face.point(i) for i in CHEEK_LANDMARKS]
    d = min_distance_to_targets(candidates, cheeks, face.aspect_ratio)
    ratio = safe_ratio(d, width)
    score = proximity_score(ratio, near_ratio, falloff)
    return ProximityInfo(available=True, detected=score > threshold, score=score, distance_ratio=ratio)


def hand_cheek_proximity(
    face: NormalizedLandmarkSet,
    hands: Optional[List[NormalizedLandmarkSet]],
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> ProximityInfo:
    """
    Hand-near-cheek score from hand landmarks.

    Args:
        face: Face landmarks for this frame
        hands: Hand landmark sets, or None when the hand capability is unavailable

    Returns:
        ProximityInfo; available=False when the hand detector did not run
    """
    if hands is None:
        return ProximityInfo.unavailable()
    points: List[np.ndarray] = []
    for hand in hands:
        points.extend(_keypoints(hand, HAND_KEYPOINTS))
    return _cheek_proximity(face, points, thresholds.hand_near_ratio, thresholds.hand_falloff, thresholds.hand_threshold)


def pose_cheek_proximity(
    face: NormalizedLandmarkSet,
    pose: Optional[NormalizedLandmarkSet],
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
    pose_available: bool = True,
) -> ProximityInfo:
    """Looser wrist/elbow-near-cheek score from pose landmarks."""
    if not pose_available:
        return ProximityInfo.unavailable()
    if pose is None:
        return ProximityInfo(available=True, detected=False)
    points = _keypoints(pose, POSE_KEYPOINTS, thresholds.pose_min_visibility)
    return _cheek_proximity(face, points, thresholds.pose_near_ratio, thresholds.pose_falloff, thresholds.pose_threshold)


def apply_context_override(
    label: EmotionLabel,
    confidence: float,
    hand: ProximityInfo,
    pose: ProximityInfo,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> Tuple[EmotionLabel, float, bool]:
    """
    Hand (or wrist/elbow) resting on the cheek overrides a weak base label.

    A strong Positive (confidence >= strong_positive) is kept as is. Otherwise,
    when either proximity signal crossed its threshold, the label becomes
    Negative with confidence max(override_min, max(proximity, base)).

    Returns:
        (label, confidence, inferred_from_context)
    """
    if label == EmotionLabel.POSITIVE and confidence >= thresholds.strong_positive:
        return label, confidence, False
    detected = [p.score for p in (hand, pose) if p.available and p.detected]
    if not detected:
        return label, confidence, False
    proximity = max(detected)
    new_conf = clamp01(max(thresholds.override_min_confidence, max(proximity, confidence)))
    return EmotionLabel.NEGATIVE, new_conf, True


def fuse(
    face: NormalizedLandmarkSet,
    blendshapes: Optional[Dict[str, float]],
    hands: Optional[List[NormalizedLandmarkSet]],
    pose: Optional[NormalizedLandmarkSet],
    pose_available: bool,
    thresholds: FusionThresholds = DEFAULT_THRESHOLDS,
) -> FusionResult:
    """Full fusion pipeline for one frame."""
    if blendshapes:
        scores = scores_from_blendshapes(blendshapes, face, thresholds)
    else:
        scores = scores_from_landmarks(face, thresholds)
    pos = positive_score(scores)
    neg = negative_score(scores)
    label, conf = fuse_scores(pos, neg, thresholds)
    hand_info = hand_cheek_proximity(face, hands, thresholds)
    pose_info = pose_cheek_proximity(face, pose, thresholds, pose_available=pose_available)
    label, conf, inferred = apply_context_override(label, conf, hand_info, pose_info, thresholds)
    return FusionResult(
        label=label,
        confidence=clamp01(conf),
        inferred_from_context=inferred,
        positive_score=pos,
        negative_score=neg,
        hand=hand_info,
        pose=pose_info,
    )
