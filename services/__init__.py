"""
Services package for the adaptive learning emotion pipeline.

This package contains the stateful pieces that run on the detection runtime:
- DetectorManager: backend lifecycle (primary classifier, landmark fallback)
- SamplingLoop: one serialized inference per interval
- EmotionStore: the single "current emotion" container
- AdaptiveSurface: stabilized adaptation per lesson page
- EmotionTelemetry: throttled emotion logging
"""
