from .scoring import AlertDecision, SeverityScorer, VolumeLevel, completion_percentage

__all__ = ["AlertDecision", "SeverityScorer", "VolumeLevel", "completion_percentage"]
