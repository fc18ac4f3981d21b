from .tracker import LivenessTracker

__all__ = ["LivenessTracker"]
