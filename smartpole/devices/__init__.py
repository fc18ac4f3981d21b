from .registry import DeviceRegistry, PingOutcome, PoleStatistics

__all__ = ["DeviceRegistry", "PingOutcome", "PoleStatistics"]
