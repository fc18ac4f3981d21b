from .manager import SessionManager, TelemetryUpdate

__all__ = ["SessionManager", "TelemetryUpdate"]
