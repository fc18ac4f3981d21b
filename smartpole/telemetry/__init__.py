from .gateway import TelemetryGateway
from .reports import AlertReport, PingReport, ReportError, TelemetryReport

__all__ = ["AlertReport", "PingReport", "ReportError", "TelemetryGateway", "TelemetryReport"]
