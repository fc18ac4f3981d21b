"""SmartPole: real-time IV infusion telemetry and alerting backend."""

__version__ = "1.0.0"
