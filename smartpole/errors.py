"""
Domain errors raised by the session, device and alert services.
Boundaries (telemetry gateway, liveness tracker, HTTP layer) turn them into
structured error responses.
"""


class SmartPoleError(RuntimeError):
    """Base class for all domain errors."""


class NotFoundError(SmartPoleError):
    """Referenced session, pole, prescription or alert does not exist."""


class InvalidStateError(SmartPoleError):
    """Command is not allowed in the current state (no partial mutation happens)."""


class ValidationError(SmartPoleError):
    """Command input was rejected."""
