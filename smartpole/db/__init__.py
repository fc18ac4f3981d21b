from .models import (
    AlertLog,
    AlertType,
    Base,
    InfusionSession,
    Pole,
    PoleStatus,
    Prescription,
    PrescriptionStatus,
    SessionStatus,
    Severity,
    as_utc,
    iso,
    utc_now,
)
from .session import Database, resolve_database_url

__all__ = [
    "AlertLog",
    "AlertType",
    "Base",
    "Database",
    "InfusionSession",
    "Pole",
    "PoleStatus",
    "Prescription",
    "PrescriptionStatus",
    "SessionStatus",
    "Severity",
    "as_utc",
    "iso",
    "resolve_database_url",
    "utc_now",
]
