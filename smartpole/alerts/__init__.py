from .alert_log import AlertLogStore
from .alert_manager import AlertManager

__all__ = ["AlertLogStore", "AlertManager"]
