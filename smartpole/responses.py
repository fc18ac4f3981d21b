"""
Structured result envelope shared by every inbound endpoint:
{status, message, data, timestamp}.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ServiceResult:
    status: str
    message: str
    data: Optional[Any] = None
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def success(cls, message: str, data: Optional[Any] = None) -> "ServiceResult":
        return cls(status=STATUS_SUCCESS, message=message, data=data)

    @classmethod
    def error(cls, message: str, data: Optional[Any] = None) -> "ServiceResult":
        return cls(status=STATUS_ERROR, message=message, data=data)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }
