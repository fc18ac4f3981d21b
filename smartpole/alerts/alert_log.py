"""
Durable alert records. Records are append-only apart from a one-way
acknowledgment.
"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional

from ..db.models import AlertLog, AlertType, Severity, utc_now
from ..db.session import Database
from ..errors import InvalidStateError, NotFoundError

logger = logging.getLogger("smartpole.alerts.log")


class AlertLogStore:
    def __init__(self, database: Database, clock: Callable = utc_now):
        self._db = database
        self._clock = clock

    def create(
        self,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        session_id: Optional[int] = None,
    ) -> AlertLog:
        alert = AlertLog(
            session_id=session_id,
            alert_type=AlertType(alert_type),
            severity=Severity(severity),
            message=message,
            created_at=self._clock(),
            acknowledged=False,
        )
        with self._db.transaction() as sess:
            sess.add(alert)
        return alert

    def get(self, alert_id: int) -> AlertLog:
        with self._db.transaction() as sess:
            alert = sess.get(AlertLog, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert not found with id: {alert_id}")
        return alert

    def acknowledge(self, alert_id: int, actor: str) -> AlertLog:
        """Acknowledge exactly once; a second attempt is rejected."""
        with self._db.row_scope("alert", alert_id) as sess:
            alert = self._db.lock_query(sess.query(AlertLog).filter(AlertLog.id == alert_id)).first()
            if alert is None:
                raise NotFoundError(f"Alert not found with id: {alert_id}")
            if alert.acknowledged:
                raise InvalidStateError(
                    f"Alert {alert_id} was already acknowledged by {alert.acknowledged_by}"
                )
            alert.acknowledged = True
            alert.acknowledged_by = actor
            alert.acknowledged_at = self._clock()
        return alert

    def acknowledge_all(self, actor: str) -> List[AlertLog]:
        now = self._clock()
        with self._db.transaction() as sess:
            pending = self._db.lock_query(
                sess.query(AlertLog).filter(AlertLog.acknowledged.is_(False))
            ).all()
            for alert in pending:
                alert.acknowledged = True
                alert.acknowledged_by = actor
                alert.acknowledged_at = now
        logger.info("%s acknowledged %d alerts", actor, len(pending))
        return pending

    def unacknowledged(self) -> List[AlertLog]:
        with self._db.transaction() as sess:
            return (
                sess.query(AlertLog)
                .filter(AlertLog.acknowledged.is_(False))
                .order_by(AlertLog.created_at.desc(), AlertLog.id.desc())
                .all()
            )

    def critical_unacknowledged(self) -> List[AlertLog]:
        return [a for a in self.unacknowledged() if a.severity == Severity.CRITICAL]

    def for_session(self, session_id: int) -> List[AlertLog]:
        with self._db.transaction() as sess:
            return (
                sess.query(AlertLog)
                .filter(AlertLog.session_id == session_id)
                .order_by(AlertLog.created_at.desc(), AlertLog.id.desc())
                .all()
            )

    def recent(self, hours: int = 24, limit: int = 50) -> List[AlertLog]:
        since = self._clock() - timedelta(hours=hours)
        with self._db.transaction() as sess:
            return (
                sess.query(AlertLog)
                .filter(AlertLog.created_at >= since)
                .order_by(AlertLog.created_at.desc(), AlertLog.id.desc())
                .limit(limit)
                .all()
            )

    def count_unacknowledged(self, severity: Severity) -> int:
        with self._db.transaction() as sess:
            return (
                sess.query(AlertLog)
                .filter(AlertLog.acknowledged.is_(False), AlertLog.severity == Severity(severity))
                .count()
            )

    def count(self) -> int:
        with self._db.transaction() as sess:
            return sess.query(AlertLog).count()
