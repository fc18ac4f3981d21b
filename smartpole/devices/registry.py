"""
Device registry: pole identity, patient assignment, battery and liveness flags.
Every mutation runs inside the pole's row scope so pings, sweeps and
assignment commands on the same pole never interleave.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError

from ..db.models import Pole, PoleStatus, utc_now
from ..db.session import Database
from ..errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger("smartpole.devices")


@dataclass
class PingOutcome:
    pole: Pole
    created: bool
    previous_battery: Optional[int]


@dataclass
class PoleStatistics:
    total: int
    online: int
    offline: int
    low_battery: int
    assigned: int

    def to_dict(self) -> dict:
        return asdict(self)


class DeviceRegistry:
    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self._db = database
        self._clock = clock

    def _locked_pole(self, sess, pole_id: str) -> Optional[Pole]:
        return self._db.lock_query(sess.query(Pole).filter(Pole.id == pole_id)).first()

    # ---- lookups ----

    def find(self, pole_id: str) -> Optional[Pole]:
        with self._db.transaction() as sess:
            return sess.get(Pole, pole_id)

    def get(self, pole_id: str) -> Pole:
        pole = self.find(pole_id)
        if pole is None:
            raise NotFoundError(f"Pole not found with id: {pole_id}")
        return pole

    def list_all(self) -> List[Pole]:
        with self._db.transaction() as sess:
            return sess.query(Pole).order_by(Pole.id.asc()).all()

    def list_online(self) -> List[Pole]:
        with self._db.transaction() as sess:
            return sess.query(Pole).filter(Pole.is_online.is_(True)).order_by(Pole.id.asc()).all()

    def pole_for_patient(self, patient_id: str) -> Optional[Pole]:
        with self._db.transaction() as sess:
            return sess.query(Pole).filter(Pole.patient_id == patient_id).first()

    # ---- registration & liveness ----

    def register(self, pole_id: str, battery_level: int = 100, status: PoleStatus = PoleStatus.ACTIVE) -> Pole:
        if not pole_id:
            raise ValidationError("pole id is required")
        with self._db.row_scope("pole", pole_id) as sess:
            if sess.get(Pole, pole_id) is not None:
                raise InvalidStateError(f"Pole {pole_id} already exists")
            pole = Pole(
                id=pole_id,
                status=PoleStatus(status),
                battery_level=battery_level,
                is_online=False,
            )
            sess.add(pole)
        logger.info("registered pole %s", pole_id)
        return pole

    def record_ping(self, pole_id: str, battery_level: Optional[int] = None) -> PingOutcome:
        """Mark the pole online; unknown poles are auto-registered as active."""
        now = self._clock()
        with self._db.row_scope("pole", pole_id) as sess:
            pole = self._locked_pole(sess, pole_id)
            created = pole is None
            if created:
                pole = Pole(
                    id=pole_id,
                    status=PoleStatus.ACTIVE,
                    battery_level=battery_level if battery_level is not None else 100,
                    created_at=now,
                )
                sess.add(pole)
                previous = None
                logger.info("new pole auto-registered: %s", pole_id)
            else:
                previous = pole.battery_level
                if battery_level is not None:
                    pole.battery_level = battery_level
            pole.record_ping(now)
        return PingOutcome(pole=pole, created=created, previous_battery=previous)

    def mark_offline_if_stale(self, pole_id: str, window_seconds: float) -> Optional[Pole]:
        """
        Flip an online pole to offline when its last ping is outside the window.
        Re-checked under the row lock so a ping that landed meanwhile wins.
        """
        now = self._clock()
        with self._db.row_scope("pole", pole_id) as sess:
            pole = self._locked_pole(sess, pole_id)
            if pole is None or not pole.is_online:
                return None
            if pole.is_online_at(now, window_seconds):
                return None
            pole.mark_offline()
        return pole

    # ---- assignment ----

    def assign(self, pole_id: str, patient_id: str) -> Pole:
        """
        Lock order: patient, then pole. The patient lock serializes concurrent
        assignments of different poles to the same patient; the unique
        patient_id column backs it up across processes.
        """
        if not patient_id:
            raise ValidationError("patient id is required")
        try:
            with self._db.row_lock("patient-pole", patient_id), \
                    self._db.row_scope("pole", pole_id) as sess:
                pole = self._locked_pole(sess, pole_id)
                if pole is None:
                    raise NotFoundError(f"Pole not found with id: {pole_id}")
                if pole.is_assigned:
                    raise InvalidStateError(f"Pole {pole_id} is already assigned to patient {pole.patient_id}")
                if pole.status != PoleStatus.ACTIVE:
                    raise InvalidStateError(f"Pole {pole_id} is not active and cannot be assigned")
                holder = sess.query(Pole).filter(Pole.patient_id == patient_id).first()
                if holder is not None:
                    raise InvalidStateError(f"Patient {patient_id} already has a pole assigned ({holder.id})")
                pole.assign_to(patient_id, self._clock())
        except IntegrityError as e:
            logger.warning("assignment of pole %s to patient %s lost a race: %s", pole_id, patient_id, e)
            raise InvalidStateError(f"Patient {patient_id} already has a pole assigned") from e
        logger.info("pole %s assigned to patient %s", pole_id, patient_id)
        return pole

    def unassign(self, pole_id: str) -> Pole:
        with self._db.row_scope("pole", pole_id) as sess:
            pole = self._locked_pole(sess, pole_id)
            if pole is None:
                raise NotFoundError(f"Pole not found with id: {pole_id}")
            if not pole.is_assigned:
                raise InvalidStateError(f"Pole {pole_id} is not assigned to any patient")
            pole.unassign()
        logger.info("pole %s unassigned", pole_id)
        return pole

    def unassign_patient(self, patient_id: str) -> List[str]:
        released = []
        for pole in self.list_all():
            if pole.patient_id == patient_id:
                self.unassign(pole.id)
                released.append(pole.id)
        return released

    # ---- device attributes ----

    def set_status(self, pole_id: str, status: PoleStatus) -> Pole:
        with self._db.row_scope("pole", pole_id) as sess:
            pole = self._locked_pole(sess, pole_id)
            if pole is None:
                raise NotFoundError(f"Pole not found with id: {pole_id}")
            pole.status = PoleStatus(status)
        return pole

    def set_battery(self, pole_id: str, battery_level: int) -> PingOutcome:
        if not 0 <= battery_level <= 100:
            raise ValidationError(f"battery level must be within 0-100, got {battery_level}")
        with self._db.row_scope("pole", pole_id) as sess:
            pole = self._locked_pole(sess, pole_id)
            if pole is None:
                raise NotFoundError(f"Pole not found with id: {pole_id}")
            previous = pole.battery_level
            pole.battery_level = battery_level
        return PingOutcome(pole=pole, created=False, previous_battery=previous)

    def statistics(self, low_battery_below: int = 20) -> PoleStatistics:
        poles = self.list_all()
        online = [p for p in poles if p.is_online]
        return PoleStatistics(
            total=len(poles),
            online=len(online),
            offline=len(poles) - len(online),
            low_battery=sum(1 for p in online if p.battery_level is not None and p.battery_level < low_battery_below),
            assigned=sum(1 for p in poles if p.is_assigned),
        )
