from __future__ import annotations

import pathlib
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Tuple

import pytest

from smartpole.app_context import Services, build_services
from smartpole.db.session import Database
from smartpole.events import ALERTS, ALL_PATIENTS, POLE_STATUS, InMemoryBroadcaster


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class Recorder:
    """Collects (topic, message) pairs published on the given topics."""

    def __init__(self, broadcaster: InMemoryBroadcaster, topics: Iterable[str]):
        self.messages: List[Tuple[str, dict]] = []
        self._subs = [broadcaster.subscribe(t, self._on_message) for t in topics]

    def _on_message(self, topic: str, message: dict) -> None:
        self.messages.append((topic, message))

    def on(self, topic: str) -> List[dict]:
        return [m for t, m in self.messages if t == topic]

    def listen(self, broadcaster: InMemoryBroadcaster, topic: str) -> None:
        self._subs.append(broadcaster.subscribe(topic, self._on_message))


@pytest.fixture()
def database(tmp_path: pathlib.Path):
    db = Database(f"sqlite:///{tmp_path / 'test.sqlite'}")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster()


@pytest.fixture()
def recorder(broadcaster: InMemoryBroadcaster) -> Recorder:
    return Recorder(broadcaster, [ALERTS, ALL_PATIENTS, POLE_STATUS])


@pytest.fixture()
def services(database: Database, clock: FakeClock, broadcaster: InMemoryBroadcaster) -> Services:
    return build_services(database, {}, clock=clock, broadcaster=broadcaster)


@pytest.fixture()
def start_session(services: Services):
    """Register + assign a pole and start a session on it."""

    def _start(pole_id: str = "pole-07", patient_id: str = "P-100", total_volume_ml: float = 1000.0,
               flow_rate_ml_min: float = 2.0, **kwargs):
        if services.registry.find(pole_id) is None:
            services.registry.register(pole_id)
        pole = services.registry.find(pole_id)
        if pole.patient_id is None:
            services.registry.assign(pole_id, patient_id)
        return services.sessions.create(
            patient_id=patient_id,
            pole_id=pole_id,
            total_volume_ml=total_volume_ml,
            flow_rate_ml_min=flow_rate_ml_min,
            **kwargs,
        )

    return _start
