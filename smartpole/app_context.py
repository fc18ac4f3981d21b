"""
Service wiring: builds every component from one Database and a config mapping.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .alerts import AlertLogStore, AlertManager
from .db.models import utc_now
from .db.session import Database
from .devices import DeviceRegistry
from .events import Broadcaster, InMemoryBroadcaster
from .liveness import LivenessTracker
from .scheduler import TaskRunner
from .sessions import SessionManager
from .severity import SeverityScorer
from .telemetry import TelemetryGateway


@dataclass
class Services:
    database: Database
    broadcaster: Broadcaster
    scorer: SeverityScorer
    alert_log: AlertLogStore
    alerts: AlertManager
    registry: DeviceRegistry
    sessions: SessionManager
    gateway: TelemetryGateway
    liveness: LivenessTracker
    config: dict


def build_services(
    database: Database,
    config: Optional[dict] = None,
    clock: Optional[Callable[[], datetime]] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> Services:
    config = config or {}
    clock = clock or utc_now
    broadcaster = broadcaster or InMemoryBroadcaster()

    scorer = SeverityScorer(
        deviation_warning_percent=config.get("deviation_warning_percent", 15.0),
        deviation_critical_percent=config.get("deviation_critical_percent", 25.0),
        low_volume_percent=config.get("low_volume_percent", 90.0),
        critical_volume_percent=config.get("critical_volume_percent", 95.0),
        battery_low_percent=config.get("battery_low_percent", 20),
        battery_critical_percent=config.get("battery_critical_percent", 10),
    )
    alert_log = AlertLogStore(database, clock=clock)
    alerts = AlertManager(alert_log, broadcaster, scorer=scorer)
    registry = DeviceRegistry(database, clock=clock)
    sessions = SessionManager(database, alerts=alerts, scorer=scorer, clock=clock)
    gateway = TelemetryGateway(
        sessions,
        registry,
        alerts,
        broadcaster,
        default_gtt_factor=config.get("default_gtt_factor", 20),
    )
    liveness = LivenessTracker(
        registry,
        sessions,
        broadcaster,
        alerts=alerts,
        window_seconds=config.get("liveness_window_seconds", 60.0),
        low_battery_percent=config.get("battery_low_percent", 20),
    )
    return Services(
        database=database,
        broadcaster=broadcaster,
        scorer=scorer,
        alert_log=alert_log,
        alerts=alerts,
        registry=registry,
        sessions=sessions,
        gateway=gateway,
        liveness=liveness,
        config=config,
    )


def build_task_runner(services: Services) -> TaskRunner:
    """Liveness sweep plus the diagnostic statistics log."""
    config = services.config
    runner = TaskRunner()
    runner.add(
        "liveness-sweep",
        config.get("liveness_sweep_interval_seconds", 60.0),
        services.liveness.sweep,
    )
    runner.add(
        "pole-statistics",
        config.get("statistics_interval_seconds", 600.0),
        services.liveness.log_statistics,
    )
    return runner
