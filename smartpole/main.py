"""
SmartPole backend entry point: config -> database -> services -> background
tasks (liveness sweep, statistics) -> FastAPI server.
"""

import argparse
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Optional

import yaml

from .api.server import create_app
from .app_context import build_services, build_task_runner
from .db.session import Database

logger = logging.getLogger("smartpole")


def load_config(path: str) -> dict:
    cfg_path = Path(path)
    if not cfg_path.is_file():
        logger.warning("%s not found; using defaults", path)
        return {}
    with open(cfg_path, "r") as f:
        return yaml.safe_load(f) or {}


def run_server(
    config_path: str = "config.yaml",
    host: str = "0.0.0.0",
    port: int = 8080,
    scheduler: bool = True,
    database_url: Optional[str] = None,
) -> None:
    config = load_config(config_path)

    database = Database(database_url or config.get("database_url"))
    database.create_tables()
    services = build_services(database, config)

    runner = build_task_runner(services)
    if scheduler:
        runner.start()
    else:
        logger.info("background tasks disabled")

    # setup graceful shutdown
    should_stop = False

    def _handle_sig(signum, frame):
        nonlocal should_stop
        logger.info("received signal %s, stopping", signum)
        should_stop = True

    signal.signal(signal.SIGINT, _handle_sig)
    signal.signal(signal.SIGTERM, _handle_sig)

    import uvicorn
    app = create_app(services)
    server_thread = threading.Thread(
        target=lambda: uvicorn.run(app, host=host, port=port, log_level="warning"),
        daemon=True,
    )
    server_thread.start()
    logger.info("SmartPole API at http://localhost:%s", port)

    try:
        while not should_stop and server_thread.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        runner.stop()
        database.dispose()
        logger.info("SmartPole stopped.")


def main() -> None:
    p = argparse.ArgumentParser(description="SmartPole - IV infusion telemetry and alerting backend")
    p.add_argument("--config", default="config.yaml", help="YAML configuration file")
    p.add_argument("--host", default="0.0.0.0", help="Bind address")
    p.add_argument("--port", type=int, default=8080, help="API port")
    p.add_argument("--database-url", default=None, help="Overrides database_url from the config")
    p.add_argument("--no-scheduler", action="store_true", help="Do not run liveness sweep / statistics tasks")
    p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ...")
    args = p.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_server(
        config_path=args.config,
        host=args.host,
        port=args.port,
        scheduler=not args.no_scheduler,
        database_url=args.database_url,
    )


if __name__ == "__main__":
    main()
