import logging
import sys
import threading
from typing import List, Optional, Sequence

import uvicorn
from fastapi import FastAPI

from fping_exporter.api import health, metrics
from fping_exporter.config import Settings, get_settings, load_settings
from fping_exporter.errors import ConfigurationError, ExporterError, SpawnFailure
from fping_exporter.logging_config import setup_logging
from fping_exporter.services import prober
from fping_exporter.services.registry import Registry
from fping_exporter.services.supervisor import Supervisor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 2
EXIT_RUNTIME_FAILURE = 3

# Extra time on top of the SIGTERM grace period to wait for the supervisor thread.
_JOIN_SLACK_S = 2.0


def create_app(registry: Registry, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title="fping exporter")
    app.state.registry = registry

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(metrics.router, prefix=settings.metrics_path, tags=["metrics"])
    return app


def run(argv: Optional[Sequence[str]] = None) -> int:
    """
    Start fping under supervision and serve metrics until SIGINT/SIGTERM,
    the runtime limit, or a fatal prober failure. Returns the exit code.
    """
    try:
        settings = load_settings(argv)
    except ConfigurationError as exc:
        setup_logging()
        logger.error("%s", exc)
        return EXIT_STARTUP_FAILURE

    setup_logging(settings.log_level)

    try:
        binary = prober.resolve_binary(settings.fping_bin)
        version = prober.read_version(binary, settings.version_timeout_s)
    except SpawnFailure as exc:
        logger.error("%s", exc)
        return EXIT_STARTUP_FAILURE
    logger.info("using fping %s at %s", version, binary)

    registry = Registry()
    registry.record_version(version)
    supervisor = Supervisor(settings, registry, binary=binary)

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(registry, settings),
            host=settings.metrics_host,
            port=settings.metrics_port,
            log_config=None,
            timeout_graceful_shutdown=settings.shutdown_timeout_s,
        )
    )
    failures: List[ExporterError] = []

    def supervise() -> None:
        try:
            supervisor.run()
        except ExporterError as exc:
            failures.append(exc)
        finally:
            # Without fping there is nothing left to serve.
            server.should_exit = True

    def expire() -> None:
        logger.info("runtime limit of %ss reached, shutting down", settings.runtime_limit_s)
        server.should_exit = True

    worker = threading.Thread(target=supervise, name="fping-supervisor", daemon=True)
    worker.start()

    timer = None
    if settings.runtime_limit_s is not None:
        timer = threading.Timer(settings.runtime_limit_s, expire)
        timer.daemon = True
        timer.start()

    logger.info(
        "publishing metrics on http://%s:%s%s",
        settings.metrics_host,
        settings.metrics_port,
        settings.metrics_path,
    )
    try:
        server.run()
    finally:
        if timer is not None:
            timer.cancel()
        supervisor.shutdown()
        worker.join(timeout=settings.shutdown_grace_s + _JOIN_SLACK_S)

    if failures:
        # fping that cannot be relaunched after it already ran is a runtime failure.
        if isinstance(failures[0], SpawnFailure) and supervisor.launches == 0:
            return EXIT_STARTUP_FAILURE
        return EXIT_RUNTIME_FAILURE
    return EXIT_OK


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
