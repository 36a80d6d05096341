#!/usr/bin/env python3
"""Entry point: validate config, probe nvidia-smi, then serve with uvicorn."""
import sys
from typing import Sequence

import structlog
import uvicorn
from pydantic import ValidationError

from gpu_exporter.app import create_app
from gpu_exporter.collector import Collector, CollectorUnavailable
from gpu_exporter.config import load_settings
from gpu_exporter.logging_config import configure_logging
from gpu_exporter.metrics import GPUMetrics
from gpu_exporter.poller import Poller

log = structlog.get_logger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        settings = load_settings(argv)
    except ValidationError as exc:
        configure_logging()
        log.error("invalid_configuration", errors=exc.errors(include_url=False))
        return 1

    configure_logging(settings.log_level, settings.log_format)

    collector = Collector.from_settings(settings)
    try:
        collector.check_availability()
    except CollectorUnavailable as exc:
        log.error("collector_unavailable", error=str(exc))
        return 1

    # Registered exactly once, before the poll loop exists.
    metrics = GPUMetrics()
    poller = Poller(
        collector,
        metrics,
        interval=settings.interval,
        track_system_info=settings.track_system_info,
    )
    app = create_app(metrics, poller)

    log.info(
        "server_starting",
        host=settings.host,
        port=settings.port,
        hostname=collector.hostname,
        interval=settings.interval,
    )
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        workers=1,          # one process owns the registry
        log_config=None,    # we handle logging via structlog
        access_log=False,
        server_header=False,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )
    log.info("server_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
