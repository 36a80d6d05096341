"""
HTTP surface of the exporter.

  - GET /metrics  Prometheus text exposition of the exporter's own registry
  - GET /health   small JSON liveness object; other methods get 405

The poll loop is started from the lifespan hook so the registry is fully
built before the first tick and before the first scrape is served.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gpu_exporter.metrics import GPUMetrics
from gpu_exporter.poller import Poller

log = structlog.get_logger(__name__)


def create_app(metrics: GPUMetrics, poller: Poller | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if poller is not None:
            poller.start()
        log.info("exporter_started")

        yield

        if poller is not None:
            poller.stop()
        log.info("exporter_stopped")

    app = FastAPI(
        title="NVIDIA GPU exporter",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.metrics = metrics

    @app.get("/health", include_in_schema=False)
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    return app
