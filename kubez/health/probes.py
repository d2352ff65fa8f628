# kubez/health/probes.py
"""
Kubez Health & Probes

Provides:
 - /healthz  -> liveness: the process is up and serving
 - /readyz   -> readiness: every watcher finished its first list and at least
                one reconcile worker is alive (503 otherwise)
 - /metrics  -> Prometheus exposition of the kubez registry

The app is built around a status callable so it can report on a running
controller, a standby replica waiting for the leader lease, or a test double.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kubez.config import COMPONENT_NAME
from kubez.metrics import CONTENT_TYPE_LATEST, render_latest
from kubez.utils.time_utils import iso_now

LOG = logging.getLogger("kubez.health")

StatusProvider = Callable[[], Dict[str, Any]]

class HealthReport(BaseModel):
    app: str = COMPONENT_NAME
    ts: str
    status: str = Field(..., description="ok | not-ready")
    details: Dict[str, Any] = Field(default_factory=dict)

def create_app(status_provider: StatusProvider) -> FastAPI:
    router = APIRouter(tags=["health"])

    @router.get("/healthz", summary="Liveness probe")
    async def healthz():
        return {"status": "alive", "ts": iso_now()}

    @router.get("/readyz", summary="Readiness probe")
    async def readyz():
        details = status_provider() or {}
        ready = bool(details.get("ready"))
        report = HealthReport(ts=iso_now(), status="ok" if ready else "not-ready", details=details)
        return JSONResponse(report.model_dump(), status_code=200 if ready else 503)

    @router.get("/metrics", summary="Prometheus metrics")
    async def metrics():
        return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)

    app = FastAPI(title=COMPONENT_NAME, docs_url=None, redoc_url=None)
    app.include_router(router)
    return app

def start_health_server(app: FastAPI, port: int, host: str = "0.0.0.0") -> Optional[uvicorn.Server]:
    """
    Run the probe app with uvicorn on a daemon thread. Port 0 disables it.
    Set `server.should_exit = True` to stop it.
    """
    if not port:
        LOG.info("Health server disabled")
        return None
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", log_config=None, access_log=False)
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True, name="health-server")
    thread.start()
    LOG.info("Health server listening on %s:%d", host, port)
    return server

__all__ = ["HealthReport", "create_app", "start_health_server"]
