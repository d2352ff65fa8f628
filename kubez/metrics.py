# kubez/metrics.py
"""
Kubez Metrics
-------------

Features:
 - Prometheus metric definitions on a dedicated registry
 - ControllerMetrics recorder used by the queue, watchers and reconciler
 - start_metrics_server() helper (background thread)
 - render_latest() for serving the exposition from the health app
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, start_http_server
from prometheus_client.exposition import CONTENT_TYPE_LATEST

LOG = logging.getLogger("kubez.metrics")

# -----------------------------------------------------------------------------
# Prometheus metric definitions (central registry)
# -----------------------------------------------------------------------------
REGISTRY = CollectorRegistry(auto_describe=False)

# Reconciler
RECONCILE_TOTAL = Counter("kubez_reconcile_total", "Reconciliations by outcome", ["action"], registry=REGISTRY)
RECONCILE_ERRORS = Counter("kubez_reconcile_errors_total", "Failed reconciliations", ["kind"], registry=REGISTRY)
RECONCILE_DURATION = Histogram(
    "kubez_reconcile_duration_seconds", "Time spent in a single reconciliation",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10), registry=REGISTRY,
)
RECOVERIES_TOTAL = Counter("kubez_recoveries_total", "Derived HPAs recreated after out-of-band deletion", registry=REGISTRY)
WORKER_CRASHES = Counter("kubez_worker_crashes_total", "Worker threads stopped by an unexpected exception", registry=REGISTRY)
# Queue
WORKQUEUE_DEPTH = Gauge("kubez_workqueue_depth", "Keys waiting to be processed", registry=REGISTRY)
WORKQUEUE_ADDS = Counter("kubez_workqueue_adds_total", "Keys added to the work queue", registry=REGISTRY)
WORKQUEUE_RETRIES = Counter("kubez_workqueue_retries_total", "Rate limited requeues", registry=REGISTRY)
# Watches
WATCH_EVENTS = Counter("kubez_watch_events_total", "Watch notifications received", ["resource", "type"], registry=REGISTRY)
WATCH_ERRORS = Counter("kubez_watch_errors_total", "Watch stream failures", ["resource"], registry=REGISTRY)
# Leadership
LEADER = Gauge("kubez_leader", "1 while this replica holds the leader lease", registry=REGISTRY)

class ControllerMetrics:
    """
    Thin recorder facade so components never touch the metric objects directly.
    """

    def record_reconcile(self, action: str, seconds: float):
        RECONCILE_TOTAL.labels(action=action).inc()
        RECONCILE_DURATION.observe(seconds)

    def record_error(self, kind: str):
        RECONCILE_ERRORS.labels(kind=kind).inc()

    def record_recovery(self):
        RECOVERIES_TOTAL.inc()

    def record_worker_crash(self):
        WORKER_CRASHES.inc()

    def record_add(self):
        WORKQUEUE_ADDS.inc()

    def record_retry(self):
        WORKQUEUE_RETRIES.inc()

    def set_depth(self, depth: int):
        WORKQUEUE_DEPTH.set(int(depth))

    def record_watch_event(self, resource: str, event_type: str):
        WATCH_EVENTS.labels(resource=resource, type=event_type).inc()

    def record_watch_error(self, resource: str):
        WATCH_ERRORS.labels(resource=resource).inc()

    def set_leader(self, leading: bool):
        LEADER.set(1 if leading else 0)

# Convenience module-level recorder
metrics = ControllerMetrics()

def render_latest() -> bytes:
    return generate_latest(REGISTRY)

# -----------------------------------------------------------------------------
# Prometheus server starter
# -----------------------------------------------------------------------------
_server_lock = threading.Lock()
_server_started = False

def start_metrics_server(port: int, addr: str = "0.0.0.0") -> bool:
    """
    Serve REGISTRY on addr:port from a daemon thread. Port 0 disables the
    server. Returns True when a server was started by this call.
    """
    global _server_started
    if not port:
        LOG.info("Metrics server disabled")
        return False
    with _server_lock:
        if _server_started:
            return False
        start_http_server(port, addr, registry=REGISTRY)
        _server_started = True
    LOG.info("Prometheus metrics HTTP server listening on %s:%d", addr, port)
    return True

__all__ = [
    "CONTENT_TYPE_LATEST",
    "ControllerMetrics",
    "REGISTRY",
    "metrics",
    "render_latest",
    "start_metrics_server",
]
