# kubez/controller/autoscaler_controller.py
"""
Kubez Autoscaler Controller

Features:
 - Fixed-size pool of worker threads: get -> reconcile -> done / requeue
 - One watcher thread per resource type (three workload kinds + managed HPAs)
 - Transient API failures requeue the key with per-key exponential backoff
 - Invalid annotations are dropped (the reconciler already recorded an Event)
 - Unexpected exceptions stop only the worker that hit them; readiness
   reports how many workers are still alive
 - Graceful shutdown via threading.Event
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from kubez.annotations import AnnotationKeys
from kubez.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE, ControllerSettings
from kubez.controller.events import EventIngestion, ResourceKind, WorkloadKey
from kubez.controller.informer import ResourceWatcher
from kubez.controller.reconciler import Reconciler, RecoveryTracker
from kubez.controller.recorder import EventRecorder
from kubez.k8s import TRANSIENT_ERRORS, WORKLOAD_PRIORITY, KubeClients
from kubez.metrics import ControllerMetrics
from kubez.queue.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue
from kubez.utils.time_utils import Timer

LOG = logging.getLogger("kubez.controller")

WORKER_JOIN_TIMEOUT = 30.0
WATCHER_JOIN_TIMEOUT = 5.0

class AutoscalerController:
    def __init__(
        self,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        watchers: Optional[List[ResourceWatcher]] = None,
        workers: int = 5,
        metrics: Optional[ControllerMetrics] = None,
    ):
        self.queue = queue
        self.reconciler = reconciler
        self.watchers = list(watchers or [])
        self.workers = int(workers)
        self.metrics = metrics
        self._worker_threads: List[threading.Thread] = []
        self._stopped = threading.Event()

    # -------------------------
    # Worker
    # -------------------------
    def process_next_work_item(self) -> bool:
        """
        Handle one key. Returns False once the queue is shut down. Unexpected
        exceptions propagate to the caller after the key has been released.
        """
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            with Timer() as timer:
                action = self.reconciler.reconcile(key)
        except TRANSIENT_ERRORS as e:
            if self.metrics:
                self.metrics.record_error("transient")
            LOG.warning("Reconcile of %s failed (attempt %d), requeueing: %s",
                        key, self.queue.num_requeues(key) + 1, _describe(e))
            self.queue.add_rate_limited(key)
            return True
        except Exception:
            if self.metrics:
                self.metrics.record_error("crash")
            LOG.exception("Unexpected error reconciling %s", key)
            self.queue.forget(key)
            raise
        finally:
            self.queue.done(key)
        self.queue.forget(key)
        if self.metrics:
            self.metrics.record_reconcile(action.value, timer.elapsed)
        LOG.debug("Reconciled %s: %s in %.3fs", key, action.value, timer.elapsed)
        return True

    def _run_worker(self, name: str):
        LOG.info("Worker %s started", name)
        try:
            while self.process_next_work_item():
                pass
        except Exception:
            if self.metrics:
                self.metrics.record_worker_crash()
            LOG.error("Worker %s stopped after an unexpected error; %d workers remain", name, self.live_workers() - 1)
            return
        LOG.info("Worker %s exiting", name)

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self):
        for w in self.watchers:
            w.start()
        for i in range(self.workers):
            t = threading.Thread(target=self._run_worker, args=(f"w{i}",), daemon=True, name=f"reconcile-w{i}")
            t.start()
            self._worker_threads.append(t)
        LOG.info("Controller started with %d workers and %d watchers", self.workers, len(self.watchers))

    def run(self, stop_event: threading.Event):
        """Start everything and block until stop_event is set, then shut down."""
        self.start()
        stop_event.wait()
        self.shutdown()

    def shutdown(self):
        if self._stopped.is_set():
            return
        self._stopped.set()
        LOG.info("Controller shutting down")
        self.queue.shut_down()
        for w in self.watchers:
            w.stop()
        for t in self._worker_threads:
            t.join(WORKER_JOIN_TIMEOUT)
        for w in self.watchers:
            w.join(WATCHER_JOIN_TIMEOUT)
        LOG.info("Controller stopped")

    # -------------------------
    # Health
    # -------------------------
    def live_workers(self) -> int:
        return sum(1 for t in self._worker_threads if t.is_alive())

    def is_ready(self) -> bool:
        if self._stopped.is_set():
            return False
        watchers_ok = all(w.ready.is_set() and not w.failed for w in self.watchers)
        return watchers_ok and self.live_workers() > 0

    def status(self) -> Dict[str, Any]:
        return {
            "ready": self.is_ready(),
            "workers_alive": self.live_workers(),
            "workers": self.workers,
            "queue_depth": len(self.queue),
            "watchers": {w.name: {"ready": w.ready.is_set(), "failed": w.failed} for w in self.watchers},
        }

def _describe(exc: BaseException) -> str:
    status = getattr(exc, "status", None)
    if status is not None:
        return f"status {status}: {getattr(exc, 'reason', '')}"
    return repr(exc)

def build_controller(
    clients: KubeClients,
    settings: ControllerSettings,
    metrics: Optional[ControllerMetrics] = None,
    watch_factory=None,
) -> AutoscalerController:
    """Wire queue, recorder, reconciler, ingestion and watchers from settings."""
    queue: RateLimitingQueue[WorkloadKey] = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(settings.backoff_base_seconds, settings.backoff_max_seconds),
        metrics=metrics,
    )
    recovery = RecoveryTracker()
    recorder = EventRecorder(clients.core, request_timeout=settings.request_timeout_seconds)
    reconciler = Reconciler(
        clients,
        recorder,
        keys=AnnotationKeys(settings.annotation_root),
        recovery=recovery,
        request_timeout=settings.request_timeout_seconds,
        metrics=metrics,
    )
    ingestion = EventIngestion(queue, recovery=recovery, metrics=metrics)

    ns = settings.watch_namespace
    list_args = (ns,) if ns else ()
    common: Dict[str, Any] = dict(
        resync_seconds=settings.resync_seconds,
        watch_timeout_seconds=settings.watch_timeout_seconds,
        request_timeout_seconds=settings.request_timeout_seconds,
        metrics=metrics,
    )
    if watch_factory is not None:
        common["watch_factory"] = watch_factory

    watchers = [
        ResourceWatcher(ResourceKind(kind.value), kind.lister(clients, ns), ingestion, list_args=list_args, **common)
        for kind in WORKLOAD_PRIORITY
    ]
    hpa_list = (clients.autoscaling.list_namespaced_horizontal_pod_autoscaler if ns
                else clients.autoscaling.list_horizontal_pod_autoscaler_for_all_namespaces)
    watchers.append(ResourceWatcher(
        ResourceKind.HPA, hpa_list, ingestion, list_args=list_args,
        label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}", **common,
    ))
    return AutoscalerController(queue, reconciler, watchers, workers=settings.workers, metrics=metrics)

__all__ = ["AutoscalerController", "build_controller"]
