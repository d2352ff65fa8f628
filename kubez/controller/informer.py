# kubez/controller/informer.py
"""
List-then-watch loops feeding EventIngestion.

Each ResourceWatcher runs on its own daemon thread:
 - initial list enqueues every object and records the list resourceVersion
 - the watch resumes from that resourceVersion; the stream is reopened when
   the server-side timeout ends it
 - 410 Gone (expired resourceVersion) triggers an immediate re-list
 - other failures back off exponentially with jitter (1s -> 30s)
 - 401/403 stop the watcher: retrying cannot fix missing RBAC
 - every resync period a full re-list re-enqueues everything
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import urllib3
from kubernetes import watch as k8s_watch

from kubez.controller.events import EventIngestion, EventType, ResourceKind, WatchEvent, decode, object_key
from kubez.k8s import ApiException, is_forbidden, is_gone, meta, to_dict
from kubez.metrics import ControllerMetrics
from kubez.utils.time_utils import Timer, compute_backoff

LOG = logging.getLogger("kubez.controller.informer")

WATCH_BACKOFF_BASE = 1.0
WATCH_BACKOFF_MAX = 30.0

class ResourceWatcher:
    """
    Keep one resource type flowing into the work queue.

    list_fn is a kubernetes list function (e.g. AppsV1Api.list_deployment_for_all_namespaces);
    list_args are positional arguments for it (the namespace for namespaced lists).
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        ingestion: EventIngestion,
        list_args: Tuple[Any, ...] = (),
        label_selector: Optional[str] = None,
        resync_seconds: float = 300.0,
        watch_timeout_seconds: int = 300,
        request_timeout_seconds: float = 30.0,
        metrics: Optional[ControllerMetrics] = None,
        watch_factory: Callable[[], Any] = k8s_watch.Watch,
    ):
        self.kind = kind
        self.list_fn = list_fn
        self.list_args = tuple(list_args)
        self.ingestion = ingestion
        self.label_selector = label_selector
        self.resync_seconds = float(resync_seconds)
        self.watch_timeout_seconds = int(watch_timeout_seconds)
        self.request_timeout_seconds = float(request_timeout_seconds)
        self.metrics = metrics
        self.watch_factory = watch_factory

        self.ready = threading.Event()
        self.failed = False
        self._stop = threading.Event()
        self._watch = None
        self._thread: Optional[threading.Thread] = None
        self._resource_version: Optional[str] = None

    @property
    def name(self) -> str:
        return self.kind.value

    def _selector_kwargs(self) -> Dict[str, Any]:
        return {"label_selector": self.label_selector} if self.label_selector else {}

    # -------------------------
    # List
    # -------------------------
    def list_and_enqueue(self) -> Optional[str]:
        """Enqueue every listed object; returns the list's resourceVersion."""
        result = to_dict(self.list_fn(*self.list_args, _request_timeout=self.request_timeout_seconds, **self._selector_kwargs()))
        items = result.get("items") or []
        for item in items:
            key = object_key(item)
            if key is not None:
                self.ingestion.handle(WatchEvent(self.kind, EventType.ADDED, key))
        rv = meta(result).get("resourceVersion")
        LOG.info("Listed %d %s objects (resourceVersion=%s)", len(items), self.name, rv)
        return rv

    # -------------------------
    # Watch
    # -------------------------
    def _watch_until_resync(self, resource_version: Optional[str]):
        """Stream events until stop, resync deadline, or an error is raised."""
        timer = Timer()
        with timer:
            while not self._stop.is_set():
                timeout = self.watch_timeout_seconds
                if self.resync_seconds > 0:
                    remaining = self.resync_seconds - timer.elapsed
                    if remaining <= 0:
                        LOG.debug("%s resync due", self.name)
                        return
                    timeout = max(1, min(timeout, int(remaining) + 1))
                kwargs = dict(self._selector_kwargs(), timeout_seconds=timeout,
                              _request_timeout=timeout + self.request_timeout_seconds)
                if resource_version:
                    kwargs["resource_version"] = resource_version
                self._watch = self.watch_factory()
                if self._stop.is_set():
                    break
                for raw in self._watch.stream(self.list_fn, *self.list_args, **kwargs):
                    if self._stop.is_set():
                        break
                    resource_version = self._handle_raw(raw) or resource_version
                self._resource_version = resource_version

    def _handle_raw(self, raw: Dict[str, Any]) -> Optional[str]:
        if raw.get("type") == "ERROR":
            status = raw.get("raw_object") or to_dict(raw.get("object")) or {}
            raise ApiException(status=status.get("code"), reason=status.get("message") or status.get("reason"))
        obj = raw.get("raw_object")
        if obj is None:
            obj = to_dict(raw.get("object"))
        event = decode(self.kind, {"type": raw.get("type"), "raw_object": obj})
        if event is not None:
            self.ingestion.handle(event)
        return meta(obj).get("resourceVersion")

    # -------------------------
    # Main loop
    # -------------------------
    def run(self):
        attempt = 0
        LOG.info("Watcher for %s starting (selector=%s)", self.name, self.label_selector or "-")
        while not self._stop.is_set():
            try:
                rv = self.list_and_enqueue()
                self.ready.set()
                attempt = 0
                self._watch_until_resync(rv)
            except ApiException as e:
                if is_gone(e):
                    LOG.info("%s watch expired (410 Gone); re-listing", self.name)
                    continue
                if self.metrics:
                    self.metrics.record_watch_error(self.name)
                if is_forbidden(e):
                    LOG.error("Not allowed to list/watch %s (status %s); check RBAC. Watcher stopped.", self.name, e.status)
                    self.failed = True
                    return
                delay = compute_backoff(attempt, base=WATCH_BACKOFF_BASE, max_delay=WATCH_BACKOFF_MAX)
                LOG.warning("%s watch failed (status %s: %s); retrying in %.1fs", self.name, e.status, e.reason, delay)
                attempt += 1
                self._stop.wait(delay)
            except (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
                if self.metrics:
                    self.metrics.record_watch_error(self.name)
                delay = compute_backoff(attempt, base=WATCH_BACKOFF_BASE, max_delay=WATCH_BACKOFF_MAX)
                LOG.warning("%s watch connection error (%s); retrying in %.1fs", self.name, e, delay)
                attempt += 1
                self._stop.wait(delay)
        LOG.info("Watcher for %s stopped", self.name)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, daemon=True, name=f"watch-{self.name}")
        self._thread.start()
        return self._thread

    def stop(self):
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

__all__ = ["ResourceWatcher", "WATCH_BACKOFF_BASE", "WATCH_BACKOFF_MAX"]
