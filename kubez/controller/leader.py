# kubez/controller/leader.py
"""
Lease based leader election (coordination.k8s.io/v1).

Only one replica reconciles at a time. The elector:
 - acquires the Lease when it is absent, expired, or already held by us
 - renews it every retry_period
 - gives up leadership when renewals keep failing for renew_deadline
 - writes with the Lease's resourceVersion so two candidates never both win
 - releases the Lease on a clean shutdown so a standby takes over quickly
"""

from __future__ import annotations

import datetime
import logging
import socket
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from kubez.k8s import TRANSIENT_ERRORS, ApiException, is_conflict, is_not_found, meta, to_dict
from kubez.metrics import ControllerMetrics
from kubez.utils.time_utils import parse_iso8601, to_micro_time, utc_now

LOG = logging.getLogger("kubez.controller.leader")

def default_identity() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"

class LeaderElector:
    def __init__(
        self,
        coordination_api: Any,
        namespace: str,
        name: str,
        on_started_leading: Callable[[threading.Event], None],
        on_stopped_leading: Optional[Callable[[], None]] = None,
        identity: Optional[str] = None,
        lease_duration: float = 15.0,
        renew_deadline: float = 10.0,
        retry_period: float = 2.0,
        request_timeout: Optional[float] = None,
        metrics: Optional[ControllerMetrics] = None,
        now_fn: Callable[[], datetime.datetime] = utc_now,
    ):
        if renew_deadline >= lease_duration:
            raise ValueError("renew_deadline must be shorter than lease_duration")
        self.api = coordination_api
        self.namespace = namespace
        self.name = name
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self.identity = identity or default_identity()
        self.lease_duration = float(lease_duration)
        self.renew_deadline = float(renew_deadline)
        self.retry_period = float(retry_period)
        self.request_timeout = request_timeout
        self.metrics = metrics
        self.now_fn = now_fn
        self.observed_holder: Optional[str] = None
        self.leading = threading.Event()

    def _timeout(self) -> Dict[str, Any]:
        return {"_request_timeout": self.request_timeout} if self.request_timeout else {}

    def _lease_body(self, spec: Dict[str, Any], resource_version: Optional[str] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        return {"apiVersion": "coordination.k8s.io/v1", "kind": "Lease", "metadata": metadata, "spec": spec}

    # -------------------------
    # Lease operations
    # -------------------------
    def try_acquire_or_renew(self) -> bool:
        now = self.now_fn()
        stamp = to_micro_time(now)
        try:
            lease = to_dict(self.api.read_namespaced_lease(self.name, self.namespace, **self._timeout()))
        except ApiException as e:
            if not is_not_found(e):
                LOG.warning("Reading lease %s/%s failed: status %s", self.namespace, self.name, e.status)
                return False
            spec = {
                "holderIdentity": self.identity,
                "leaseDurationSeconds": int(self.lease_duration),
                "acquireTime": stamp,
                "renewTime": stamp,
                "leaseTransitions": 0,
            }
            return self._write(self.api.create_namespaced_lease, self.namespace, self._lease_body(spec))
        except TRANSIENT_ERRORS as e:
            LOG.warning("Reading lease %s/%s failed: %s", self.namespace, self.name, e)
            return False

        spec = dict(lease.get("spec") or {})
        holder = spec.get("holderIdentity") or ""
        self.observed_holder = holder or None
        renewed = parse_iso8601(spec.get("renewTime"))
        duration = spec.get("leaseDurationSeconds") or self.lease_duration
        expired = renewed is None or renewed + datetime.timedelta(seconds=float(duration)) <= now
        if holder and holder != self.identity and not expired:
            LOG.debug("Lease %s/%s held by %s", self.namespace, self.name, holder)
            return False

        if holder != self.identity:
            spec["leaseTransitions"] = int(spec.get("leaseTransitions") or 0) + 1
            spec["acquireTime"] = stamp
        spec.update({
            "holderIdentity": self.identity,
            "leaseDurationSeconds": int(self.lease_duration),
            "renewTime": stamp,
        })
        body = self._lease_body(spec, meta(lease).get("resourceVersion"))
        return self._write(self.api.replace_namespaced_lease, self.name, self.namespace, body)

    def _write(self, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            fn(*args, **self._timeout())
        except ApiException as e:
            if is_conflict(e):
                LOG.debug("Lost lease update race for %s/%s", self.namespace, self.name)
            else:
                LOG.warning("Writing lease %s/%s failed: status %s", self.namespace, self.name, e.status)
            return False
        except TRANSIENT_ERRORS as e:
            LOG.warning("Writing lease %s/%s failed: %s", self.namespace, self.name, e)
            return False
        self.observed_holder = self.identity
        return True

    def release(self) -> bool:
        """Hand the lease back by expiring it immediately. Best-effort."""
        try:
            lease = to_dict(self.api.read_namespaced_lease(self.name, self.namespace, **self._timeout()))
        except TRANSIENT_ERRORS as e:
            LOG.warning("Could not release lease %s/%s: %s", self.namespace, self.name, e)
            return False
        spec = dict(lease.get("spec") or {})
        if spec.get("holderIdentity") != self.identity:
            return False
        spec.update({"holderIdentity": "", "leaseDurationSeconds": 1, "renewTime": to_micro_time(self.now_fn())})
        return self._write(self.api.replace_namespaced_lease, self.name, self.namespace,
                           self._lease_body(spec, meta(lease).get("resourceVersion")))

    # -------------------------
    # Main loop
    # -------------------------
    def run(self, stop_event: threading.Event):
        LOG.info("Leader election for %s/%s as %s", self.namespace, self.name, self.identity)
        while not stop_event.is_set():
            if self.try_acquire_or_renew():
                break
            stop_event.wait(self.retry_period)
        if stop_event.is_set():
            return

        LOG.info("Became leader (%s)", self.identity)
        self.leading.set()
        if self.metrics:
            self.metrics.set_leader(True)
        lead_stop = threading.Event()
        worker = threading.Thread(target=self.on_started_leading, args=(lead_stop,), daemon=True, name="leader-work")
        worker.start()

        last_renew = self.now_fn()
        while not stop_event.wait(self.retry_period):
            if self.try_acquire_or_renew():
                last_renew = self.now_fn()
                continue
            if (self.now_fn() - last_renew).total_seconds() >= self.renew_deadline:
                LOG.error("Failed to renew lease %s/%s within %.1fs; stepping down", self.namespace, self.name, self.renew_deadline)
                break

        lead_stop.set()
        worker.join()
        self.leading.clear()
        if self.metrics:
            self.metrics.set_leader(False)
        if stop_event.is_set():
            self.release()
        LOG.info("Stopped leading (%s)", self.identity)
        if self.on_stopped_leading:
            self.on_stopped_leading()

__all__ = ["LeaderElector", "default_identity"]
