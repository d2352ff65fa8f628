# kubez/controller/reconciler.py
"""
Diff-and-apply reconciliation of derived HPAs.

For one WorkloadKey the Reconciler:
  1. re-reads the source workload (Deployment, StatefulSet, ReplicationController)
  2. deletes the derived HPA when the source or its policy is gone
  3. records a Warning event and stops when the annotations are invalid
  4. never touches an HPA of the same name that it does not manage
  5. creates a missing HPA (reported as RECOVERED after an out-of-band delete)
  6. patches only the changed spec fields, guarded by resourceVersion

Transient API errors propagate; the worker decides whether to retry.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Dict, Optional, Set

from kubez.annotations import DEFAULT_KEYS, AnnotationKeys, ValidationError, parse_annotations
from kubez.controller.events import WorkloadKey
from kubez.controller import recorder as rec
from kubez.hpa import build_autoscaler, build_patch, desired_spec, diff_spec, is_managed
from kubez.k8s import TRANSIENT_ERRORS, WORKLOAD_PRIORITY, ApiException, KubeClients, WorkloadRef, is_not_found, meta, to_dict
from kubez.metrics import ControllerMetrics
from kubez.utils.logger import StructuredLoggerAdapter

LOG = logging.getLogger("kubez.controller.reconciler")

class ReconcileAction(str, enum.Enum):
    CREATED = "created"
    RECOVERED = "recovered"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    NONE = "none"
    INVALID = "invalid"
    UNMANAGED = "unmanaged"

class RecoveryTracker:
    """
    Keys whose derived HPA was observed being deleted.

    Deletions issued by the reconciler itself are remembered by uid so their
    watch notification does not count as an out-of-band delete.
    """

    def __init__(self):
        self._keys: Set[WorkloadKey] = set()
        self._own_deletes: Dict[WorkloadKey, str] = {}
        self._lock = threading.Lock()

    def mark(self, key: WorkloadKey, uid: Optional[str] = None) -> bool:
        """Mark key for recovery. Returns False when uid is our own delete."""
        with self._lock:
            if uid and self._own_deletes.get(key) == uid:
                del self._own_deletes[key]
                return False
            self._keys.add(key)
            return True

    def expect_delete(self, key: WorkloadKey, uid: Optional[str]):
        if not uid:
            return
        with self._lock:
            self._own_deletes[key] = uid

    def cancel_delete(self, key: WorkloadKey, uid: Optional[str]):
        with self._lock:
            if uid and self._own_deletes.get(key) == uid:
                del self._own_deletes[key]

    def pop(self, key: WorkloadKey) -> bool:
        with self._lock:
            if key in self._keys:
                self._keys.discard(key)
                return True
            return False

    def is_marked(self, key: WorkloadKey) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

class Reconciler:
    def __init__(
        self,
        clients: KubeClients,
        recorder: rec.EventRecorder,
        keys: AnnotationKeys = DEFAULT_KEYS,
        recovery: Optional[RecoveryTracker] = None,
        request_timeout: Optional[float] = 30.0,
        metrics: Optional[ControllerMetrics] = None,
    ):
        self.clients = clients
        self.recorder = recorder
        self.keys = keys
        self.recovery = recovery if recovery is not None else RecoveryTracker()
        self.request_timeout = request_timeout
        self.metrics = metrics
        self.log = StructuredLoggerAdapter(LOG, {"component": "reconciler"})

    def _timeout(self) -> Dict[str, Any]:
        return {"_request_timeout": self.request_timeout} if self.request_timeout else {}

    # -------------------------
    # Reads
    # -------------------------
    def resolve_source(self, key: WorkloadKey) -> Optional[WorkloadRef]:
        """
        Find the workload behind a key. Kinds are tried in priority order; the
        first one carrying recognized annotations wins, else the first that exists.
        """
        first: Optional[WorkloadRef] = None
        for kind in WORKLOAD_PRIORITY:
            try:
                obj = kind.reader(self.clients)(key.name, key.namespace, **self._timeout())
            except ApiException as e:
                if is_not_found(e):
                    continue
                raise
            ref = WorkloadRef.from_object(kind, obj)
            if self.keys.filter(ref.annotations):
                return ref
            if first is None:
                first = ref
        return first

    def get_hpa(self, key: WorkloadKey) -> Optional[Dict[str, Any]]:
        try:
            obj = self.clients.autoscaling.read_namespaced_horizontal_pod_autoscaler(key.name, key.namespace, **self._timeout())
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return to_dict(obj)

    # -------------------------
    # Writes
    # -------------------------
    def _create(self, key: WorkloadKey, body: Dict[str, Any]):
        self.clients.autoscaling.create_namespaced_horizontal_pod_autoscaler(key.namespace, body, **self._timeout())

    def _patch(self, key: WorkloadKey, body: Dict[str, Any]):
        self.clients.autoscaling.patch_namespaced_horizontal_pod_autoscaler(key.name, key.namespace, body, **self._timeout())

    def _delete(self, key: WorkloadKey, current: Dict[str, Any]) -> bool:
        m = meta(current)
        uid = m.get("uid")
        body = {"preconditions": {"uid": uid, "resourceVersion": m.get("resourceVersion")}}
        # registered before the call: the DELETED notification can beat the response
        self.recovery.expect_delete(key, uid)
        try:
            self.clients.autoscaling.delete_namespaced_horizontal_pod_autoscaler(key.name, key.namespace, body=body, **self._timeout())
        except ApiException as e:
            self.recovery.cancel_delete(key, uid)
            if is_not_found(e):
                return False
            raise
        except TRANSIENT_ERRORS:
            self.recovery.cancel_delete(key, uid)
            raise
        return True

    def _delete_if_present(self, key: WorkloadKey, source: Optional[WorkloadRef], why: str) -> ReconcileAction:
        current = self.get_hpa(key)
        if current is None:
            return ReconcileAction.NONE
        if not is_managed(current):
            self.log.debug("HPA %s is not managed by kubez; leaving it alone", key, extra={"key": str(key)})
            return ReconcileAction.NONE
        if not self._delete(key, current):
            return ReconcileAction.NONE
        self.log.info("Deleted HPA %s (%s)", key, why, extra={"key": str(key)})
        if source is not None:
            self.recorder.normal(source, rec.REASON_DELETED, f"Deleted HorizontalPodAutoscaler {key.name}: {why}")
        return ReconcileAction.DELETED

    # -------------------------
    # Entry point
    # -------------------------
    def reconcile(self, key: WorkloadKey) -> ReconcileAction:
        recovering = self.recovery.pop(key)
        try:
            return self._reconcile(key, recovering)
        except BaseException:
            if recovering:
                self.recovery.mark(key)
            raise

    def _reconcile(self, key: WorkloadKey, recovering: bool) -> ReconcileAction:
        extra = {"key": str(key)}
        source = self.resolve_source(key)
        if source is None:
            return self._delete_if_present(key, None, "source workload no longer exists")

        try:
            policy = parse_annotations(source.annotations, self.keys)
        except ValidationError as e:
            self.log.warning("Invalid autoscaling annotations on %s %s: %s", source.kind.value, key, e, extra=extra)
            self.recorder.warning(source, rec.REASON_INVALID, str(e))
            return ReconcileAction.INVALID

        if policy is None:
            return self._delete_if_present(key, source, "autoscaling annotations removed")

        current = self.get_hpa(key)
        if current is not None and not is_managed(current):
            self.log.warning("HPA %s exists but is not managed by kubez; skipping", key, extra=extra)
            self.recorder.warning(source, rec.REASON_NOT_MANAGED,
                                  f"HorizontalPodAutoscaler {key.name} already exists and is not managed by kubez-autoscaler")
            return ReconcileAction.UNMANAGED

        if current is None:
            self._create(key, build_autoscaler(policy, source))
            if recovering:
                self.log.info("Recovered deleted HPA %s (%s)", key, policy.describe(), extra=extra)
                self.recorder.normal(source, rec.REASON_RECOVERED, f"Recreated HorizontalPodAutoscaler {key.name}: {policy.describe()}")
                if self.metrics:
                    self.metrics.record_recovery()
                return ReconcileAction.RECOVERED
            self.log.info("Created HPA %s (%s)", key, policy.describe(), extra=extra)
            self.recorder.normal(source, rec.REASON_CREATED, f"Created HorizontalPodAutoscaler {key.name}: {policy.describe()}")
            return ReconcileAction.CREATED

        changed = diff_spec(desired_spec(policy, source), current.get("spec"))
        if not changed:
            self.log.debug("HPA %s is up to date", key, extra=extra)
            return ReconcileAction.UNCHANGED

        self._patch(key, build_patch(changed, meta(current).get("resourceVersion")))
        fields = ", ".join(sorted(changed))
        self.log.info("Updated HPA %s fields [%s] (%s)", key, fields, policy.describe(), extra=extra)
        self.recorder.normal(source, rec.REASON_UPDATED, f"Updated HorizontalPodAutoscaler {key.name} ({fields}): {policy.describe()}")
        return ReconcileAction.UPDATED

__all__ = ["ReconcileAction", "Reconciler", "RecoveryTracker"]
