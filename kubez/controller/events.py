# kubez/controller/events.py
"""
Watch event decoding and fan-in.

Raw watch notifications are decoded exactly once, here, into WatchEvent
values. Only the object's identity (namespace/name and uid) survives decoding; the
reconciler always re-reads authoritative state from the API server.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kubez.k8s import WorkloadKind, meta, to_dict
from kubez.metrics import ControllerMetrics

LOG = logging.getLogger("kubez.controller.events")

class ResourceKind(str, enum.Enum):
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    REPLICATION_CONTROLLER = "ReplicationController"
    HPA = "HorizontalPodAutoscaler"

    @property
    def workload_kind(self) -> Optional[WorkloadKind]:
        if self is ResourceKind.HPA:
            return None
        return WorkloadKind(self.value)

class EventType(str, enum.Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"

@dataclass(frozen=True, order=True)
class WorkloadKey:
    """Queue key. A source workload and its derived HPA share the same key."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "WorkloadKey":
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"key must look like <namespace>/<name>, got {value!r}")
        return cls(namespace, name)

@dataclass(frozen=True)
class WatchEvent:
    kind: ResourceKind
    type: EventType
    key: WorkloadKey
    uid: Optional[str] = None

def object_key(obj: Any) -> Optional[WorkloadKey]:
    m = meta(obj if isinstance(obj, dict) else to_dict(obj))
    namespace, name = m.get("namespace"), m.get("name")
    if not namespace or not name:
        return None
    return WorkloadKey(namespace, name)

def decode(kind: ResourceKind, raw: Dict[str, Any]) -> Optional[WatchEvent]:
    """
    Decode one notification from kubernetes.watch.Watch().stream().

    Returns None for notification types that carry no object change
    (BOOKMARK) or for objects without a namespaced identity. ERROR
    notifications are handled by the watcher before they get here.
    """
    try:
        etype = EventType(raw.get("type"))
    except ValueError:
        LOG.debug("Ignoring %s notification of type %r", kind.value, raw.get("type"))
        return None
    obj = raw.get("raw_object")
    if obj is None:
        obj = raw.get("object")
    key = object_key(obj)
    if key is None:
        LOG.warning("Dropping %s %s notification without namespace/name", kind.value, etype.value)
        return None
    uid = meta(obj if isinstance(obj, dict) else to_dict(obj)).get("uid")
    return WatchEvent(kind, etype, key, uid or None)

class EventIngestion:
    """
    Single fan-in point between watchers and the work queue.

    DELETED notifications for a derived HPA mark the key for recovery before
    enqueueing it, so the reconciler can tell a recreation apart from a
    first-time creation.
    """

    def __init__(self, queue, recovery=None, metrics: Optional[ControllerMetrics] = None):
        self.queue = queue
        self.recovery = recovery
        self.metrics = metrics

    def on_change(self, kind: ResourceKind, key: WorkloadKey):
        LOG.debug("Enqueue %s (from %s)", key, kind.value)
        self.queue.add(key)

    def handle(self, event: WatchEvent):
        if self.metrics:
            self.metrics.record_watch_event(event.kind.value, event.type.value)
        if event.kind is ResourceKind.HPA and event.type is EventType.DELETED and self.recovery is not None:
            if self.recovery.mark(event.key, event.uid):
                LOG.info("Derived HPA %s deleted; scheduling recovery check", event.key)
            else:
                LOG.debug("Derived HPA %s deleted by this controller", event.key)
        self.on_change(event.kind, event.key)

    def handle_raw(self, kind: ResourceKind, raw: Dict[str, Any]) -> Optional[WatchEvent]:
        event = decode(kind, raw)
        if event is not None:
            self.handle(event)
        return event

__all__ = [
    "EventIngestion",
    "EventType",
    "ResourceKind",
    "WatchEvent",
    "WorkloadKey",
    "decode",
    "object_key",
]
