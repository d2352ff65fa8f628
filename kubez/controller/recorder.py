# kubez/controller/recorder.py
"""Best-effort core/v1 Event recording against source workloads."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from kubez.config import COMPONENT_NAME
from kubez.k8s import TRANSIENT_ERRORS, WorkloadRef
from kubez.utils.time_utils import iso_now

LOG = logging.getLogger("kubez.controller.recorder")

NORMAL = "Normal"
WARNING = "Warning"

# event reasons
REASON_CREATED = "HPACreated"
REASON_UPDATED = "HPAUpdated"
REASON_DELETED = "HPADeleted"
REASON_RECOVERED = "HPARecovered"
REASON_INVALID = "InvalidAnnotations"
REASON_NOT_MANAGED = "HPANotManaged"

class EventRecorder:
    """
    Writes Events so `kubectl describe` on the workload explains what the
    controller did. Failures are logged and never propagate.
    """

    def __init__(self, core_api: Any, component: str = COMPONENT_NAME, request_timeout: Optional[float] = None):
        self.core_api = core_api
        self.component = component
        self.request_timeout = request_timeout

    def build(self, ref: WorkloadRef, event_type: str, reason: str, message: str) -> Dict[str, Any]:
        now = iso_now()
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{ref.name}.", "namespace": ref.namespace},
            "involvedObject": ref.involved_object(),
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    def record(self, ref: WorkloadRef, event_type: str, reason: str, message: str) -> bool:
        body = self.build(ref, event_type, reason, message)
        kwargs = {"_request_timeout": self.request_timeout} if self.request_timeout else {}
        try:
            self.core_api.create_namespaced_event(ref.namespace, body, **kwargs)
            return True
        except TRANSIENT_ERRORS as e:
            LOG.warning("Failed to record %s event %s on %s %s/%s: %s",
                        event_type, reason, ref.kind.value, ref.namespace, ref.name, e)
            return False

    def normal(self, ref: WorkloadRef, reason: str, message: str) -> bool:
        return self.record(ref, NORMAL, reason, message)

    def warning(self, ref: WorkloadRef, reason: str, message: str) -> bool:
        return self.record(ref, WARNING, reason, message)

__all__ = [
    "EventRecorder",
    "NORMAL",
    "WARNING",
    "REASON_CREATED",
    "REASON_DELETED",
    "REASON_INVALID",
    "REASON_NOT_MANAGED",
    "REASON_RECOVERED",
    "REASON_UPDATED",
]
