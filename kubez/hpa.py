# kubez/hpa.py
"""
Derived HorizontalPodAutoscaler construction and diffing.

build_autoscaler() renders an autoscaling/v2 HPA body for a ScalingPolicy and
its source workload. diff_spec() compares a desired spec with what the API
server returned and yields only the top-level spec fields that changed, with
quantities compared by value so server-side canonicalization ("1000m" -> "1")
never causes a spurious update.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.utils import parse_quantity

from kubez.annotations import MetricType, ScalingPolicy
from kubez.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from kubez.k8s import WorkloadRef, meta

LOG = logging.getLogger("kubez.hpa")

HPA_API_VERSION = "autoscaling/v2"
HPA_KIND = "HorizontalPodAutoscaler"

# spec fields owned by this controller; anything else (e.g. behavior) is left alone
MANAGED_SPEC_FIELDS = ("scaleTargetRef", "minReplicas", "maxReplicas", "metrics")

# -------------------------
# Builders
# -------------------------
def _metric_target(policy: ScalingPolicy) -> Dict[str, Any]:
    if policy.target_utilization is not None:
        return {"type": "Utilization", "averageUtilization": int(policy.target_utilization)}
    return {"type": "AverageValue", "averageValue": policy.target_value}

def build_metrics(policy: ScalingPolicy) -> List[Dict[str, Any]]:
    target = _metric_target(policy)
    if policy.metric_type is MetricType.EXTERNAL:
        return [{
            "type": "External",
            "external": {
                "metric": {"name": policy.metric_name},
                "target": target,
            },
        }]
    return [{
        "type": "Resource",
        "resource": {
            "name": policy.metric_type.value,
            "target": target,
        },
    }]

def desired_spec(policy: ScalingPolicy, source: WorkloadRef) -> Dict[str, Any]:
    return {
        "scaleTargetRef": {
            "apiVersion": source.api_version,
            "kind": source.kind.value,
            "name": source.name,
        },
        "minReplicas": int(policy.min_replicas),
        "maxReplicas": int(policy.max_replicas),
        "metrics": build_metrics(policy),
    }

def build_autoscaler(policy: ScalingPolicy, source: WorkloadRef) -> Dict[str, Any]:
    """
    Full HPA body for creation. Named after the source and owned by it, so
    the garbage collector removes it together with the workload.
    """
    body = {
        "apiVersion": HPA_API_VERSION,
        "kind": HPA_KIND,
        "metadata": {
            "name": source.name,
            "namespace": source.namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
        "spec": desired_spec(policy, source),
    }
    if source.uid:
        body["metadata"]["ownerReferences"] = [{
            "apiVersion": source.api_version,
            "kind": source.kind.value,
            "name": source.name,
            "uid": source.uid,
        }]
    return body

def is_managed(hpa: Optional[Dict[str, Any]]) -> bool:
    labels = meta(hpa).get("labels") or {}
    return labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE

# -------------------------
# Normalization & diff
# -------------------------
def _quantity(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return parse_quantity(value)
    except (ValueError, TypeError):
        # unparseable values only ever compare equal to themselves
        return value

def _normalize_target(target: Optional[Dict[str, Any]]) -> Tuple[Any, ...]:
    target = target or {}
    return (
        target.get("type"),
        target.get("averageUtilization"),
        _quantity(target.get("averageValue")),
        _quantity(target.get("value")),
    )

def _normalize_metric(metric: Dict[str, Any]) -> Tuple[Any, ...]:
    mtype = metric.get("type")
    if mtype == "Resource":
        res = metric.get("resource") or {}
        return (mtype, res.get("name"), _normalize_target(res.get("target")))
    if mtype == "External":
        ext = metric.get("external") or {}
        m = ext.get("metric") or {}
        return (mtype, m.get("name"), repr(m.get("selector")), _normalize_target(ext.get("target")))
    # kinds this controller never writes; compare structurally
    return (mtype, repr(sorted((metric or {}).items())))

def _normalize_ref(ref: Optional[Dict[str, Any]]) -> Tuple[Any, ...]:
    ref = ref or {}
    return (ref.get("apiVersion"), ref.get("kind"), ref.get("name"))

def _normalize(field_name: str, value: Any) -> Any:
    if field_name == "metrics":
        return [_normalize_metric(m) for m in (value or [])]
    if field_name == "scaleTargetRef":
        return _normalize_ref(value)
    if field_name == "minReplicas":
        # the API server defaults an omitted minReplicas to 1
        return 1 if value is None else int(value)
    return value

def diff_spec(desired: Dict[str, Any], observed: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Return the subset of `desired` whose managed fields differ from `observed`.
    An empty dict means the live object already matches.
    """
    observed = observed or {}
    changed: Dict[str, Any] = {}
    for name in MANAGED_SPEC_FIELDS:
        if _normalize(name, desired.get(name)) != _normalize(name, observed.get(name)):
            changed[name] = desired.get(name)
    return changed

def build_patch(changed: Dict[str, Any], resource_version: Optional[str]) -> Dict[str, Any]:
    """
    Patch body carrying only the changed fields. The kubernetes client sends a
    dict body as a strategic merge patch; metrics has no patch merge key, so the
    list is replaced as a whole. Including resourceVersion makes
    the API server reject the write with 409 if the object moved underneath us.
    """
    body: Dict[str, Any] = {"spec": dict(changed)}
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    return body

__all__ = [
    "HPA_API_VERSION",
    "HPA_KIND",
    "MANAGED_SPEC_FIELDS",
    "build_autoscaler",
    "build_metrics",
    "build_patch",
    "desired_spec",
    "diff_spec",
    "is_managed",
]
