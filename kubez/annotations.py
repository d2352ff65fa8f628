# kubez/annotations.py
"""
Annotation parsing and validation.

Operators express scaling intent as annotations on a workload:

    hpa.caoyingjunz.autoscaler/minReplicas: "2"
    hpa.caoyingjunz.autoscaler/maxReplicas: "10"
    cpu.hpa.caoyingjunz.autoscaler/targetAverageUtilization: "80"

parse_annotations() projects that string map into a typed, validated
ScalingPolicy. Everything downstream of this module works on the typed form
only. Parsing is a pure function of the annotation map.
"""

from __future__ import annotations

import re
import enum
import decimal
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from kubernetes.utils import parse_quantity

from kubez.config import DEFAULT_ANNOTATION_ROOT

LOG = logging.getLogger("kubez.annotations")

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
DEFAULT_MIN_REPLICAS = 1

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")

class ValidationError(ValueError):
    """Annotations are present but malformed or contradictory. Never retried."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key
        self.message = message

class MetricType(str, enum.Enum):
    CPU = "cpu"
    MEMORY = "memory"
    EXTERNAL = "prometheus"

    @property
    def display(self) -> str:
        return {"cpu": "CPU", "memory": "Memory", "prometheus": "External"}[self.value]

# first match wins; only one metric type is ever honored
METRIC_PRIORITY: Tuple[MetricType, ...] = (MetricType.CPU, MetricType.MEMORY, MetricType.EXTERNAL)

@dataclass(frozen=True)
class AnnotationKeys:
    """Exact annotation keys recognized under a given root prefix."""
    root: str = DEFAULT_ANNOTATION_ROOT

    @property
    def min_replicas(self) -> str:
        return f"{self.root}/minReplicas"

    @property
    def max_replicas(self) -> str:
        return f"{self.root}/maxReplicas"

    def target_utilization(self, metric: MetricType) -> str:
        return f"{metric.value}.{self.root}/targetAverageUtilization"

    def target_value(self, metric: MetricType) -> str:
        return f"{metric.value}.{self.root}/targetAverageValue"

    def metric_name(self) -> str:
        return f"{MetricType.EXTERNAL.value}.{self.root}/metricName"

    def metric_keys(self, metric: MetricType) -> Tuple[str, ...]:
        keys = (self.target_utilization(metric), self.target_value(metric))
        if metric is MetricType.EXTERNAL:
            keys += (self.metric_name(),)
        return keys

    def all(self) -> Tuple[str, ...]:
        keys = (self.min_replicas, self.max_replicas)
        for metric in METRIC_PRIORITY:
            keys += self.metric_keys(metric)
        return keys

    def filter(self, annotations: Optional[Mapping[str, str]]) -> Dict[str, str]:
        """Return only the recognized entries of an annotation map."""
        recognized = set(self.all())
        return {k: v for k, v in (annotations or {}).items() if k in recognized}

DEFAULT_KEYS = AnnotationKeys()

@dataclass(frozen=True)
class ScalingPolicy:
    """
    Validated scaling intent. Exactly one of target_utilization (percent) or
    target_value (quantity string) is set; external policies carry metric_name.
    """
    metric_type: MetricType
    min_replicas: int
    max_replicas: int
    target_utilization: Optional[int] = None
    target_value: Optional[str] = None
    metric_name: Optional[str] = None

    def __post_init__(self):
        if (self.target_utilization is None) == (self.target_value is None):
            raise ValidationError("target", "exactly one of utilization or value target is required")
        if not 1 <= self.min_replicas <= self.max_replicas:
            raise ValidationError("replicas", f"require 1 <= minReplicas ({self.min_replicas}) <= maxReplicas ({self.max_replicas})")
        if self.metric_type is MetricType.EXTERNAL and not self.metric_name:
            raise ValidationError("metricName", "external metrics require a metric name")

    def describe(self) -> str:
        target = f"{self.target_utilization}%" if self.target_utilization is not None else self.target_value
        name = f" {self.metric_name}" if self.metric_name else ""
        return f"{self.metric_type.display}{name} target={target} min={self.min_replicas} max={self.max_replicas}"

# -------------------------
# Field parsers
# -------------------------
def _parse_int32(key: str, raw: str) -> int:
    if not isinstance(raw, str) or not _INT_PATTERN.fullmatch(raw):
        raise ValidationError(key, f"{raw!r} is not a base-10 integer")
    value = int(raw, 10)
    if not INT32_MIN <= value <= INT32_MAX:
        raise ValidationError(key, f"{raw!r} does not fit in a 32-bit integer")
    return value

def _parse_utilization(key: str, raw: str) -> int:
    value = _parse_int32(key, raw)
    if not 0 < value <= 100:
        raise ValidationError(key, f"utilization must be in (0, 100], got {value}")
    return value

def _parse_quantity(key: str, raw: str) -> str:
    try:
        amount = parse_quantity(raw)
    except (ValueError, TypeError, decimal.InvalidOperation) as e:
        raise ValidationError(key, f"{raw!r} is not a valid quantity") from e
    if not amount.is_finite():
        raise ValidationError(key, f"target value must be a finite quantity, got {raw!r}")
    if amount <= 0:
        raise ValidationError(key, f"target value must be positive, got {raw!r}")
    return raw

# -------------------------
# Entry point
# -------------------------
def select_metric(annotations: Mapping[str, str], keys: AnnotationKeys = DEFAULT_KEYS) -> Optional[MetricType]:
    for metric in METRIC_PRIORITY:
        if any(k in annotations for k in keys.metric_keys(metric)):
            return metric
    return None

def parse_annotations(annotations: Optional[Mapping[str, str]], keys: AnnotationKeys = DEFAULT_KEYS) -> Optional[ScalingPolicy]:
    """
    Translate a raw annotation map into a ScalingPolicy.

    Returns None when no recognized key is present ("no policy"). Raises
    ValidationError when recognized keys are present but malformed,
    incomplete or contradictory. Values are never clamped or defaulted except
    minReplicas, which defaults to 1 when absent.
    """
    relevant = keys.filter(annotations)
    if not relevant:
        return None

    metric = select_metric(relevant, keys)
    if metric is None:
        raise ValidationError(keys.target_utilization(MetricType.CPU), "a metric target annotation is required")
    ignored = [m.display for m in METRIC_PRIORITY if m is not metric and any(k in relevant for k in keys.metric_keys(m))]
    if ignored:
        LOG.debug("Metric %s selected; ignoring %s annotations", metric.display, ", ".join(ignored))

    raw_max = relevant.get(keys.max_replicas)
    if raw_max is None:
        raise ValidationError(keys.max_replicas, "maxReplicas is required")
    max_replicas = _parse_int32(keys.max_replicas, raw_max)
    if max_replicas < 1:
        raise ValidationError(keys.max_replicas, f"maxReplicas is required to be at least 1, got {max_replicas}")

    raw_min = relevant.get(keys.min_replicas)
    min_replicas = DEFAULT_MIN_REPLICAS if raw_min is None else _parse_int32(keys.min_replicas, raw_min)
    if min_replicas < 1:
        raise ValidationError(keys.min_replicas, f"minReplicas must be at least 1, got {min_replicas}")
    if min_replicas > max_replicas:
        raise ValidationError(keys.min_replicas, f"minReplicas ({min_replicas}) must not exceed maxReplicas ({max_replicas})")

    util_key, value_key = keys.target_utilization(metric), keys.target_value(metric)
    raw_util, raw_value = relevant.get(util_key), relevant.get(value_key)
    if raw_util is not None and raw_value is not None:
        raise ValidationError(util_key, f"conflicts with {value_key}; set only one target")

    metric_name = None
    if metric is MetricType.EXTERNAL:
        if raw_util is not None:
            raise ValidationError(util_key, "external metrics take an absolute targetAverageValue, not a percentage")
        metric_name = (relevant.get(keys.metric_name()) or "").strip()
        if not metric_name:
            raise ValidationError(keys.metric_name(), "external metrics require a metric name")

    if raw_util is not None:
        return ScalingPolicy(metric, min_replicas, max_replicas, target_utilization=_parse_utilization(util_key, raw_util))
    if raw_value is not None:
        return ScalingPolicy(metric, min_replicas, max_replicas, target_value=_parse_quantity(value_key, raw_value), metric_name=metric_name)
    raise ValidationError(util_key, f"a target annotation is required for {metric.display} metrics")

__all__ = [
    "AnnotationKeys",
    "DEFAULT_KEYS",
    "MetricType",
    "METRIC_PRIORITY",
    "ScalingPolicy",
    "ValidationError",
    "parse_annotations",
    "select_metric",
]
