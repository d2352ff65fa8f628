# tests/test_annotations.py
"""
Annotation parser / validator tests.

Covers presence detection, metric selection priority, replica defaults and
bounds, strict integer parsing, utilization range and external metrics.
"""

import pytest

from kubez.annotations import (
    DEFAULT_KEYS,
    AnnotationKeys,
    MetricType,
    ScalingPolicy,
    ValidationError,
    parse_annotations,
    select_metric,
)

ROOT = "hpa.caoyingjunz.autoscaler"
MIN = f"{ROOT}/minReplicas"
MAX = f"{ROOT}/maxReplicas"
CPU_UTIL = f"cpu.{ROOT}/targetAverageUtilization"
CPU_VALUE = f"cpu.{ROOT}/targetAverageValue"
MEM_UTIL = f"memory.{ROOT}/targetAverageUtilization"
MEM_VALUE = f"memory.{ROOT}/targetAverageValue"
PROM_UTIL = f"prometheus.{ROOT}/targetAverageUtilization"
PROM_VALUE = f"prometheus.{ROOT}/targetAverageValue"
PROM_NAME = f"prometheus.{ROOT}/metricName"

# -----------------------------------------------------------------------------
# Presence
# -----------------------------------------------------------------------------
@pytest.mark.parametrize("annotations", [None, {}, {"deployment.kubernetes.io/revision": "3", "team": "web"}])
def test_no_recognized_key_means_no_policy(annotations):
    assert parse_annotations(annotations) is None

def test_keys_under_another_root_are_ignored():
    assert parse_annotations({f"cpu.other.example/targetAverageUtilization": "80", "other.example/maxReplicas": "3"}) is None

def test_custom_root_is_honored():
    keys = AnnotationKeys("hpa.example.com")
    policy = parse_annotations({"cpu.hpa.example.com/targetAverageUtilization": "50", "hpa.example.com/maxReplicas": "4"}, keys)
    assert policy == ScalingPolicy(MetricType.CPU, 1, 4, target_utilization=50)

# -----------------------------------------------------------------------------
# Happy paths
# -----------------------------------------------------------------------------
def test_cpu_utilization_example():
    policy = parse_annotations({CPU_UTIL: "80", MAX: "10"})
    assert policy.metric_type is MetricType.CPU
    assert policy.target_utilization == 80
    assert policy.target_value is None
    assert (policy.min_replicas, policy.max_replicas) == (1, 10)

def test_min_replicas_defaults_to_one():
    assert parse_annotations({MAX: "3", MEM_UTIL: "70"}).min_replicas == 1

def test_memory_average_value():
    policy = parse_annotations({MIN: "2", MAX: "6", MEM_VALUE: "512Mi"})
    assert policy == ScalingPolicy(MetricType.MEMORY, 2, 6, target_value="512Mi")

def test_external_metric_requires_name_and_value():
    policy = parse_annotations({MAX: "5", PROM_VALUE: "100", PROM_NAME: "http_requests"})
    assert policy.metric_type is MetricType.EXTERNAL
    assert policy.metric_name == "http_requests"
    assert policy.target_value == "100"

def test_min_equal_to_max_is_valid():
    assert parse_annotations({MIN: "4", MAX: "4", CPU_UTIL: "50"}).min_replicas == 4

def test_leading_plus_and_zero_padding_are_base10():
    policy = parse_annotations({MIN: "+02", MAX: "010", CPU_UTIL: "080"})
    assert (policy.min_replicas, policy.max_replicas, policy.target_utilization) == (2, 10, 80)

# -----------------------------------------------------------------------------
# Metric selection
# -----------------------------------------------------------------------------
def test_cpu_wins_over_memory_and_external():
    ann = {MAX: "5", MEM_UTIL: "60", CPU_UTIL: "70", PROM_VALUE: "10", PROM_NAME: "qps"}
    assert select_metric(ann) is MetricType.CPU
    assert parse_annotations(ann).metric_type is MetricType.CPU

def test_memory_wins_over_external():
    ann = {MAX: "5", PROM_VALUE: "10", PROM_NAME: "qps", MEM_VALUE: "1Gi"}
    assert parse_annotations(ann).metric_type is MetricType.MEMORY

def test_invalid_lower_priority_metric_is_ignored():
    assert parse_annotations({MAX: "5", CPU_UTIL: "70", MEM_UTIL: "not-a-number"}).target_utilization == 70

# -----------------------------------------------------------------------------
# Validation errors
# -----------------------------------------------------------------------------
def test_max_replicas_zero_is_rejected():
    with pytest.raises(ValidationError) as exc:
        parse_annotations({CPU_UTIL: "80", MAX: "0"})
    assert "maxReplicas is required" in str(exc.value)
    assert exc.value.key == MAX

def test_missing_max_replicas():
    with pytest.raises(ValidationError, match="maxReplicas is required"):
        parse_annotations({CPU_UTIL: "80", MIN: "2"})

def test_replica_keys_without_metric_are_rejected():
    with pytest.raises(ValidationError, match="metric target annotation is required"):
        parse_annotations({MAX: "3"})

def test_min_greater_than_max_is_not_clamped():
    with pytest.raises(ValidationError, match="must not exceed"):
        parse_annotations({MIN: "5", MAX: "3", CPU_UTIL: "80"})

@pytest.mark.parametrize("raw", ["0", "-1"])
def test_min_replicas_below_one(raw):
    with pytest.raises(ValidationError):
        parse_annotations({MIN: raw, MAX: "3", CPU_UTIL: "80"})

@pytest.mark.parametrize("raw", ["ten", "1.5", "", " 3", "0x10", "2147483648"])
def test_malformed_integers(raw):
    with pytest.raises(ValidationError):
        parse_annotations({MAX: raw, CPU_UTIL: "80"})

@pytest.mark.parametrize("raw", ["0", "101", "-5"])
def test_utilization_out_of_range(raw):
    with pytest.raises(ValidationError, match="utilization"):
        parse_annotations({MAX: "3", CPU_UTIL: raw})

def test_utilization_and_value_conflict():
    with pytest.raises(ValidationError, match="conflicts"):
        parse_annotations({MAX: "3", CPU_UTIL: "50", CPU_VALUE: "500m"})

@pytest.mark.parametrize("raw", ["lots", "0", "-1Gi", "NaN", "sNaN", "Infinity", "inf"])
def test_bad_quantities(raw):
    with pytest.raises(ValidationError):
        parse_annotations({MAX: "3", MEM_VALUE: raw})

def test_external_rejects_percentage():
    with pytest.raises(ValidationError, match="absolute"):
        parse_annotations({MAX: "3", PROM_UTIL: "50", PROM_NAME: "qps"})

def test_external_requires_metric_name():
    with pytest.raises(ValidationError, match="metric name"):
        parse_annotations({MAX: "3", PROM_VALUE: "20"})

def test_metric_name_alone_selects_external_and_needs_target():
    with pytest.raises(ValidationError, match="target annotation is required"):
        parse_annotations({MAX: "3", PROM_NAME: "qps"})

# -----------------------------------------------------------------------------
# Model invariants
# -----------------------------------------------------------------------------
def test_policy_rejects_inverted_bounds():
    with pytest.raises(ValidationError):
        ScalingPolicy(MetricType.CPU, 3, 2, target_utilization=50)

def test_policy_requires_exactly_one_target():
    with pytest.raises(ValidationError):
        ScalingPolicy(MetricType.CPU, 1, 2)
    with pytest.raises(ValidationError):
        ScalingPolicy(MetricType.CPU, 1, 2, target_utilization=50, target_value="1")

def test_parsing_is_deterministic():
    ann = {MIN: "2", MAX: "9", MEM_VALUE: "256Mi", CPU_VALUE: "250m"}
    assert parse_annotations(ann) == parse_annotations(dict(reversed(list(ann.items()))))

def test_describe_mentions_target_and_bounds():
    text = parse_annotations({CPU_UTIL: "80", MAX: "10"}).describe()
    assert "CPU" in text and "80%" in text and "max=10" in text

def test_filter_keeps_only_recognized_keys():
    ann = {CPU_UTIL: "80", "unrelated": "x", PROM_NAME: "qps"}
    assert DEFAULT_KEYS.filter(ann) == {CPU_UTIL: "80", PROM_NAME: "qps"}

@pytest.mark.parametrize("raw", ["NaN", "Infinity"])
def test_non_finite_external_target_is_rejected(raw):
    with pytest.raises(ValidationError, match="finite"):
        parse_annotations({MAX: "3", PROM_VALUE: raw, PROM_NAME: "qps"})
