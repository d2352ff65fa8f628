# tests/test_ingestion.py
"""
Event ingestion tests: decoding, fan-in to the queue, recovery marking, and
the list/watch loop of ResourceWatcher driven by a scripted watch.
"""

import pytest
from kubernetes.client.rest import ApiException

from conftest import FakeWatchFactory, managed_labels, watch_event
from kubez.controller.events import EventIngestion, EventType, ResourceKind, WatchEvent, WorkloadKey, decode
from kubez.controller.informer import ResourceWatcher
from kubez.queue.workqueue import RateLimitingQueue

@pytest.fixture
def queue():
    q = RateLimitingQueue()
    yield q
    q.shut_down()

@pytest.fixture
def ingestion(queue, recovery):
    return EventIngestion(queue, recovery=recovery)

def _drain(queue):
    keys = []
    while True:
        key, _ = queue.get(timeout=0.01)
        if key is None:
            return keys
        keys.append(key)
        queue.done(key)

# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------
def test_decode_uses_identity_only():
    event = decode(ResourceKind.DEPLOYMENT, watch_event("MODIFIED", "ns", "web"))
    assert event == WatchEvent(ResourceKind.DEPLOYMENT, EventType.MODIFIED, WorkloadKey("ns", "web"))

def test_decode_falls_back_to_model_objects():
    from kubernetes.client import V1Deployment, V1ObjectMeta
    raw = {"type": "ADDED", "object": V1Deployment(metadata=V1ObjectMeta(namespace="ns", name="api"))}
    assert decode(ResourceKind.DEPLOYMENT, raw).key == WorkloadKey("ns", "api")

@pytest.mark.parametrize("raw", [
    {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "5"}}},
    {"type": "ADDED", "object": {"metadata": {"name": "no-namespace"}}},
])
def test_decode_ignores_changeless_notifications(raw):
    assert decode(ResourceKind.DEPLOYMENT, raw) is None

def test_workload_key_parse_and_str():
    key = WorkloadKey.parse("team-a/web")
    assert key == WorkloadKey("team-a", "web")
    assert str(key) == "team-a/web"
    with pytest.raises(ValueError):
        WorkloadKey.parse("web")

# -----------------------------------------------------------------------------
# Fan-in
# -----------------------------------------------------------------------------
def test_duplicate_events_collapse_into_one_key(ingestion, queue):
    for etype in ("ADDED", "MODIFIED", "MODIFIED"):
        ingestion.handle_raw(ResourceKind.DEPLOYMENT, watch_event(etype, "ns", "web"))
    assert _drain(queue) == [WorkloadKey("ns", "web")]

def test_hpa_deletion_marks_recovery(ingestion, queue, recovery):
    ingestion.handle_raw(ResourceKind.HPA, watch_event("DELETED", "ns", "web", labels=managed_labels()))
    assert recovery.is_marked(WorkloadKey("ns", "web"))
    assert _drain(queue) == [WorkloadKey("ns", "web")]

def test_workload_deletion_does_not_mark_recovery(ingestion, queue, recovery):
    ingestion.handle_raw(ResourceKind.DEPLOYMENT, watch_event("DELETED", "ns", "web"))
    assert len(recovery) == 0
    assert len(queue) == 1

# -----------------------------------------------------------------------------
# Watcher loop
# -----------------------------------------------------------------------------
def _watcher(fake_kube, ingestion, scripts, **kw):
    watcher = ResourceWatcher(
        ResourceKind.DEPLOYMENT, fake_kube.list_deployment_for_all_namespaces, ingestion,
        resync_seconds=0, watch_timeout_seconds=5, **kw,
    )
    watcher.watch_factory = FakeWatchFactory(scripts, on_exhausted=watcher.stop)
    return watcher

def test_initial_list_then_watch(fake_kube, ingestion, queue):
    fake_kube.add_workload("ns", "a")
    fake_kube.add_workload("ns", "b")
    watcher = _watcher(fake_kube, ingestion, [[watch_event("ADDED", "ns", "c", rv="77")]])
    watcher.run()

    assert watcher.ready.is_set()
    assert set(_drain(queue)) == {WorkloadKey("ns", "a"), WorkloadKey("ns", "b"), WorkloadKey("ns", "c")}
    streams = watcher.watch_factory.stream_kwargs
    # the watch resumes from the list's resourceVersion, then from the last event seen
    assert streams[0]["resource_version"] == "3"
    assert streams[1]["resource_version"] == "77"

def test_gone_triggers_relist(fake_kube, ingestion, queue):
    fake_kube.add_workload("ns", "a")
    gone = ApiException(status=410, reason="Expired")
    watcher = _watcher(fake_kube, ingestion, [[gone]])
    watcher.run()
    lists = [c for c in fake_kube.calls if c[0] == "list"]
    assert len(lists) == 2
    assert not watcher.failed

def test_error_notification_with_410_relists(fake_kube, ingestion):
    error = {"type": "ERROR", "raw_object": {"kind": "Status", "code": 410, "message": "too old resource version"}}
    watcher = _watcher(fake_kube, ingestion, [[error]])
    watcher.run()
    assert len([c for c in fake_kube.calls if c[0] == "list"]) == 2

def test_forbidden_stops_watcher(fake_kube, ingestion):
    fake_kube.fail_next("list", "Deployment", ApiException(status=403, reason="Forbidden"))
    watcher = _watcher(fake_kube, ingestion, [])
    watcher.run()
    assert watcher.failed
    assert not watcher.ready.is_set()

def test_label_selector_is_applied(fake_kube, ingestion, queue):
    fake_kube.put("HorizontalPodAutoscaler", "ns", "mine", labels=managed_labels())
    fake_kube.put("HorizontalPodAutoscaler", "ns", "theirs")
    watcher = ResourceWatcher(
        ResourceKind.HPA, fake_kube.list_horizontal_pod_autoscaler_for_all_namespaces, ingestion,
        label_selector="app.kubernetes.io/managed-by=kubez-autoscaler", resync_seconds=0,
    )
    watcher.watch_factory = FakeWatchFactory([], on_exhausted=watcher.stop)
    watcher.run()
    assert _drain(queue) == [WorkloadKey("ns", "mine")]
    assert watcher.watch_factory.stream_kwargs[0]["label_selector"] == "app.kubernetes.io/managed-by=kubez-autoscaler"

def test_namespaced_watch_passes_namespace(fake_kube, ingestion, queue):
    fake_kube.add_workload("team-a", "web")
    fake_kube.add_workload("team-b", "web")
    watcher = ResourceWatcher(
        ResourceKind.DEPLOYMENT, fake_kube.list_namespaced_deployment, ingestion, list_args=("team-a",), resync_seconds=0,
    )
    watcher.watch_factory = FakeWatchFactory([], on_exhausted=watcher.stop)
    watcher.run()
    assert _drain(queue) == [WorkloadKey("team-a", "web")]
