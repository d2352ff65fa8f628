"""
Kubez Pytest Configuration
--------------------------

Centralized fixtures and fakes for all tests.

Features:
 - FakeKube: in-memory stand-in for the typed kubernetes APIs (apps, core,
   autoscaling, coordination) with ApiException status codes, resourceVersion
   conflicts, delete preconditions, merge patches and call recording
 - FakeWatch: scripted replacement for kubernetes.watch.Watch
 - Auto-clean environment variables
 - Logging config to keep CI output clean
"""

import os
import re
import copy
import uuid
import logging
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from kubernetes.client.rest import ApiException

from kubez.annotations import AnnotationKeys
from kubez.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from kubez.controller.reconciler import Reconciler, RecoveryTracker
from kubez.controller.recorder import EventRecorder
from kubez.k8s import KubeClients

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("kubez.tests")
LOG.setLevel(logging.WARNING)

ROOT = "hpa.caoyingjunz.autoscaler"
KEYS = AnnotationKeys(ROOT)

# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """
    Clear KUBEZ_* variables that could leak in from the developer's shell.
    """
    for var in list(os.environ):
        if var.startswith("KUBEZ_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TZ", "UTC")
    yield

@pytest.fixture(autouse=True, scope="session")
def silence_external_lib_logs():
    """
    Reduce log noise from the kubernetes client, FastAPI, and HTTPX during test runs.
    """
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    yield

# -----------------------------------------------------------------------------
# Fake Kubernetes API
# -----------------------------------------------------------------------------
_KINDS = {
    "deployment": "Deployment",
    "stateful_set": "StatefulSet",
    "replication_controller": "ReplicationController",
    "horizontal_pod_autoscaler": "HorizontalPodAutoscaler",
    "lease": "Lease",
    "event": "Event",
}
_SUFFIX = "|".join(sorted(_KINDS, key=len, reverse=True))
_NAMESPACED = re.compile(rf"^(read|create|patch|replace|delete|list)_namespaced_({_SUFFIX})$")
_CLUSTER_LIST = re.compile(rf"^list_({_SUFFIX})_for_all_namespaces$")

WRITE_VERBS = ("create", "patch", "replace", "delete")

def merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for k, v in patch.items():
        if v is None:
            result.pop(k, None)
        else:
            result[k] = merge_patch(result.get(k), v)
    return result

def _labels_match(obj: Dict[str, Any], selector: Optional[str]) -> bool:
    if not selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in selector.split(","):
        k, _, v = term.partition("=")
        if labels.get(k.strip()) != v.strip():
            return False
    return True

class FakeKube:
    """
    One object plays every typed API; methods are resolved from the
    kubernetes client's naming scheme (read_namespaced_deployment, ...).
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str, str, str]] = []
        self.call_kwargs: List[Dict[str, Any]] = []
        self._rv = itertools.count(1)
        self._failures: Dict[Tuple[str, str], List[BaseException]] = {}

    # -------------------------
    # Test helpers
    # -------------------------
    def next_rv(self) -> str:
        return str(next(self._rv))

    def put(self, kind: str, namespace: str, name: str, annotations: Optional[Dict[str, str]] = None,
            labels: Optional[Dict[str, str]] = None, spec: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        obj = {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": str(uuid.uuid4()),
                "resourceVersion": self.next_rv(),
                "annotations": dict(annotations or {}),
                "labels": dict(labels or {}),
            },
            "spec": copy.deepcopy(spec or {}),
        }
        self.objects[(kind, namespace, name)] = obj
        return obj

    def add_workload(self, namespace: str, name: str, annotations: Optional[Dict[str, str]] = None, kind: str = "Deployment"):
        return self.put(kind, namespace, name, annotations=annotations)

    def set_annotations(self, kind: str, namespace: str, name: str, annotations: Dict[str, str]):
        obj = self.objects[(kind, namespace, name)]
        obj["metadata"]["annotations"] = dict(annotations)
        obj["metadata"]["resourceVersion"] = self.next_rv()

    def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.objects.get((kind, namespace, name))

    def hpa(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.get("HorizontalPodAutoscaler", namespace, name)

    def remove(self, kind: str, namespace: str, name: str):
        self.objects.pop((kind, namespace, name), None)

    def fail_next(self, verb: str, kind: str, exc: BaseException, times: int = 1):
        self._failures.setdefault((verb, kind), []).extend([exc] * times)

    def writes(self, kind: str = "HorizontalPodAutoscaler") -> List[Tuple[str, str, str, str]]:
        return [c for c in self.calls if c[0] in WRITE_VERBS and c[1] == kind]

    def clients(self) -> KubeClients:
        return KubeClients(apps=self, core=self, autoscaling=self, coordination=self)

    # -------------------------
    # Dispatch
    # -------------------------
    def __getattr__(self, attr: str) -> Callable[..., Any]:
        m = _NAMESPACED.match(attr)
        if m:
            verb, kind = m.group(1), _KINDS[m.group(2)]
            return lambda *a, **kw: self._call(verb, kind, True, a, kw)
        m = _CLUSTER_LIST.match(attr)
        if m:
            kind = _KINDS[m.group(1)]
            return lambda *a, **kw: self._call("list", kind, False, a, kw)
        raise AttributeError(attr)

    def _call(self, verb: str, kind: str, namespaced: bool, args: Tuple[Any, ...], kwargs: Dict[str, Any]):
        self.call_kwargs.append(dict(kwargs))
        queued = self._failures.get((verb, kind))
        if queued:
            self.calls.append((verb, kind, "", ""))
            raise queued.pop(0)
        if verb == "list":
            ns = args[0] if namespaced else ""
            self.calls.append((verb, kind, ns, ""))
            return self._list(kind, ns, kwargs.get("label_selector"))
        if verb == "create":
            ns, body = args[0], args[1]
            return self._create(kind, ns, body)
        name, ns = args[0], args[1]
        self.calls.append((verb, kind, ns, name))
        if verb == "read":
            return copy.deepcopy(self._require(kind, ns, name))
        if verb == "patch":
            return self._patch(kind, ns, name, args[2] if len(args) > 2 else kwargs["body"])
        if verb == "replace":
            return self._replace(kind, ns, name, args[2] if len(args) > 2 else kwargs["body"])
        if verb == "delete":
            return self._delete(kind, ns, name, kwargs.get("body"))
        raise AssertionError(f"unsupported verb {verb}")

    def _require(self, kind: str, ns: str, name: str) -> Dict[str, Any]:
        obj = self.objects.get((kind, ns, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return obj

    def _list(self, kind: str, ns: str, selector: Optional[str]) -> Dict[str, Any]:
        items = [
            copy.deepcopy(o) for (k, n, _), o in sorted(self.objects.items())
            if k == kind and (not ns or n == ns) and _labels_match(o, selector)
        ]
        return {"items": items, "metadata": {"resourceVersion": self.next_rv()}}

    def _create(self, kind: str, ns: str, body: Dict[str, Any]):
        obj = copy.deepcopy(body)
        m = obj.setdefault("metadata", {})
        if not m.get("name") and m.get("generateName"):
            m["name"] = f"{m['generateName']}{uuid.uuid4().hex[:10]}"
        self.calls.append(("create", kind, ns, m.get("name", "")))
        if kind == "Event":
            self.events.append(obj)
            return copy.deepcopy(obj)
        if (kind, ns, m["name"]) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        m["namespace"] = ns
        m["uid"] = str(uuid.uuid4())
        m["resourceVersion"] = self.next_rv()
        self.objects[(kind, ns, m["name"])] = obj
        return copy.deepcopy(obj)

    def _check_rv(self, current: Dict[str, Any], body: Dict[str, Any]):
        want = (body.get("metadata") or {}).get("resourceVersion")
        if want and want != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")

    def _patch(self, kind: str, ns: str, name: str, body: Dict[str, Any]):
        current = self._require(kind, ns, name)
        self._check_rv(current, body)
        updated = merge_patch(current, body)
        updated["metadata"]["resourceVersion"] = self.next_rv()
        self.objects[(kind, ns, name)] = updated
        return copy.deepcopy(updated)

    def _replace(self, kind: str, ns: str, name: str, body: Dict[str, Any]):
        current = self._require(kind, ns, name)
        self._check_rv(current, body)
        updated = copy.deepcopy(body)
        updated.setdefault("metadata", {}).update({
            "name": name, "namespace": ns, "uid": current["metadata"]["uid"], "resourceVersion": self.next_rv(),
        })
        self.objects[(kind, ns, name)] = updated
        return copy.deepcopy(updated)

    def _delete(self, kind: str, ns: str, name: str, body: Optional[Dict[str, Any]]):
        current = self._require(kind, ns, name)
        pre = (body or {}).get("preconditions") or {}
        m = current["metadata"]
        if (pre.get("uid") and pre["uid"] != m["uid"]) or (pre.get("resourceVersion") and pre["resourceVersion"] != m["resourceVersion"]):
            raise ApiException(status=409, reason="Precondition failed")
        del self.objects[(kind, ns, name)]
        return {"status": "Success"}

# -----------------------------------------------------------------------------
# Scripted watch
# -----------------------------------------------------------------------------
class FakeWatch:
    def __init__(self, script: List[Any], log: List[Dict[str, Any]]):
        self.script = script
        self.log = log
        self.stopped = False

    def stream(self, func, *args, **kwargs):
        self.log.append(dict(kwargs))
        for item in self.script:
            if self.stopped:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    def stop(self):
        self.stopped = True

class FakeWatchFactory:
    """
    Hands out one FakeWatch per script. Once the scripts run out, on_exhausted
    is invoked (typically the watcher's stop) and empty streams follow.
    """

    def __init__(self, scripts: List[List[Any]], on_exhausted: Optional[Callable[[], None]] = None):
        self.scripts = list(scripts)
        self.on_exhausted = on_exhausted
        self.stream_kwargs: List[Dict[str, Any]] = []

    def __call__(self) -> FakeWatch:
        if self.scripts:
            return FakeWatch(self.scripts.pop(0), self.stream_kwargs)
        if self.on_exhausted:
            self.on_exhausted()
        return FakeWatch([], self.stream_kwargs)

def watch_event(etype: str, namespace: str, name: str, rv: str = "100", labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    obj = {"metadata": {"namespace": namespace, "name": name, "resourceVersion": rv, "labels": labels or {}}}
    return {"type": etype, "object": obj, "raw_object": obj}

# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def fake_kube() -> FakeKube:
    return FakeKube()

@pytest.fixture
def clients(fake_kube) -> KubeClients:
    return fake_kube.clients()

@pytest.fixture
def recorder(fake_kube) -> EventRecorder:
    return EventRecorder(fake_kube)

@pytest.fixture
def recovery() -> RecoveryTracker:
    return RecoveryTracker()

@pytest.fixture
def reconciler(clients, recorder, recovery) -> Reconciler:
    return Reconciler(clients, recorder, keys=KEYS, recovery=recovery, request_timeout=5.0)

@pytest.fixture
def cpu_annotations() -> Dict[str, str]:
    return {
        f"cpu.{ROOT}/targetAverageUtilization": "80",
        f"{ROOT}/maxReplicas": "10",
    }

def managed_labels() -> Dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
