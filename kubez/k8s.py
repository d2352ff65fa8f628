# kubez/k8s.py
"""
Kubernetes client bootstrap and API helpers.

 - load_kube_config(): in-cluster config first, kubeconfig fallback
 - KubeClients: explicit bundle of the typed APIs the controller uses
 - WorkloadKind: the finite set of scalable source kinds and how to read/list them
 - error helpers: not-found / conflict / transient classification
 - to_dict(): model objects -> plain camelCase dicts (the wire representation)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import urllib3
from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

LOG = logging.getLogger("kubez.k8s")

# errors worth retrying with backoff; everything else is a bug
TRANSIENT_ERRORS = (ApiException, urllib3.exceptions.HTTPError, ConnectionError, TimeoutError)

def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404

def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409

def is_forbidden(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status in (401, 403)

def is_gone(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 410

# -------------------------
# Client bootstrap
# -------------------------
def load_kube_config(kubeconfig: Optional[str] = None) -> str:
    """
    Load cluster credentials into the kubernetes client's default configuration.

    With an explicit kubeconfig path that file is used. Otherwise the in-cluster
    service account is tried first, then ~/.kube/config. Returns the source used.
    """
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
        LOG.info("Loaded kubeconfig from %s", kubeconfig)
        return kubeconfig
    try:
        k8s_config.load_incluster_config()
        LOG.info("Loaded in-cluster Kubernetes config")
        return "in-cluster"
    except ConfigException:
        k8s_config.load_kube_config()
        LOG.info("Loaded kubeconfig for Kubernetes client")
        return "kubeconfig"

@dataclass
class KubeClients:
    """Typed API handles shared by every component. Built once at startup."""
    apps: Any
    core: Any
    autoscaling: Any
    coordination: Any = None

    @classmethod
    def from_config(cls, kubeconfig: Optional[str] = None) -> "KubeClients":
        load_kube_config(kubeconfig)
        api_client = k8s_client.ApiClient()
        return cls(
            apps=k8s_client.AppsV1Api(api_client),
            core=k8s_client.CoreV1Api(api_client),
            autoscaling=k8s_client.AutoscalingV2Api(api_client),
            coordination=k8s_client.CoordinationV1Api(api_client),
        )

# -------------------------
# Serialization
# -------------------------
_SERIALIZER = k8s_client.ApiClient()

def to_dict(obj: Any) -> Optional[Dict[str, Any]]:
    """
    Convert a kubernetes model (or an already plain dict) to its JSON form with
    camelCase keys, so callers never depend on the model classes.
    """
    if obj is None:
        return None
    return _SERIALIZER.sanitize_for_serialization(obj)

def meta(obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return (obj or {}).get("metadata") or {}

# -------------------------
# Workload kinds
# -------------------------
class WorkloadKind(str, enum.Enum):
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    REPLICATION_CONTROLLER = "ReplicationController"

    @property
    def api_version(self) -> str:
        return "v1" if self is WorkloadKind.REPLICATION_CONTROLLER else "apps/v1"

    def reader(self, clients: KubeClients) -> Callable[..., Any]:
        """read_namespaced_<kind>(name, namespace, **kw)"""
        return {
            WorkloadKind.DEPLOYMENT: clients.apps.read_namespaced_deployment,
            WorkloadKind.STATEFULSET: clients.apps.read_namespaced_stateful_set,
            WorkloadKind.REPLICATION_CONTROLLER: clients.core.read_namespaced_replication_controller,
        }[self]

    def lister(self, clients: KubeClients, namespace: str = "") -> Callable[..., Any]:
        """Cluster-wide list function, or the namespaced one when a namespace is given."""
        if namespace:
            return {
                WorkloadKind.DEPLOYMENT: clients.apps.list_namespaced_deployment,
                WorkloadKind.STATEFULSET: clients.apps.list_namespaced_stateful_set,
                WorkloadKind.REPLICATION_CONTROLLER: clients.core.list_namespaced_replication_controller,
            }[self]
        return {
            WorkloadKind.DEPLOYMENT: clients.apps.list_deployment_for_all_namespaces,
            WorkloadKind.STATEFULSET: clients.apps.list_stateful_set_for_all_namespaces,
            WorkloadKind.REPLICATION_CONTROLLER: clients.core.list_replication_controller_for_all_namespaces,
        }[self]

# lookup order when resolving a {namespace, name} key back to its source
WORKLOAD_PRIORITY = (WorkloadKind.DEPLOYMENT, WorkloadKind.STATEFULSET, WorkloadKind.REPLICATION_CONTROLLER)

@dataclass(frozen=True)
class WorkloadRef:
    """Read-only view of a source workload, taken from an authoritative API read."""
    kind: WorkloadKind
    namespace: str
    name: str
    uid: str
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def api_version(self) -> str:
        return self.kind.api_version

    @classmethod
    def from_object(cls, kind: WorkloadKind, obj: Any) -> "WorkloadRef":
        m = meta(to_dict(obj))
        return cls(
            kind=kind,
            namespace=m.get("namespace", ""),
            name=m.get("name", ""),
            uid=m.get("uid", ""),
            annotations=dict(m.get("annotations") or {}),
        )

    def involved_object(self) -> Dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind.value,
            "namespace": self.namespace,
            "name": self.name,
            "uid": self.uid,
        }

__all__ = [
    "ApiException",
    "KubeClients",
    "TRANSIENT_ERRORS",
    "WORKLOAD_PRIORITY",
    "WorkloadKind",
    "WorkloadRef",
    "is_conflict",
    "is_forbidden",
    "is_gone",
    "is_not_found",
    "load_kube_config",
    "meta",
    "to_dict",
]
