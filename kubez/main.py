# kubez/main.py
"""
kubez-autoscaler entrypoint.

Usage:
  kubez-autoscaler                          # settings from KUBEZ_* env / .env
  kubez-autoscaler --workers 10 --namespace team-a
  kubez-autoscaler --leader-elect --log-human

Exit codes:
  0 = clean shutdown
  1 = invalid configuration
  2 = cannot reach / authenticate to the cluster
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from kubernetes.config.config_exception import ConfigException

from kubez.config import ConfigError, ControllerSettings
from kubez.controller.autoscaler_controller import AutoscalerController, build_controller
from kubez.controller.leader import LeaderElector
from kubez.health.probes import create_app, start_health_server
from kubez.k8s import KubeClients
from kubez.metrics import metrics, start_metrics_server
from kubez.utils.logger import configure_logging

LOG = logging.getLogger("kubez.main")

def _build_cli() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kubez-autoscaler", description="Annotation driven HorizontalPodAutoscaler controller")
    p.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig; default tries in-cluster config first")
    p.add_argument("--namespace", dest="watch_namespace", default=None, help="Only watch this namespace")
    p.add_argument("--workers", type=int, default=None, help="Number of reconcile workers")
    p.add_argument("--annotation-root", default=None, help="Root prefix of recognized annotations")
    p.add_argument("--resync-seconds", type=float, default=None, help="Full re-list period (0 disables)")
    p.add_argument("--request-timeout", dest="request_timeout_seconds", type=float, default=None)
    p.add_argument("--metrics-port", type=int, default=None, help="Prometheus port (0 disables)")
    p.add_argument("--health-port", type=int, default=None, help="Health probe port (0 disables)")
    p.add_argument("--leader-elect", action="store_const", const=True, default=None, help="Enable Lease based leader election")
    p.add_argument("--leader-election-namespace", default=None)
    p.add_argument("--log-level", default=None)
    p.add_argument("--log-human", dest="log_json", action="store_const", const=False, default=None, help="Human readable logs instead of JSON")
    return p

def load_settings(argv: Optional[List[str]] = None, environ: Optional[Dict[str, str]] = None) -> ControllerSettings:
    args = _build_cli().parse_args(argv)
    base = ControllerSettings.from_env(environ)
    return base.merged(**vars(args))

class _Runtime:
    """Tracks what the health server should report on."""

    def __init__(self):
        self.controller: Optional[AutoscalerController] = None
        self.elector: Optional[LeaderElector] = None

    def status(self) -> Dict[str, Any]:
        if self.controller is not None:
            return self.controller.status()
        if self.elector is not None:
            # a standby replica is healthy while it waits for the lease
            return {"ready": True, "leader": False, "holder": self.elector.observed_holder}
        return {"ready": False}

def run(settings: ControllerSettings, stop_event: threading.Event, clients: Optional[KubeClients] = None) -> int:
    try:
        clients = clients or KubeClients.from_config(settings.kubeconfig)
    except (ConfigException, OSError) as e:
        LOG.error("Cannot load Kubernetes configuration: %s", e)
        return 2

    runtime = _Runtime()
    start_metrics_server(settings.metrics_port)
    health = start_health_server(create_app(runtime.status), settings.health_port)

    def lead(lead_stop: threading.Event):
        controller = build_controller(clients, settings, metrics=metrics)
        runtime.controller = controller
        try:
            controller.run(lead_stop)
        finally:
            runtime.controller = None

    try:
        if settings.leader_elect:
            elector = LeaderElector(
                clients.coordination,
                settings.leader_election_namespace,
                settings.leader_election_name,
                on_started_leading=lead,
                on_stopped_leading=lambda: LOG.warning("Leadership lost"),
                lease_duration=settings.lease_duration_seconds,
                renew_deadline=settings.renew_deadline_seconds,
                retry_period=settings.retry_period_seconds,
                request_timeout=settings.request_timeout_seconds,
                metrics=metrics,
            )
            runtime.elector = elector
            # losing the lease ends the process; the pod restarts as a fresh candidate
            elector.run(stop_event)
            if not stop_event.is_set():
                return 1
        else:
            lead(stop_event)
    finally:
        if health is not None:
            health.should_exit = True
    return 0

def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        configure_logging(json=False)
        LOG.error("%s", e)
        return 1
    configure_logging(level=settings.log_level, json=settings.log_json)
    LOG.info("Starting kubez-autoscaler (workers=%d, namespace=%s, root=%s)",
             settings.workers, settings.watch_namespace or "<all>", settings.annotation_root)

    stop_event = threading.Event()

    def _on_signal(sig, frame):
        LOG.info("signal %s received, shutting down", sig)
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    return run(settings, stop_event)

if __name__ == "__main__":
    sys.exit(main())
