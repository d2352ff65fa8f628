# kubez/config.py
"""
Runtime configuration for the kubez autoscaler controller.

Settings are read from KUBEZ_* environment variables (a local .env file is
honored through python-dotenv) and validated with pydantic. Command line flags
parsed in kubez.main override individual fields via ControllerSettings.merged().
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

LOG = logging.getLogger("kubez.config")

DEFAULT_ANNOTATION_ROOT = "hpa.caoyingjunz.autoscaler"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kubez-autoscaler"
COMPONENT_NAME = "kubez-autoscaler"

_TRUE = ("1", "true", "yes", "on")

class ConfigError(ValueError):
    """Raised when settings cannot be loaded or fail validation."""

class ControllerSettings(BaseModel):
    annotation_root: str = Field(DEFAULT_ANNOTATION_ROOT, description="Root prefix of recognized annotation keys")
    workers: int = Field(5, ge=1, le=256, description="Number of reconcile worker threads")
    watch_namespace: str = Field("", description="Namespace to watch; empty means all namespaces")
    resync_seconds: float = Field(300.0, ge=0, description="Full re-list period; 0 disables periodic resync")
    watch_timeout_seconds: int = Field(300, ge=1, description="Server-side timeout of a single watch request")
    request_timeout_seconds: float = Field(30.0, gt=0, description="Deadline applied to every API call")
    backoff_base_seconds: float = Field(0.005, gt=0)
    backoff_max_seconds: float = Field(1000.0, gt=0)
    kubeconfig: Optional[str] = Field(None, description="Explicit kubeconfig path; None tries in-cluster first")
    leader_elect: bool = False
    leader_election_namespace: str = "kube-system"
    leader_election_name: str = "kubez-autoscaler"
    lease_duration_seconds: float = Field(15.0, gt=0)
    renew_deadline_seconds: float = Field(10.0, gt=0)
    retry_period_seconds: float = Field(2.0, gt=0)
    metrics_port: int = Field(9000, ge=0, le=65535, description="Prometheus port; 0 disables")
    health_port: int = Field(9010, ge=0, le=65535, description="Health server port; 0 disables")
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("annotation_root")
    @classmethod
    def root_must_be_a_dns_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or " " in v:
            raise ValueError("annotation root must be a non-empty DNS-style prefix without '/'")
        return v

    @field_validator("log_level")
    @classmethod
    def level_must_be_known(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v

    @field_validator("kubeconfig")
    @classmethod
    def empty_kubeconfig_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode="after")
    def check_relations(self) -> "ControllerSettings":
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        if self.leader_elect and self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be shorter than lease_duration_seconds")
        return self

    # -------------------------
    # Loading
    # -------------------------
    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, dotenv: bool = True) -> "ControllerSettings":
        """
        Build settings from KUBEZ_* variables. Unset variables keep their defaults.
        """
        if dotenv and environ is None:
            load_dotenv()
        env = os.environ if environ is None else environ
        raw: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"KUBEZ_{name.upper()}"
            if key in env:
                raw[name] = env[key]
        # pydantic only accepts canonical booleans; accept the usual spellings too
        for flag in ("leader_elect", "log_json"):
            if flag in raw:
                raw[flag] = str(raw[flag]).strip().lower() in _TRUE
        try:
            settings = cls(**raw)
        except ValidationError as e:
            raise ConfigError(f"invalid KUBEZ_* configuration: {e}") from e
        LOG.debug("Loaded settings from environment: %s", settings.model_dump())
        return settings

    def merged(self, **overrides: Any) -> "ControllerSettings":
        """Return a copy with the non-None overrides applied (and re-validated)."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return type(self)(**data)
        except ValidationError as e:
            raise ConfigError(f"invalid configuration override: {e}") from e

__all__ = [
    "ControllerSettings",
    "ConfigError",
    "DEFAULT_ANNOTATION_ROOT",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "COMPONENT_NAME",
]
