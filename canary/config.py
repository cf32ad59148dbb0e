"""
Controller configuration.

Loaded from YAML, with a handful of environment overrides for the values
that usually differ between clusters.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class ProbeConfig:
    """How synthetic requests are sent to the release endpoint."""
    url: str = "http://localhost:8080/"
    timeout_seconds: float = 5.0
    interval_seconds: float = 0.5
    concurrency: int = 1
    override_header: str = "x-canary"
    override_value: str = "always"


@dataclass
class PolicyConfig:
    """Release gates. Thresholds are policy, not behaviour."""
    validation_samples: int = 20
    min_success_ratio: float = 0.95
    split_samples: int = 100
    split_tolerance: float = 10.0  # percentage points
    require_validation: bool = True


@dataclass
class EventLogConfig:
    """Where release events are recorded."""
    backend: str = "memory"  # memory, jsonl, http
    path: Optional[str] = None
    endpoint: str = "http://localhost:3100"
    labels: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 2.0
    max_buffer: int = 1000


@dataclass
class ControllerConfig:
    """Release controller configuration."""
    release: str = "simple-canary-app"
    namespace: str = "default"
    kube_context: Optional[str] = None
    kubectl_binary: str = "kubectl"

    stable_deployment: str = ""
    canary_deployment: str = ""
    container_name: str = ""
    image_repository: str = ""
    traffic_rule: str = ""
    service_host: str = ""
    canary_replicas: int = 1

    rollout_timeout_seconds: float = 300.0
    state_dir: str = "~/.canary"

    probe: ProbeConfig = field(default_factory=ProbeConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    events: EventLogConfig = field(default_factory=EventLogConfig)

    def __post_init__(self) -> None:
        """Fill derived names and apply environment overrides."""
        self.namespace = os.environ.get("CANARY_NAMESPACE", self.namespace)
        self.kube_context = os.environ.get("CANARY_KUBE_CONTEXT", self.kube_context)
        self.state_dir = os.environ.get("CANARY_STATE_DIR", self.state_dir)
        self.probe.url = os.environ.get("CANARY_PROBE_URL", self.probe.url)

        self.stable_deployment = self.stable_deployment or f"{self.release}-stable"
        self.canary_deployment = self.canary_deployment or f"{self.release}-canary"
        self.container_name = self.container_name or self.release
        self.image_repository = self.image_repository or self.release
        self.traffic_rule = self.traffic_rule or self.release
        self.service_host = self.service_host or self.release

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    def image_for(self, version: str) -> str:
        return f"{self.image_repository}:{version}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControllerConfig":
        """Create from dictionary, ignoring unknown keys."""
        data = dict(data or {})
        nested = {
            "probe": ProbeConfig,
            "policy": PolicyConfig,
            "events": EventLogConfig,
        }
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in nested:
                section = nested[key]
                allowed = {f.name for f in fields(section)}
                value = section(**{k: v for k, v in (value or {}).items() if k in allowed})
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str) -> "ControllerConfig":
        """Load configuration from a YAML file."""
        return cls.from_dict(_read_yaml(path))


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_config(
    path: Optional[str] = None,
    release: Optional[str] = None,
    **overrides: Any,
) -> ControllerConfig:
    """
    Load config from ``path`` (if given) and apply non-empty overrides.

    Precedence: overrides, then environment, then file, then defaults.
    """
    data = _read_yaml(path) if path else {}
    if release:
        data["release"] = release
    config = ControllerConfig.from_dict(data)
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    return config
