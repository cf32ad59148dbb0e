# Canary Release Controller
"""
Stable/canary release orchestration on Kubernetes + Istio.
"""

from .cluster import ClusterClient, DeploymentStatus, KubectlClusterClient
from .config import ControllerConfig, EventLogConfig, PolicyConfig, ProbeConfig, load_config
from .controller import ReleaseController
from .errors import (
    CanaryError,
    CancelledError,
    ClusterUnavailableError,
    ConflictingOperationError,
    InvalidPhaseTransitionError,
    InvalidWeightError,
    NotFoundError,
    RolloutTimeoutError,
    ValidationFailedError,
)
from .event_log import EventLog, HttpSink, JsonLinesSink, MemorySink
from .models import (
    EventOutcome,
    ReleaseEvent,
    ReleasePhase,
    ReleaseState,
    ReplicaCounts,
    TrafficRule,
    Transition,
    ValidationResult,
)
from .prober import HealthProber, ProbeResult, SplitObservation
from .state_store import StateStore
from .traffic_manager import TrafficWeightManager

__all__ = [
    # Controller
    "ReleaseController",
    "TrafficWeightManager",
    "HealthProber",
    "EventLog",
    "StateStore",
    # Cluster
    "ClusterClient",
    "DeploymentStatus",
    "KubectlClusterClient",
    # Config
    "ControllerConfig",
    "ProbeConfig",
    "PolicyConfig",
    "EventLogConfig",
    "load_config",
    # Models
    "ReleasePhase",
    "ReleaseState",
    "ReplicaCounts",
    "TrafficRule",
    "ReleaseEvent",
    "EventOutcome",
    "Transition",
    "ValidationResult",
    "ProbeResult",
    "SplitObservation",
    # Sinks
    "MemorySink",
    "JsonLinesSink",
    "HttpSink",
    # Errors
    "CanaryError",
    "InvalidWeightError",
    "InvalidPhaseTransitionError",
    "ClusterUnavailableError",
    "NotFoundError",
    "RolloutTimeoutError",
    "ValidationFailedError",
    "ConflictingOperationError",
    "CancelledError",
]

__version__ = "1.0.0"
