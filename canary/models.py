"""
Release data model - phases, release state, traffic rules and events.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReleasePhase(str, Enum):
    """Where a release stands."""
    IDLE = "idle"
    CANARY_DEPLOYING = "canary_deploying"
    CANARY_ACTIVE = "canary_active"
    VALIDATING = "validating"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


class Transition(str, Enum):
    """Operator-invoked transitions."""
    START_CANARY = "start_canary"
    VALIDATE = "validate"
    VERIFY_SPLIT = "verify_split"
    PROMOTE = "promote"
    ROLLBACK = "rollback"


class EventOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOOP = "noop"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass
class ReplicaCounts:
    """Desired and ready replica counts of one deployment."""
    desired: int = 0
    ready: int = 0

    def __post_init__(self):
        if self.desired < 0 or self.ready < 0:
            raise ValueError("replica counts must be non-negative")
        if self.ready > self.desired:
            raise ValueError(
                f"ready replicas ({self.ready}) exceed desired ({self.desired})"
            )

    @property
    def is_ready(self) -> bool:
        return self.ready == self.desired

    def to_dict(self) -> Dict[str, int]:
        return {"desired": self.desired, "ready": self.ready}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplicaCounts":
        return cls(desired=data.get("desired", 0), ready=data.get("ready", 0))


@dataclass
class TrafficRule:
    """
    Desired stable/canary routing split.

    The header override is independent of the split: a request carrying
    ``override_header: override_value`` always lands on the canary.
    """
    stable_weight: int = 100
    canary_weight: int = 0
    override_header: str = "x-canary"
    override_value: str = "always"

    @property
    def weights(self) -> tuple:
        return (self.stable_weight, self.canary_weight)

    def is_valid(self) -> bool:
        return valid_weight_pair(self.stable_weight, self.canary_weight)


def valid_weight_pair(stable: Any, canary: Any) -> bool:
    """True when both weights are non-negative ints summing to exactly 100."""
    for weight in (stable, canary):
        if isinstance(weight, bool) or not isinstance(weight, int):
            return False
        if weight < 0:
            return False
    return stable + canary == 100


@dataclass
class ValidationResult:
    """Outcome of a validation probe batch."""
    samples: int
    successes: int
    min_success_ratio: float
    versions_observed: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def success_ratio(self) -> float:
        if self.samples == 0:
            return 0.0
        return self.successes / self.samples

    @property
    def passed(self) -> bool:
        return self.samples > 0 and self.success_ratio >= self.min_success_ratio

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "successes": self.successes,
            "min_success_ratio": self.min_success_ratio,
            "success_ratio": round(self.success_ratio, 4),
            "passed": self.passed,
            "versions_observed": dict(self.versions_observed),
            "errors": list(self.errors),
            "checked_at": self.checked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationResult":
        checked_at = data.get("checked_at")
        return cls(
            samples=data["samples"],
            successes=data["successes"],
            min_success_ratio=data["min_success_ratio"],
            versions_observed=data.get("versions_observed", {}),
            errors=data.get("errors", []),
            checked_at=datetime.fromisoformat(checked_at) if checked_at else utcnow(),
        )


@dataclass
class ReleaseState:
    """
    The single process-wide record of where a release stands.

    Mutated only by the transition holding the release lock; everyone else
    reads a ``snapshot()``.
    """
    release: str
    namespace: str
    phase: ReleasePhase = ReleasePhase.IDLE
    stable_version: str = ""
    canary_version: str = ""
    stable_weight: int = 100
    canary_weight: int = 0
    stable_replicas: ReplicaCounts = field(default_factory=ReplicaCounts)
    canary_replicas: ReplicaCounts = field(default_factory=ReplicaCounts)
    last_validation: Optional[ValidationResult] = None
    last_applied: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def weights(self) -> tuple:
        return (self.stable_weight, self.canary_weight)

    def begin_canary_cycle(self, canary_version: str) -> None:
        """Re-initialise for a new canary cycle."""
        self.canary_version = canary_version
        self.last_validation = None
        self.phase = ReleasePhase.CANARY_DEPLOYING
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def snapshot(self) -> "ReleaseState":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "release": self.release,
            "namespace": self.namespace,
            "phase": self.phase.value,
            "stable_version": self.stable_version,
            "canary_version": self.canary_version,
            "stable_weight": self.stable_weight,
            "canary_weight": self.canary_weight,
            "stable_replicas": self.stable_replicas.to_dict(),
            "canary_replicas": self.canary_replicas.to_dict(),
            "last_validation": (
                self.last_validation.to_dict() if self.last_validation else None
            ),
            "last_applied": self.last_applied,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseState":
        validation = data.get("last_validation")
        updated_at = data.get("updated_at")
        return cls(
            release=data["release"],
            namespace=data["namespace"],
            phase=ReleasePhase(data.get("phase", "idle")),
            stable_version=data.get("stable_version", ""),
            canary_version=data.get("canary_version", ""),
            stable_weight=data.get("stable_weight", 100),
            canary_weight=data.get("canary_weight", 0),
            stable_replicas=ReplicaCounts.from_dict(data.get("stable_replicas", {})),
            canary_replicas=ReplicaCounts.from_dict(data.get("canary_replicas", {})),
            last_validation=ValidationResult.from_dict(validation) if validation else None,
            last_applied=data.get("last_applied"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else utcnow(),
        )


@dataclass(frozen=True)
class ReleaseEvent:
    """Immutable audit record of one transition attempt."""
    transition: Transition
    from_phase: ReleasePhase
    to_phase: ReleasePhase
    outcome: EventOutcome
    reason: str = ""
    error: Optional[str] = None
    last_applied: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "transition": self.transition.value,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "error": self.error,
            "last_applied": self.last_applied,
        }
