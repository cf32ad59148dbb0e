"""
Release controller errors.
"""

from typing import Optional


class CanaryError(Exception):
    """
    Base class for release controller errors.

    The controller fills in ``phase`` (where the release was left) and
    ``last_applied`` (last external mutation that succeeded) before the
    error reaches the operator.
    """

    kind = "canary_error"

    def __init__(
        self,
        message: str = "",
        phase: Optional[str] = None,
        last_applied: Optional[str] = None,
    ):
        super().__init__(message)
        self.phase = phase
        self.last_applied = last_applied

    def to_dict(self):
        return {
            "kind": self.kind,
            "message": str(self),
            "phase": self.phase,
            "last_applied": self.last_applied,
        }


class InvalidWeightError(CanaryError):
    """Raised when a weight pair is not two non-negative ints summing to 100."""
    kind = "invalid_weight"


class InvalidPhaseTransitionError(CanaryError):
    """Raised when the current phase does not allow the requested transition."""
    kind = "invalid_phase_transition"


class ClusterUnavailableError(CanaryError):
    """Raised when the cluster API cannot be reached or rejects a call."""
    kind = "cluster_unavailable"


class NotFoundError(ClusterUnavailableError):
    """Raised when a cluster resource does not exist."""
    kind = "not_found"


class RolloutTimeoutError(CanaryError):
    """Raised when a deployment does not become ready in time."""
    kind = "rollout_timeout"


class ValidationFailedError(CanaryError):
    """Raised when promotion requires a passing validation that is missing."""
    kind = "validation_failed"


class ConflictingOperationError(CanaryError):
    """Raised when another transition already holds the release lock."""
    kind = "conflicting_operation"


class CancelledError(CanaryError):
    """Raised when a transition is aborted by a cancel signal."""
    kind = "cancelled"


__all__ = [
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
