"""
Release state persistence between CLI invocations.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from filelock import FileLock

from .cluster import ClusterClient
from .errors import NotFoundError
from .models import ReleasePhase, ReleaseState, ReplicaCounts
from .traffic_manager import TrafficWeightManager

logger = logging.getLogger(__name__)


class StateStore:
    """
    Stores one JSON file per release under ``<root>/<namespace>/``.

    A ``<release>.lock`` file next to it serialises transitions across
    processes.
    """

    def __init__(self, root: Union[Path, str]):
        self.root = Path(root).expanduser()

    def path_for(self, namespace: str, release: str) -> Path:
        return self.root / namespace / f"{release}.json"

    def lock_for(self, namespace: str, release: str) -> FileLock:
        """Process-wide lock for one release. Acquire with ``timeout=0``."""
        path = self.root / namespace / f"{release}.lock"
        path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(path))

    def load(self, namespace: str, release: str) -> Optional[ReleaseState]:
        path = self.path_for(namespace, release)
        if not path.exists():
            return None
        with open(path) as f:
            return ReleaseState.from_dict(json.load(f))

    def save(self, state: ReleaseState) -> None:
        path = self.path_for(state.namespace, state.release)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp, path)


async def observe_state(
    cluster: ClusterClient,
    weights: TrafficWeightManager,
    release: str,
    namespace: str,
    stable_deployment: str,
    canary_deployment: str,
) -> ReleaseState:
    """
    Build an initial ReleaseState from what the cluster currently runs.

    Used once, when no persisted state exists. A running canary with
    traffic is reported as canary_active; anything else as idle.
    """
    state = ReleaseState(release=release, namespace=namespace)

    stable = await cluster.get_deployment(stable_deployment)
    state.stable_version = stable.version_label
    state.stable_replicas = ReplicaCounts(stable.desired_replicas, stable.ready_replicas)

    try:
        canary = await cluster.get_deployment(canary_deployment)
    except NotFoundError:
        canary = None
    if canary is not None:
        state.canary_version = canary.version_label
        state.canary_replicas = ReplicaCounts(canary.desired_replicas, canary.ready_replicas)

    state.stable_weight, state.canary_weight = await weights.get_weights()
    if canary is not None and canary.desired_replicas > 0 and state.canary_weight > 0:
        state.phase = ReleasePhase.CANARY_ACTIVE

    logger.info(
        f"Observed {namespace}/{release}: stable={state.stable_version} "
        f"canary={state.canary_version or '-'} weights={state.weights} phase={state.phase.value}"
    )
    return state
