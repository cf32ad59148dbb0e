"""Shared fixtures: in-memory cluster and scripted prober."""

import asyncio
from typing import Dict, List, Optional

import pytest

from canary.cluster import ClusterClient, DeploymentStatus
from canary.config import ControllerConfig
from canary.controller import ReleaseController
from canary.errors import NotFoundError
from canary.event_log import EventLog
from canary.models import ReleaseState, ReplicaCounts, TrafficRule, ValidationResult
from canary.prober import SplitObservation


class FakeClusterClient(ClusterClient):
    """
    In-memory orchestrator.

    ``fail_on`` maps a method name to an exception raised on its next call.
    ``block_rollout`` makes wait_for_rollout hang until ``release_rollout``
    is set.
    """

    def __init__(self):
        self.deployments: Dict[str, DeploymentStatus] = {}
        self.rules: Dict[str, TrafficRule] = {}
        self.malformed_rules: set = set()
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.rollout_ready = True
        self.block_rollout = False
        self.rollout_started = asyncio.Event()
        self.release_rollout = asyncio.Event()

    def add_deployment(self, name, version, replicas, ready=None, image=None):
        self.deployments[name] = DeploymentStatus(
            name=name,
            desired_replicas=replicas,
            ready_replicas=replicas if ready is None else ready,
            image=image or f"app:{version}",
            version_label=version,
        )

    def _call(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.fail_on:
            raise self.fail_on.pop(method)

    @property
    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in (
            "patch_deployment", "scale_deployment", "patch_traffic_rule"
        )]

    async def get_deployment(self, name):
        self._call("get_deployment", name)
        if name not in self.deployments:
            raise NotFoundError(f'deployments.apps "{name}" not found')
        d = self.deployments[name]
        return DeploymentStatus(d.name, d.desired_replicas, d.ready_replicas, d.image, d.version_label)

    async def patch_deployment(self, name, image, version_label, desired_replicas=None):
        self._call("patch_deployment", name, image, version_label, desired_replicas)
        if name not in self.deployments:
            raise NotFoundError(f'deployments.apps "{name}" not found')
        d = self.deployments[name]
        d.image = image
        d.version_label = version_label
        if desired_replicas is not None:
            d.desired_replicas = desired_replicas
        d.ready_replicas = 0

    async def scale_deployment(self, name, replicas):
        self._call("scale_deployment", name, replicas)
        if name not in self.deployments:
            raise NotFoundError(f'deployments.apps "{name}" not found')
        d = self.deployments[name]
        d.desired_replicas = replicas
        d.ready_replicas = min(d.ready_replicas, replicas)

    async def get_traffic_rule(self, name):
        self._call("get_traffic_rule", name)
        if name in self.malformed_rules:
            raise ValueError("VirtualService has no http routes")
        if name not in self.rules:
            raise NotFoundError(f'virtualservices "{name}" not found')
        rule = self.rules[name]
        return TrafficRule(rule.stable_weight, rule.canary_weight,
                           rule.override_header, rule.override_value)

    async def patch_traffic_rule(self, name, rule):
        self._call("patch_traffic_rule", name, rule.stable_weight, rule.canary_weight)
        self.malformed_rules.discard(name)
        self.rules[name] = rule

    async def wait_for_rollout(self, name, timeout):
        self._call("wait_for_rollout", name, timeout)
        self.rollout_started.set()
        if self.block_rollout:
            await self.release_rollout.wait()
        if not self.rollout_ready:
            return False
        d = self.deployments[name]
        d.ready_replicas = d.desired_replicas
        return True


class FakeProber:
    """
    Scripted prober.

    ``outcomes`` is consumed in order, one bool per probe; when it runs
    out every further probe succeeds.
    """

    def __init__(self, outcomes: Optional[List[bool]] = None):
        self.outcomes = list(outcomes or [])
        self.batches: List[dict] = []
        self.block = False
        self.started = asyncio.Event()
        self.split_versions: Dict[str, int] = {}

    async def validate_batch(self, target, n, min_ratio, expected_version=None):
        self.batches.append({"target": target, "n": n, "min_ratio": min_ratio,
                             "expected_version": expected_version})
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        results = [self.outcomes.pop(0) if self.outcomes else True for _ in range(n)]
        successes = sum(results)
        errors = ["ClientConnectorError"] if successes < n else []
        return ValidationResult(
            samples=n,
            successes=successes,
            min_success_ratio=min_ratio,
            versions_observed={expected_version or "unknown": successes} if successes else {},
            errors=errors,
        )

    async def observe_split(self, target, n, canary_version, expected_canary_percent, tolerance):
        return SplitObservation(
            samples=n,
            canary_version=canary_version,
            expected_canary_percent=expected_canary_percent,
            tolerance=tolerance,
            versions_observed=dict(self.split_versions),
        )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("CANARY_NAMESPACE", "CANARY_KUBE_CONTEXT", "CANARY_PROBE_URL", "CANARY_STATE_DIR"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config(tmp_path):
    return ControllerConfig(
        release="demo",
        namespace="test",
        state_dir=str(tmp_path / "state"),
        rollout_timeout_seconds=5,
    )


@pytest.fixture
def cluster():
    fake = FakeClusterClient()
    fake.add_deployment("demo-stable", "v1.0", 3)
    fake.add_deployment("demo-canary", "", 0)
    return fake


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def controller(config, cluster, prober, events):
    state = ReleaseState(
        release="demo",
        namespace="test",
        stable_version="v1.0",
        stable_replicas=ReplicaCounts(3, 3),
    )
    return ReleaseController(config, cluster, prober=prober, events=events, state=state)
