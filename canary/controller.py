"""
Release Controller - drives a stable/canary release through its phases.

Structure of every transition:
1. Take the release lock, in-process and on disk (fail fast with
   ConflictingOperationError)
2. Check the current phase allows the transition
3. Apply external mutations strictly one after another
4. Record the outcome in the event log and persist the state
5. Release both locks, then deliver buffered events

Weights are always reset before the canary is scaled down, so live
traffic never points at a deployment that is going away.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Iterable, Optional

from filelock import FileLock, Timeout

from .cluster import ClusterClient, DeploymentStatus, KubectlClusterClient
from .config import ControllerConfig
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
from .event_log import EventLog, create_sink
from .models import (
    EventOutcome,
    ReleaseEvent,
    ReleasePhase,
    ReleaseState,
    ReplicaCounts,
    Transition,
    ValidationResult,
)
from .prober import HealthProber, SplitObservation
from .state_store import StateStore, observe_state
from .traffic_manager import DEFAULT_WEIGHTS, TrafficWeightManager

logger = logging.getLogger(__name__)


def _check_timeout(timeout: Optional[float]) -> None:
    if timeout is not None and timeout <= 0:
        raise ValueError("timeout must be positive")


def _check_replicas(replicas: int) -> None:
    if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 1:
        raise ValueError(f"replicas must be a positive integer, got {replicas!r}")


@dataclass
class _TransitionContext:
    transition: Transition
    from_phase: ReleasePhase
    reason: str = ""
    outcome: EventOutcome = EventOutcome.SUCCEEDED
    error: Optional[str] = None


class ReleaseController:
    """
    Canary release state machine for one release.

    Example:
        >>> controller = await ReleaseController.create(config)
        >>> await controller.start_canary("v2.0", 20)
        >>> result = await controller.validate()
        >>> if result.passed:
        ...     await controller.promote()
        ... else:
        ...     await controller.rollback("validation failed")
    """

    def __init__(
        self,
        config: ControllerConfig,
        cluster: ClusterClient,
        prober: Optional[HealthProber] = None,
        events: Optional[EventLog] = None,
        state: Optional[ReleaseState] = None,
        store: Optional[StateStore] = None,
    ):
        self.config = config
        self.cluster = cluster
        self.prober = prober or HealthProber(
            timeout_seconds=config.probe.timeout_seconds,
            interval_seconds=config.probe.interval_seconds,
            concurrency=config.probe.concurrency,
            override_header=config.probe.override_header,
            override_value=config.probe.override_value,
        )
        self.events = events if events is not None else EventLog()
        self.store = store
        self.weights = TrafficWeightManager(
            cluster,
            config.traffic_rule,
            override_header=config.probe.override_header,
            override_value=config.probe.override_value,
        )
        self.state = state or ReleaseState(release=config.release, namespace=config.namespace)
        self._lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()

    @classmethod
    async def create(
        cls,
        config: ControllerConfig,
        cluster: Optional[ClusterClient] = None,
        prober: Optional[HealthProber] = None,
        events: Optional[EventLog] = None,
        store: Optional[StateStore] = None,
    ) -> "ReleaseController":
        """Build a controller, loading persisted state or observing the cluster."""
        cluster = cluster or KubectlClusterClient(
            namespace=config.namespace,
            context=config.kube_context,
            kubectl=config.kubectl_binary,
            container_name=config.container_name,
            service_host=config.service_host,
        )
        if events is None:
            events = EventLog(create_sink(
                config.events.backend,
                path=config.events.path,
                endpoint=config.events.endpoint,
                labels=config.events.labels,
                timeout_seconds=config.events.timeout_seconds,
                max_buffer=config.events.max_buffer,
            ))
        state = store.load(config.namespace, config.release) if store else None
        controller = cls(config, cluster, prober, events, state=state, store=store)
        if state is None:
            controller.state = await observe_state(
                cluster,
                controller.weights,
                config.release,
                config.namespace,
                config.stable_deployment,
                config.canary_deployment,
            )
        return controller

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def status(self) -> ReleaseState:
        """Snapshot of the release state. Never waits for the lock."""
        return self.state.snapshot()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> bool:
        """Abort the in-flight transition at its current wait. False if idle."""
        if not self._lock.locked():
            return False
        self._cancel_event.set()
        logger.info(f"[{self.config.release}] Cancel signal sent")
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start_canary(
        self,
        new_version: str,
        canary_weight: int,
        timeout: Optional[float] = None,
        image: Optional[str] = None,
        replicas: Optional[int] = None,
    ) -> ReleaseState:
        """Deploy ``new_version`` as the canary and give it ``canary_weight`` percent."""
        _check_timeout(timeout)
        replicas = self.config.canary_replicas if replicas is None else replicas
        _check_replicas(replicas)
        reason = f"deploy {new_version} at {canary_weight}%"
        async with self._transition(Transition.START_CANARY, reason):
            self._require_phase(
                Transition.START_CANARY,
                (ReleasePhase.IDLE, ReleasePhase.CANARY_ACTIVE),
            )
            if (
                isinstance(canary_weight, bool)
                or not isinstance(canary_weight, int)
                or not 0 < canary_weight < 100
            ):
                raise InvalidWeightError(
                    f"Canary weight must be an integer between 1 and 99, got {canary_weight!r}"
                )
            image = image or self.config.image_for(new_version)
            canary = self.config.canary_deployment

            self.state.begin_canary_cycle(new_version)
            logger.info(f"[{self.config.release}] Deploying canary {new_version} ({image})")

            await self.cluster.patch_deployment(canary, image, new_version, replicas)
            self._applied(f"patched {canary} to {image} with {replicas} replicas")

            self.state.canary_replicas = await self._wait_for_rollout(canary, timeout)

            await self.weights.set_weights(100 - canary_weight, canary_weight)
            self._set_weights(100 - canary_weight, canary_weight)

            self.state.phase = ReleasePhase.CANARY_ACTIVE
        return self.status()

    async def validate(
        self,
        sample_count: Optional[int] = None,
        min_success_ratio: Optional[float] = None,
    ) -> ValidationResult:
        """Probe the canary through the override header and gate on success ratio."""
        policy = self.config.policy
        sample_count = policy.validation_samples if sample_count is None else sample_count
        min_success_ratio = (
            policy.min_success_ratio if min_success_ratio is None else min_success_ratio
        )
        if sample_count <= 0:
            raise ValueError("sample_count must be positive")
        if not 0.0 <= min_success_ratio <= 1.0:
            raise ValueError("min_success_ratio must be between 0 and 1")

        reason = f"{sample_count} samples, min ratio {min_success_ratio}"
        async with self._transition(Transition.VALIDATE, reason) as t:
            self._require_phase(Transition.VALIDATE, (ReleasePhase.CANARY_ACTIVE,))
            self.state.phase = ReleasePhase.VALIDATING

            result = await self._interruptible(self.prober.validate_batch(
                self.config.probe.url,
                sample_count,
                min_success_ratio,
                expected_version=self.state.canary_version or None,
            ))
            self.state.last_validation = result
            self.state.phase = ReleasePhase.CANARY_ACTIVE

            if not result.passed:
                t.outcome = EventOutcome.FAILED
                t.error = (
                    f"success ratio {result.success_ratio:.2f} "
                    f"below {min_success_ratio:.2f}"
                )
                logger.warning(f"[{self.config.release}] Validation failed: {t.error}")
        return result

    async def verify_traffic_split(
        self,
        sample_count: Optional[int] = None,
        tolerance: Optional[float] = None,
    ) -> SplitObservation:
        """Check the observed canary share is within tolerance of its weight."""
        policy = self.config.policy
        sample_count = policy.split_samples if sample_count is None else sample_count
        tolerance = policy.split_tolerance if tolerance is None else tolerance
        if sample_count <= 0:
            raise ValueError("sample_count must be positive")

        async with self._transition(Transition.VERIFY_SPLIT, f"{sample_count} samples") as t:
            self._require_phase(Transition.VERIFY_SPLIT, (ReleasePhase.CANARY_ACTIVE,))
            observation = await self._interruptible(self.prober.observe_split(
                self.config.probe.url,
                sample_count,
                self.state.canary_version,
                float(self.state.canary_weight),
                tolerance,
            ))
            if not observation.within_tolerance:
                t.outcome = EventOutcome.FAILED
                t.error = (
                    f"canary share {observation.canary_percent:.1f}% not within "
                    f"{tolerance} of {self.state.canary_weight}%"
                )
        return observation

    async def promote(self, force: bool = False, timeout: Optional[float] = None) -> ReleaseState:
        """
        Make the canary version the stable version.

        ``force`` skips the passing-validation requirement, not the phase
        check. Steps already applied are not undone on failure.
        """
        _check_timeout(timeout)
        async with self._transition(Transition.PROMOTE, "forced" if force else "") as t:
            self._require_phase(Transition.PROMOTE, (ReleasePhase.CANARY_ACTIVE,))

            version = self.state.canary_version
            if version == self.state.stable_version:
                t.outcome = EventOutcome.NOOP
                logger.info(f"[{self.config.release}] Stable already runs {version}, nothing to promote")
                return self.status()

            validation = self.state.last_validation
            if not force and self.config.policy.require_validation and not (
                validation and validation.passed
            ):
                raise ValidationFailedError(
                    "Canary has not passed validation; run validate or promote with force"
                )

            self.state.phase = ReleasePhase.PROMOTING
            stable = self.config.stable_deployment
            canary = self.config.canary_deployment

            canary_status = await self.cluster.get_deployment(canary)
            image = canary_status.image or self.config.image_for(version)

            logger.info(f"[{self.config.release}] Promoting {version} to {stable}")
            await self.cluster.patch_deployment(stable, image, version)
            self._applied(f"patched {stable} to {image}")

            self.state.stable_replicas = await self._wait_for_rollout(stable, timeout)
            self.state.stable_version = version

            self._set_weights(*await self.weights.reset())

            await self.cluster.scale_deployment(canary, 0)
            self.state.canary_replicas = ReplicaCounts(0, 0)
            self._applied(f"scaled {canary} to 0")

            self.state.last_validation = None
            self.state.phase = ReleasePhase.IDLE
        return self.status()

    async def rollback(self, reason: str = "") -> ReleaseState:
        """
        Send all traffic to stable and scale the canary to zero.

        Safe to repeat: on an idle release that is already at 100/0 with no
        canary replicas nothing is changed.
        """
        async with self._transition(Transition.ROLLBACK, reason) as t:
            canary = self.config.canary_deployment

            if self.state.phase == ReleasePhase.IDLE:
                current = await self.weights.get_weights()
                canary_status = await self._find_deployment(canary)
                if current == DEFAULT_WEIGHTS and (
                    canary_status is None or canary_status.desired_replicas == 0
                ):
                    t.outcome = EventOutcome.NOOP
                    logger.info(f"[{self.config.release}] Already rolled back")
                    return self.status()
                logger.warning(
                    f"[{self.config.release}] Idle release still has canary traffic "
                    f"{current} or replicas, resetting"
                )

            self.state.phase = ReleasePhase.ROLLING_BACK
            logger.info(f"[{self.config.release}] Rolling back: {reason or 'no reason given'}")

            self._set_weights(*await self.weights.reset())

            try:
                await self.cluster.scale_deployment(canary, 0)
                self._applied(f"scaled {canary} to 0")
            except NotFoundError:
                logger.info(f"[{self.config.release}] Canary deployment {canary} does not exist")
            self.state.canary_replicas = ReplicaCounts(0, 0)

            self.state.last_validation = None
            self.state.phase = ReleasePhase.IDLE
        return self.status()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transition(self, transition: Transition, reason: str = "") -> AsyncIterator[_TransitionContext]:
        try:
            if self._lock.locked():
                self._reject_conflict(transition, reason, "in this process")

            async with self._lock:
                release_lock = self._acquire_release_lock(transition, reason)
                try:
                    self._reload_state()
                    self._cancel_event.clear()
                    t = _TransitionContext(transition, self.state.phase, reason)
                    try:
                        yield t
                    except CancelledError as e:
                        self.state.phase = t.from_phase
                        self._fail(t, e, EventOutcome.CANCELLED)
                        raise
                    except asyncio.CancelledError:
                        self.state.phase = t.from_phase
                        t.outcome, t.error = EventOutcome.CANCELLED, "task cancelled"
                        self._finish(t)
                        raise
                    except (ClusterUnavailableError, RolloutTimeoutError) as e:
                        self.state.phase = ReleasePhase.FAILED
                        logger.error(f"[{self.config.release}] {transition.value} failed: {e}")
                        self._fail(t, e, EventOutcome.FAILED)
                        raise
                    except CanaryError as e:
                        self.state.phase = t.from_phase
                        logger.warning(f"[{self.config.release}] {transition.value} rejected: {e}")
                        self._fail(t, e, EventOutcome.REJECTED)
                        raise
                    except Exception as e:
                        self.state.phase = ReleasePhase.FAILED
                        logger.error(f"[{self.config.release}] {transition.value} crashed: {e}")
                        self._fail(t, e, EventOutcome.FAILED)
                        raise
                    else:
                        self._finish(t)
                finally:
                    if release_lock is not None:
                        release_lock.release()
        finally:
            # delivery happens with both locks released
            await self.events.flush()

    def _reject_conflict(self, transition: Transition, reason: str, where: str) -> None:
        phase = self.state.phase
        self._record(_TransitionContext(
            transition, phase, reason,
            outcome=EventOutcome.REJECTED,
            error=ConflictingOperationError.kind,
        ))
        raise ConflictingOperationError(
            f"Another transition is in progress for {self.config.release} {where}",
            phase=phase.value,
            last_applied=self.state.last_applied,
        )

    def _acquire_release_lock(self, transition: Transition, reason: str) -> Optional[FileLock]:
        """Take the cross-process lock for this release without waiting."""
        if self.store is None:
            return None
        lock = self.store.lock_for(self.config.namespace, self.config.release)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            self._reject_conflict(transition, reason, f"in another process ({lock.lock_file})")
        return lock

    def _reload_state(self) -> None:
        """Pick up state saved by another process since this one last looked."""
        if self.store is None:
            return
        saved = self.store.load(self.config.namespace, self.config.release)
        if saved is not None and saved.updated_at > self.state.updated_at:
            logger.info(
                f"[{self.config.release}] Reloaded state saved elsewhere "
                f"(phase {saved.phase.value})"
            )
            self.state = saved

    def _fail(self, t: _TransitionContext, error: Exception, outcome: EventOutcome) -> None:
        if isinstance(error, CanaryError):
            error.phase = self.state.phase.value
            error.last_applied = self.state.last_applied
            t.error = f"{error.kind}: {error}"
        else:
            t.error = f"{type(error).__name__}: {error}"
        t.outcome = outcome
        self._finish(t)

    def _finish(self, t: _TransitionContext) -> None:
        if t.outcome != EventOutcome.NOOP:
            self.state.touch()
        self._record(t)
        self._persist()

    def _record(self, t: _TransitionContext) -> None:
        self.events.append(ReleaseEvent(
            transition=t.transition,
            from_phase=t.from_phase,
            to_phase=self.state.phase,
            outcome=t.outcome,
            reason=t.reason,
            error=t.error,
            last_applied=self.state.last_applied,
        ))

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error(f"[{self.config.release}] Could not persist state: {e}")

    def _require_phase(self, transition: Transition, allowed: Iterable[ReleasePhase]) -> None:
        allowed = tuple(allowed)
        if self.state.phase not in allowed:
            raise InvalidPhaseTransitionError(
                f"Cannot {transition.value} from phase {self.state.phase.value}; "
                f"allowed from {', '.join(p.value for p in allowed)}"
            )

    def _applied(self, description: str) -> None:
        self.state.last_applied = description
        self.state.touch()

    def _set_weights(self, stable: int, canary: int) -> None:
        self.state.stable_weight = stable
        self.state.canary_weight = canary
        self._applied(f"set traffic split to {stable}/{canary}")

    async def _find_deployment(self, name: str) -> Optional[DeploymentStatus]:
        try:
            return await self.cluster.get_deployment(name)
        except NotFoundError:
            return None

    async def _wait_for_rollout(self, name: str, timeout: Optional[float]) -> ReplicaCounts:
        timeout = self.config.rollout_timeout_seconds if timeout is None else timeout

        logger.info(f"[{self.config.release}] Waiting up to {timeout}s for {name} rollout")
        try:
            ready = await self._interruptible(
                self.cluster.wait_for_rollout(name, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            ready = False
        if not ready:
            raise RolloutTimeoutError(f"Deployment {name} not ready after {timeout}s")

        status = await self.cluster.get_deployment(name)
        return ReplicaCounts(
            status.desired_replicas, min(status.ready_replicas, status.desired_replicas)
        )

    async def _interruptible(self, awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Await ``awaitable`` unless the cancel signal or ``timeout`` fires first."""
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        if self._cancel_event.is_set():
            raise CancelledError("Transition cancelled by operator")
        raise asyncio.TimeoutError()
