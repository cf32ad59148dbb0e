"""
Health Prober - synthetic requests against the release endpoint.

Each response is classified by the ``version`` field of its JSON body and
by whether it arrived in time with a 2xx status.
"""

import asyncio
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .models import ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of a single probe."""
    success: bool
    version_observed: Optional[str] = None
    status: Optional[int] = None
    latency_ms: float = 0.0
    error: Optional[str] = None


@dataclass
class SplitObservation:
    """Versions seen while probing without the override header."""
    samples: int
    canary_version: str
    expected_canary_percent: float
    tolerance: float
    versions_observed: Dict[str, int] = field(default_factory=dict)
    failures: int = 0

    @property
    def canary_percent(self) -> float:
        answered = self.samples - self.failures
        if answered <= 0:
            return 0.0
        return 100.0 * self.versions_observed.get(self.canary_version, 0) / answered

    @property
    def within_tolerance(self) -> bool:
        if self.samples - self.failures <= 0:
            return False
        return abs(self.canary_percent - self.expected_canary_percent) <= self.tolerance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "failures": self.failures,
            "versions_observed": dict(self.versions_observed),
            "canary_percent": round(self.canary_percent, 2),
            "expected_canary_percent": self.expected_canary_percent,
            "tolerance": self.tolerance,
            "within_tolerance": self.within_tolerance,
        }


class HealthProber:
    """
    Issues probes with aiohttp.

    Can be used as an async context manager to reuse one session across
    batches; otherwise each batch opens its own session.
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        interval_seconds: float = 0.0,
        concurrency: int = 1,
        override_header: str = "x-canary",
        override_value: str = "always",
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.concurrency = concurrency
        self.override_header = override_header
        self.override_value = override_value
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HealthProber":
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None and not self._session.closed:
            yield self._session
            return
        async with aiohttp.ClientSession() as session:
            yield session

    async def probe(
        self,
        target: str,
        force_canary: bool = False,
        expected_version: Optional[str] = None,
    ) -> ProbeResult:
        """Send one probe."""
        async with self._session_scope() as session:
            return await self._probe(session, target, force_canary, expected_version)

    async def _probe(
        self,
        session: aiohttp.ClientSession,
        target: str,
        force_canary: bool,
        expected_version: Optional[str],
    ) -> ProbeResult:
        headers = {self.override_header: self.override_value} if force_canary else {}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        start = time.monotonic()
        try:
            async with session.get(target, headers=headers, timeout=timeout) as response:
                status = response.status
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return ProbeResult(
                success=False,
                latency_ms=(time.monotonic() - start) * 1000,
                error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
            )

        latency_ms = (time.monotonic() - start) * 1000
        version = body.get("version") if isinstance(body, dict) else None
        if version is not None:
            version = str(version)

        success = 200 <= status < 300
        error = None if success else f"HTTP {status}"
        # a 2xx from the wrong version still counts; the mismatch is reported
        if success and expected_version is not None and version != expected_version:
            error = f"expected version {expected_version}, got {version}"

        return ProbeResult(
            success=success,
            version_observed=version,
            status=status,
            latency_ms=latency_ms,
            error=error,
        )

    async def run_batch(
        self,
        target: str,
        n: int,
        force_canary: bool = False,
        expected_version: Optional[str] = None,
    ) -> List[ProbeResult]:
        """
        Run ``n`` probes and return the results in issue order.

        With concurrency 1 probes are sequential, separated by
        ``interval_seconds``.
        """
        if n <= 0:
            raise ValueError("sample count must be positive")

        async with self._session_scope() as session:
            if self.concurrency == 1:
                results = []
                for i in range(n):
                    if i and self.interval_seconds:
                        await asyncio.sleep(self.interval_seconds)
                    results.append(
                        await self._probe(session, target, force_canary, expected_version)
                    )
                return results

            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded() -> ProbeResult:
                async with semaphore:
                    return await self._probe(session, target, force_canary, expected_version)

            return list(await asyncio.gather(*(bounded() for _ in range(n))))

    async def validate_batch(
        self,
        target: str,
        n: int,
        min_ratio: float,
        expected_version: Optional[str] = None,
    ) -> ValidationResult:
        """
        Probe the canary ``n`` times through the override header.

        Passes when successes / n >= min_ratio. Transport errors and non-2xx
        answers count as failures; version mismatches show up in ``errors``
        and ``versions_observed`` without failing the probe.
        """
        results = await self.run_batch(
            target, n, force_canary=True, expected_version=expected_version
        )
        successes = sum(1 for r in results if r.success)
        versions = Counter(r.version_observed for r in results if r.version_observed)
        errors = sorted({r.error for r in results if r.error})

        result = ValidationResult(
            samples=n,
            successes=successes,
            min_success_ratio=min_ratio,
            versions_observed=dict(sorted(versions.items())),
            errors=errors,
        )
        logger.info(
            f"Validation against {target}: {successes}/{n} succeeded "
            f"(required {min_ratio:.0%}) -> {'PASS' if result.passed else 'FAIL'}"
        )
        return result

    async def observe_split(
        self,
        target: str,
        n: int,
        canary_version: str,
        expected_canary_percent: float,
        tolerance: float,
    ) -> SplitObservation:
        """Probe without the override header and count versions."""
        results = await self.run_batch(target, n)
        versions = Counter(r.version_observed for r in results if r.success and r.version_observed)
        observation = SplitObservation(
            samples=n,
            canary_version=canary_version,
            expected_canary_percent=expected_canary_percent,
            tolerance=tolerance,
            versions_observed=dict(sorted(versions.items())),
            failures=sum(1 for r in results if not r.success),
        )
        logger.info(
            f"Observed canary share {observation.canary_percent:.1f}% "
            f"(expected {expected_canary_percent}% ±{tolerance})"
        )
        return observation
