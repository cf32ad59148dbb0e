"""
Traffic Weight Manager - owns the stable/canary split.
"""

import logging
from typing import Optional, Tuple

from .cluster import ClusterClient
from .errors import InvalidWeightError, NotFoundError
from .models import TrafficRule, valid_weight_pair

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = (100, 0)


class TrafficWeightManager:
    """
    Reads and writes the stable/canary weight pair of one traffic rule.

    "No explicit split configured" means all traffic to stable, so a
    missing or malformed rule reads as (100, 0).
    """

    def __init__(
        self,
        cluster: ClusterClient,
        rule_name: str,
        override_header: str = "x-canary",
        override_value: str = "always",
    ):
        self.cluster = cluster
        self.rule_name = rule_name
        self.override_header = override_header
        self.override_value = override_value
        self._applied: Optional[Tuple[int, int]] = None

    @property
    def last_applied(self) -> Optional[Tuple[int, int]]:
        return self._applied

    async def set_weights(self, stable: int, canary: int) -> Tuple[int, int]:
        """Apply a weight pair. Raises InvalidWeightError unless it sums to 100."""
        if not valid_weight_pair(stable, canary):
            raise InvalidWeightError(
                f"Weights must be non-negative integers summing to 100, "
                f"got stable={stable!r} canary={canary!r}"
            )

        rule = TrafficRule(
            stable_weight=stable,
            canary_weight=canary,
            override_header=self.override_header,
            override_value=self.override_value,
        )
        await self.cluster.patch_traffic_rule(self.rule_name, rule)
        self._applied = (stable, canary)
        logger.info(f"Traffic split for {self.rule_name} set to {stable}/{canary}")
        return self._applied

    async def get_weights(self) -> Tuple[int, int]:
        """Get the current split, defaulting to (100, 0)."""
        try:
            rule = await self.cluster.get_traffic_rule(self.rule_name)
        except NotFoundError:
            logger.info(f"No traffic rule {self.rule_name}, assuming {DEFAULT_WEIGHTS}")
            return DEFAULT_WEIGHTS
        except ValueError as e:
            logger.warning(f"Malformed traffic rule {self.rule_name}: {e}")
            return DEFAULT_WEIGHTS

        if not rule.is_valid():
            logger.warning(f"Traffic rule {self.rule_name} has invalid weights {rule.weights}")
            return DEFAULT_WEIGHTS
        return rule.weights

    async def reset(self) -> Tuple[int, int]:
        """Route all traffic to stable."""
        return await self.set_weights(*DEFAULT_WEIGHTS)
