"""
Load Testing Configuration.

Traffic scenarios for exercising a release while a canary is active.
"""

from dataclasses import dataclass
from typing import Dict
from enum import Enum

OVERRIDE_HEADER = "x-canary"
OVERRIDE_VALUE = "always"


class LoadProfile(str, Enum):
    """How long and how hard traffic is driven."""
    SMOKE = "smoke"
    SPLIT = "split"
    SOAK = "soak"


@dataclass
class SplitScenario:
    """
    Traffic shape plus the acceptance bounds checked at the end of a run.

    ``split_tolerance`` is in percentage points of the canary share.
    """
    name: str
    profile: LoadProfile
    users: int
    spawn_rate: int
    run_time: str
    split_tolerance: float = 10.0
    max_fail_ratio: float = 0.01

    def locust_args(self) -> str:
        return f"--headless -u {self.users} -r {self.spawn_rate} --run-time {self.run_time}"


SCENARIOS: Dict[str, SplitScenario] = {
    "smoke": SplitScenario(
        name="Canary smoke",
        profile=LoadProfile.SMOKE,
        users=5,
        spawn_rate=1,
        run_time="1m",
        split_tolerance=20.0,
    ),
    "split": SplitScenario(
        name="Weighted split check",
        profile=LoadProfile.SPLIT,
        users=50,
        spawn_rate=5,
        run_time="5m",
    ),
    "soak": SplitScenario(
        name="Canary soak",
        profile=LoadProfile.SOAK,
        users=20,
        spawn_rate=2,
        run_time="30m",
        split_tolerance=5.0,
        max_fail_ratio=0.005,
    ),
}


def scenario_for(name: str) -> SplitScenario:
    """Scenario by name; unknown names fall back to the split check."""
    return SCENARIOS.get(name, SCENARIOS["split"])
