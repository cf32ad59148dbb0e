"""
Canary traffic scenarios for locust.

Usage:
    CANARY_SCENARIO=split locust -f tests/load/locustfile.py --host http://localhost:8080
"""

from .config import OVERRIDE_HEADER, OVERRIDE_VALUE, SCENARIOS, LoadProfile, SplitScenario, scenario_for

__all__ = ['OVERRIDE_HEADER', 'OVERRIDE_VALUE', 'SCENARIOS', 'LoadProfile', 'SplitScenario', 'scenario_for']
