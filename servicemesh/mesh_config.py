"""Istio traffic-routing manifests for stable/canary releases."""

from dataclasses import dataclass, field
from typing import Any

import yaml

STABLE_SUBSET = "stable"
CANARY_SUBSET = "canary"


@dataclass
class TrafficPolicy:
    """Per-route traffic policy applied by the mesh."""

    retries: int = 3
    timeout_ms: int = 5000
    retry_on: str = "5xx,reset,connect-failure"


@dataclass
class ServiceMeshConfig:
    """Service mesh configuration."""

    namespace: str = "default"
    port: int = 8080
    track_label: str = "track"
    traffic_policy: TrafficPolicy = field(default_factory=TrafficPolicy)


def generate_destination_rule(
    config: ServiceMeshConfig,
    service_name: str,
) -> dict[str, Any]:
    """Generate the DestinationRule declaring the stable and canary subsets."""
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "DestinationRule",
        "metadata": {
            "name": service_name,
            "namespace": config.namespace,
        },
        "spec": {
            "host": service_name,
            "subsets": [
                {"name": subset, "labels": {config.track_label: subset}}
                for subset in (STABLE_SUBSET, CANARY_SUBSET)
            ],
        },
    }


def _destination(config: ServiceMeshConfig, host: str, subset: str) -> dict[str, Any]:
    return {
        "host": host,
        "subset": subset,
        "port": {"number": config.port},
    }


def generate_virtual_service(
    config: ServiceMeshConfig,
    service_name: str,
    stable_weight: int,
    canary_weight: int,
    override_header: str = "x-canary",
    override_value: str = "always",
    hosts: list[str] | None = None,
) -> dict[str, Any]:
    """
    Generate the Istio VirtualService for a stable/canary split.

    The header-match route comes first so a request carrying the override
    header reaches the canary regardless of the weights.
    """
    for weight in (stable_weight, canary_weight):
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
            raise ValueError(f"Invalid weight: {weight!r}")
    if stable_weight + canary_weight != 100:
        raise ValueError(
            f"Invalid weights: stable={stable_weight} canary={canary_weight}"
        )

    policy = config.traffic_policy
    common = {
        "timeout": f"{policy.timeout_ms}ms",
        "retries": {
            "attempts": policy.retries,
            "retryOn": policy.retry_on,
        },
    }

    override_route = {
        "name": "force-canary",
        "match": [{
            "headers": {override_header: {"exact": override_value}},
        }],
        "route": [{
            "destination": _destination(config, service_name, CANARY_SUBSET),
            "weight": 100,
        }],
        **common,
    }
    weighted_route = {
        "name": "weighted",
        "route": [
            {
                "destination": _destination(config, service_name, STABLE_SUBSET),
                "weight": stable_weight,
            },
            {
                "destination": _destination(config, service_name, CANARY_SUBSET),
                "weight": canary_weight,
            },
        ],
        **common,
    }

    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "VirtualService",
        "metadata": {
            "name": service_name,
            "namespace": config.namespace,
        },
        "spec": {
            "hosts": hosts or [service_name],
            "http": [override_route, weighted_route],
        },
    }


def _weighted_http_route(manifest: dict[str, Any]) -> dict[str, Any]:
    http = (manifest.get("spec") or {}).get("http")
    if not isinstance(http, list) or not http:
        raise ValueError("VirtualService has no http routes")
    for route in http:
        if isinstance(route, dict) and not route.get("match"):
            return route
    raise ValueError("VirtualService has no unconditional route")


def parse_route_weights(manifest: dict[str, Any]) -> tuple[int, int]:
    """
    Read the (stable, canary) weights from a VirtualService.

    A single destination without an explicit weight carries 100%.
    Raises ValueError when the manifest does not describe a valid split.
    """
    route = _weighted_http_route(manifest)
    destinations = route.get("route")
    if not isinstance(destinations, list) or not destinations:
        raise ValueError("Weighted route has no destinations")

    weights = {STABLE_SUBSET: 0, CANARY_SUBSET: 0}
    for entry in destinations:
        subset = (entry.get("destination") or {}).get("subset")
        if subset not in weights:
            raise ValueError(f"Unknown subset in route: {subset!r}")
        weight = entry.get("weight", 100 if len(destinations) == 1 else None)
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
            raise ValueError(f"Invalid weight for subset {subset}: {weight!r}")
        weights[subset] += weight

    if weights[STABLE_SUBSET] + weights[CANARY_SUBSET] != 100:
        raise ValueError(f"Route weights do not sum to 100: {weights}")
    return weights[STABLE_SUBSET], weights[CANARY_SUBSET]


def parse_override_header(manifest: dict[str, Any]) -> tuple[str, str] | None:
    """Return the (header, value) of the force-canary route, if any."""
    for route in (manifest.get("spec") or {}).get("http") or []:
        for match in route.get("match") or []:
            for header, condition in (match.get("headers") or {}).items():
                if isinstance(condition, dict) and "exact" in condition:
                    return header, condition["exact"]
    return None


def render_manifests(*manifests: dict[str, Any]) -> str:
    """Render manifests as a multi-document YAML stream for kubectl apply."""
    return yaml.safe_dump_all(list(manifests), sort_keys=False)
