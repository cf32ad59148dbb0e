"""Istio routing manifests for stable/canary traffic splits."""

from servicemesh.mesh_config import (
    CANARY_SUBSET,
    STABLE_SUBSET,
    ServiceMeshConfig,
    TrafficPolicy,
    generate_destination_rule,
    generate_virtual_service,
    parse_override_header,
    parse_route_weights,
    render_manifests,
)

__all__ = [
    "STABLE_SUBSET",
    "CANARY_SUBSET",
    "ServiceMeshConfig",
    "TrafficPolicy",
    "generate_destination_rule",
    "generate_virtual_service",
    "parse_override_header",
    "parse_route_weights",
    "render_manifests",
]
