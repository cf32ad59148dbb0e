"""
Cluster Client - the controller's only path to the orchestrator.

``ClusterClient`` is the interface the controller depends on;
``KubectlClusterClient`` implements it by shelling out to kubectl.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from servicemesh.mesh_config import (
    ServiceMeshConfig,
    generate_destination_rule,
    generate_virtual_service,
    parse_override_header,
    parse_route_weights,
    render_manifests,
)

from .errors import ClusterUnavailableError, NotFoundError
from .models import TrafficRule

logger = logging.getLogger(__name__)


@dataclass
class DeploymentStatus:
    """Observed state of one deployment."""
    name: str
    desired_replicas: int
    ready_replicas: int
    image: str = ""
    version_label: str = ""

    @property
    def is_ready(self) -> bool:
        return self.ready_replicas == self.desired_replicas


class ClusterClient(ABC):
    """
    Abstract orchestrator API.

    Every method may raise ClusterUnavailableError or NotFoundError.
    """

    @abstractmethod
    async def get_deployment(self, name: str) -> DeploymentStatus:
        """Read desired/ready replicas, image and version label."""

    @abstractmethod
    async def patch_deployment(
        self,
        name: str,
        image: str,
        version_label: str,
        desired_replicas: Optional[int] = None,
    ) -> None:
        """Update a deployment's image, version label and optionally replicas."""

    @abstractmethod
    async def scale_deployment(self, name: str, replicas: int) -> None:
        """Set a deployment's desired replica count."""

    @abstractmethod
    async def get_traffic_rule(self, name: str) -> TrafficRule:
        """Read the routing split."""

    @abstractmethod
    async def patch_traffic_rule(self, name: str, rule: TrafficRule) -> None:
        """Write the routing split."""

    @abstractmethod
    async def wait_for_rollout(self, name: str, timeout: float) -> bool:
        """Wait until ready == desired. False on timeout."""


class KubectlClusterClient(ClusterClient):
    """
    Cluster client backed by the kubectl CLI.

    Traffic rules are Istio VirtualServices generated by ``servicemesh``.
    """

    def __init__(
        self,
        namespace: str = "default",
        context: Optional[str] = None,
        kubectl: str = "kubectl",
        container_name: Optional[str] = None,
        service_host: Optional[str] = None,
        mesh_config: Optional[ServiceMeshConfig] = None,
    ):
        self.namespace = namespace
        self.context = context
        self.kubectl = kubectl
        self.container_name = container_name
        self.service_host = service_host
        self.mesh_config = mesh_config or ServiceMeshConfig(namespace=namespace)

    def _base_args(self) -> List[str]:
        args = [self.kubectl, "-n", self.namespace]
        if self.context:
            args += ["--context", self.context]
        return args

    async def _execute_kubectl(self, *args: str, stdin: Optional[str] = None) -> str:
        """Run kubectl and return stdout, mapping failures to cluster errors."""
        cmd = self._base_args() + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ClusterUnavailableError(f"kubectl could not be started: {e}") from e

        try:
            stdout, stderr = await process.communicate(
                stdin.encode() if stdin is not None else None
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode().strip()
            logger.error(f"kubectl failed: {message}")
            if "NotFound" in message or "not found" in message:
                raise NotFoundError(message)
            raise ClusterUnavailableError(message or f"kubectl exited {process.returncode}")
        return stdout.decode()

    async def _get_json(self, kind: str, name: str) -> Dict[str, Any]:
        output = await self._execute_kubectl("get", kind, name, "-o", "json")
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ClusterUnavailableError(f"Unparseable {kind} {name}: {e}") from e

    async def get_deployment(self, name: str) -> DeploymentStatus:
        """Get deployment status."""
        data = await self._get_json("deployment", name)
        spec = data.get("spec", {})
        status = data.get("status", {})
        template = spec.get("template", {})
        containers = template.get("spec", {}).get("containers", [])
        container = self._pick_container(containers)
        desired = spec.get("replicas", 0) or 0
        return DeploymentStatus(
            name=name,
            desired_replicas=desired,
            ready_replicas=min(status.get("readyReplicas", 0) or 0, desired),
            image=container.get("image", ""),
            version_label=template.get("metadata", {}).get("labels", {}).get("version", ""),
        )

    def _pick_container(self, containers: List[Dict[str, Any]]) -> Dict[str, Any]:
        for container in containers:
            if container.get("name") == self.container_name:
                return container
        return containers[0] if containers else {}

    async def patch_deployment(
        self,
        name: str,
        image: str,
        version_label: str,
        desired_replicas: Optional[int] = None,
    ) -> None:
        """Patch image, version label, APP_VERSION env (and replicas) of a deployment."""
        container_name = self.container_name
        if not container_name:
            current = await self._get_json("deployment", name)
            containers = current.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [])
            container_name = self._pick_container(containers).get("name", name)

        spec: Dict[str, Any] = {
            "template": {
                "metadata": {"labels": {"version": version_label}},
                "spec": {"containers": [{
                    "name": container_name,
                    "image": image,
                    "env": [{"name": "APP_VERSION", "value": version_label}],
                }]},
            },
        }
        if desired_replicas is not None:
            spec["replicas"] = desired_replicas

        logger.info(f"Patching deployment {name}: image={image} version={version_label}")
        await self._execute_kubectl(
            "patch", "deployment", name,
            "--type", "strategic",
            "-p", json.dumps({"spec": spec}),
        )

    async def scale_deployment(self, name: str, replicas: int) -> None:
        """Scale a deployment."""
        logger.info(f"Scaling deployment {name} to {replicas}")
        await self._execute_kubectl("scale", "deployment", name, f"--replicas={replicas}")

    async def get_traffic_rule(self, name: str) -> TrafficRule:
        """Read weights from the VirtualService."""
        manifest = await self._get_json("virtualservice", name)
        stable, canary = parse_route_weights(manifest)
        rule = TrafficRule(stable_weight=stable, canary_weight=canary)
        override = parse_override_header(manifest)
        if override:
            rule.override_header, rule.override_value = override
        return rule

    async def patch_traffic_rule(self, name: str, rule: TrafficRule) -> None:
        """Apply the DestinationRule subsets and the VirtualService split."""
        subsets = generate_destination_rule(self.mesh_config, name)
        routes = generate_virtual_service(
            self.mesh_config,
            name,
            rule.stable_weight,
            rule.canary_weight,
            override_header=rule.override_header,
            override_value=rule.override_value,
            hosts=[self.service_host or name],
        )
        logger.info(
            f"Applying traffic split for {name}: "
            f"stable={rule.stable_weight}% canary={rule.canary_weight}%"
        )
        await self._execute_kubectl("apply", "-f", "-", stdin=render_manifests(subsets, routes))

    async def wait_for_rollout(self, name: str, timeout: float) -> bool:
        """Wait for ``kubectl rollout status`` to report completion."""
        try:
            await self._execute_kubectl(
                "rollout", "status", f"deployment/{name}",
                f"--timeout={max(int(timeout), 1)}s",
            )
        except NotFoundError:
            raise
        except ClusterUnavailableError as e:
            if "timed out" in str(e) or "exceeded its progress deadline" in str(e):
                logger.warning(f"Rollout of {name} timed out after {timeout}s")
                return False
            raise
        return True


__all__ = [
    "DeploymentStatus",
    "ClusterClient",
    "KubectlClusterClient",
]
