"""
Swarm service update with optimistic concurrency.
"""

import copy
import logging
from typing import Any, Dict

from gitops_deployer.cluster_client import ClusterClient
from gitops_deployer.models import ImageReference, ServiceSpec

logger = logging.getLogger(__name__)


def build_update_spec(service: ServiceSpec, image: ImageReference) -> Dict[str, Any]:
    """
    Build the spec to submit for rolling ``service`` onto ``image``.

    The current spec is copied untouched except for the container image,
    which is replaced (old tag and digest dropped), and the force-update
    counter, which is incremented so the swarm restarts tasks even when the
    reference did not change.
    """
    spec = copy.deepcopy(service.raw_spec)
    spec.setdefault("Name", service.name)

    task_template = spec.setdefault("TaskTemplate", {})
    container_spec = task_template.setdefault("ContainerSpec", {})

    # A pinned digest would make the swarm ignore the new tag
    target = ImageReference(registry=image.registry, repository=image.repository, tag=image.tag)
    container_spec["Image"] = str(target)
    task_template["ForceUpdate"] = (task_template.get("ForceUpdate") or 0) + 1
    return spec


class ServiceUpdater:
    """Applies a new image to a swarm service."""

    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    async def update_service(self, service: ServiceSpec, image: ImageReference) -> None:
        """
        Roll ``service`` onto ``image``.

        The update is sent with the version index read together with
        ``service``. No retry happens here.

        Raises:
            VersionConflictError: If the service changed since it was read
            ClusterAPIError: If the cluster rejected the update
        """
        spec = build_update_spec(service, image)
        logger.info(
            f"Updating service {service.name} to {spec['TaskTemplate']['ContainerSpec']['Image']} "
            f"(version {service.version_index})"
        )
        await self.cluster.update_service(service, spec)
        logger.info(f"Service updated: {service.name}")
