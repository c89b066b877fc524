"""
Node image synchronization.

Pulls one image on every ready swarm node in parallel so a service update
never waits on a cold image cache.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from gitops_deployer.cluster_client import ClusterClient
from gitops_deployer.exceptions import RegistryAuthError
from gitops_deployer.models import (
    ClusterNode,
    ImagePullOutcome,
    ImageReference,
    PullSummary,
)
from gitops_deployer.registry_credentials import CredentialCache

logger = logging.getLogger(__name__)


def summarize(outcomes: List[ImagePullOutcome]) -> PullSummary:
    """Summarize pull outcomes; the sync is usable if any node succeeded."""
    return PullSummary.from_outcomes(outcomes)


def _match_local_image(
    images: List[Dict[str, Any]], image: ImageReference
) -> Tuple[Optional[str], Optional[str]]:
    """Find the pulled image in a node's image list and return (digest, image_id)."""
    wanted = f"{image.repository_path}:{image.effective_tag}"
    fallback = None
    for local in images:
        repo_tags = local.get("RepoTags") or []
        if wanted in repo_tags:
            fallback = local
            break
        if fallback is None and any(t.rsplit(":", 1)[0] == image.repository_path for t in repo_tags):
            fallback = local

    if fallback is None:
        return None, None

    image_id = fallback.get("Id")
    repo_digests = fallback.get("RepoDigests") or []
    digest = repo_digests[0].split("@", 1)[1] if repo_digests and "@" in repo_digests[0] else image_id
    return digest, image_id


class NodeImageSynchronizer:
    """Pulls an image across all ready nodes of the cluster."""

    def __init__(self, cluster: ClusterClient, credentials: CredentialCache):
        self.cluster = cluster
        self.credentials = credentials

    async def sync_image(
        self, nodes: Iterable[ClusterNode], image: ImageReference
    ) -> List[ImagePullOutcome]:
        """
        Pull ``image`` on every ready node.

        Every ready node yields exactly one outcome. Pull failures are
        recorded on the outcome and never raised; one slow or failing node
        does not affect the others.

        Args:
            nodes: Node snapshot to pull on
            image: Image to pull (must carry a tag)

        Returns:
            One outcome per ready node
        """
        ready_nodes = [node for node in nodes if node.is_ready]
        logger.info(f"Pulling {image} on {len(ready_nodes)} node(s)...")

        if not ready_nodes:
            return []

        try:
            credential = await self.credentials.get_credential()
        except RegistryAuthError as e:
            logger.error(f"Cannot pull {image}: {e}")
            return [
                ImagePullOutcome(node=node.display_name, status="failed", error=str(e))
                for node in ready_nodes
            ]

        registry_auth = credential.to_registry_auth_header()
        outcomes = list(
            await asyncio.gather(
                *(self._pull_on_node(node, image, registry_auth) for node in ready_nodes)
            )
        )

        summary = summarize(outcomes)
        logger.info(f"Pull results for {image}: {summary.succeeded}/{summary.total} succeeded")
        return outcomes

    async def _pull_on_node(
        self, node: ClusterNode, image: ImageReference, registry_auth: str
    ) -> ImagePullOutcome:
        name = node.display_name
        try:
            await self.cluster.create_image(
                name, image.repository_path, image.effective_tag, registry_auth
            )
        except Exception as e:
            logger.error(f"Failed to pull {image} on node {name}: {e}")
            return ImagePullOutcome(node=name, status="failed", error=str(e))

        digest, image_id = await self._inspect(name, image)
        logger.info(f"Image pulled on {name}" + (f" ({digest})" if digest else ""))
        return ImagePullOutcome(node=name, status="success", digest=digest, image_id=image_id)

    async def _inspect(
        self, node: str, image: ImageReference
    ) -> Tuple[Optional[str], Optional[str]]:
        try:
            images = await self.cluster.list_images(node)
        except Exception as e:
            logger.warning(f"Could not verify image pull on {node}: {e}")
            return None, None
        return _match_local_image(images, image)
