"""
Tests for node image synchronization.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from gitops_deployer.deployment.image_sync import NodeImageSynchronizer, summarize
from gitops_deployer.exceptions import ClusterAPIError, RegistryAuthError
from gitops_deployer.models import ImageReference

IMAGE = ImageReference.parse("123456789012.dkr.ecr.us-east-1.amazonaws.com/shop/api:v2.0.0")


def _local_images():
    return [
        {
            "Id": "sha256:localid",
            "RepoTags": ["123456789012.dkr.ecr.us-east-1.amazonaws.com/shop/api:v2.0.0"],
            "RepoDigests": ["123456789012.dkr.ecr.us-east-1.amazonaws.com/shop/api@sha256:remote"],
        }
    ]


class TestNodeImageSynchronizer:
    @pytest.fixture
    def cluster(self):
        cluster = Mock()
        cluster.create_image = AsyncMock(return_value=None)
        cluster.list_images = AsyncMock(return_value=_local_images())
        return cluster

    @pytest.fixture
    def synchronizer(self, cluster, credentials):
        return NodeImageSynchronizer(cluster, credentials)

    @pytest.mark.asyncio
    async def test_pulls_on_every_ready_node(self, synchronizer, cluster, nodes, credential):
        outcomes = await synchronizer.sync_image(nodes, IMAGE)

        assert [o.node for o in outcomes] == ["node-1", "node-2", "node-3"]
        assert all(o.succeeded for o in outcomes)
        assert outcomes[0].digest == "sha256:remote"
        assert outcomes[0].image_id == "sha256:localid"

        cluster.create_image.assert_any_await(
            "node-2",
            "123456789012.dkr.ecr.us-east-1.amazonaws.com/shop/api",
            "v2.0.0",
            credential.to_registry_auth_header(),
        )
        assert cluster.create_image.await_count == 3

    @pytest.mark.asyncio
    async def test_partial_failure(self, synchronizer, cluster, nodes):
        async def create_image(node, repository, tag, auth):
            if node == "node-3":
                raise ClusterAPIError("pull access denied", 500)

        cluster.create_image.side_effect = create_image

        outcomes = await synchronizer.sync_image(nodes, IMAGE)
        summary = summarize(outcomes)

        assert summary.describe() == "2/3 nodes"
        assert summary.usable
        failed = [o for o in outcomes if not o.succeeded]
        assert failed[0].node == "node-3"
        assert "pull access denied" in failed[0].error

    @pytest.mark.asyncio
    async def test_all_nodes_fail(self, synchronizer, cluster, nodes):
        cluster.create_image.side_effect = ClusterAPIError("registry unreachable")

        outcomes = await synchronizer.sync_image(nodes, IMAGE)

        assert len(outcomes) == 3
        assert not summarize(outcomes).usable

    @pytest.mark.asyncio
    async def test_credential_failure_fails_every_node(self, synchronizer, cluster, credentials, nodes):
        credentials.get_credential.side_effect = RegistryAuthError("token expired")

        outcomes = await synchronizer.sync_image(nodes, IMAGE)

        assert [o.status for o in outcomes] == ["failed"] * 3
        assert all("token expired" in o.error for o in outcomes)
        cluster.create_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inspection_failure_keeps_success(self, synchronizer, cluster, nodes):
        cluster.list_images.side_effect = ClusterAPIError("images endpoint failed")

        outcomes = await synchronizer.sync_image(nodes, IMAGE)

        assert all(o.succeeded for o in outcomes)
        assert all(o.digest is None for o in outcomes)

    @pytest.mark.asyncio
    async def test_no_ready_nodes(self, synchronizer, cluster, nodes):
        outcomes = await synchronizer.sync_image([nodes[3]], IMAGE)

        assert outcomes == []
        cluster.create_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_digest_falls_back_to_image_id(self, synchronizer, cluster, nodes):
        cluster.list_images.return_value = [
            {"Id": "sha256:only-id", "RepoTags": [f"{IMAGE.repository_path}:v2.0.0"]}
        ]

        outcomes = await synchronizer.sync_image(nodes[:1], IMAGE)

        assert outcomes[0].digest == "sha256:only-id"
