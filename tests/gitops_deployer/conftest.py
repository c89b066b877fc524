"""
Shared fixtures for gitops-deployer tests.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from gitops_deployer.models import ClusterNode, RegistryCredential, ServiceSpec


@pytest.fixture
def nodes():
    """Three ready nodes and one drained node."""
    return [
        ClusterNode(id="n1", hostname="node-1", role="manager", ready_state="ready"),
        ClusterNode(id="n2", hostname="node-2", role="worker", ready_state="ready"),
        ClusterNode(id="n3", hostname="node-3", role="worker", ready_state="ready"),
        ClusterNode(id="n4", hostname="node-4", role="worker", ready_state="down"),
    ]


@pytest.fixture
def credential():
    return RegistryCredential(
        username="AWS",
        password="secret-password",
        registry_host="https://123456789012.dkr.ecr.us-east-1.amazonaws.com",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=12),
    )


@pytest.fixture
def credentials(credential):
    """Credential cache stub returning a valid credential."""
    cache = Mock()
    cache.get_credential = AsyncMock(return_value=credential)
    return cache


@pytest.fixture
def make_service():
    """Factory for service snapshots."""

    def _make(
        name="shop_api",
        image="123456789012.dkr.ecr.us-east-1.amazonaws.com/shop/api:v1.0.0",
        replicas=3,
        version=42,
        service_id=None,
    ):
        return ServiceSpec(
            id=service_id or f"id-{name}",
            name=name,
            version_index=version,
            image=image,
            desired_replicas=replicas,
            raw_spec={
                "Name": name,
                "Labels": {"com.docker.stack.namespace": "shop"},
                "TaskTemplate": {
                    "ContainerSpec": {"Image": image, "Env": ["MODE=prod"]},
                    "ForceUpdate": 3,
                },
                "Mode": {"Replicated": {"Replicas": replicas}},
            },
        )

    return _make
