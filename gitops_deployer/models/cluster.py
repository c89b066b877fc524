"""
Cluster-side data models.

Snapshots of swarm nodes, services and tasks as returned by the Docker API
behind the cluster management proxy. None of these are cached across calls.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

_FRACTION = re.compile(r"\.(\d+)")


def parse_docker_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a Docker API timestamp.

    Docker reports nanosecond precision (``2024-05-01T10:00:00.123456789Z``);
    the fraction is truncated to microseconds before parsing.
    """
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ClusterNode(BaseModel):
    """A swarm node snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Node ID")
    hostname: Optional[str] = Field(None, description="Node hostname")
    role: str = Field(default="worker", description="manager or worker")
    ready_state: str = Field(default="unknown", description="Node readiness state")

    @property
    def is_ready(self) -> bool:
        return self.ready_state.lower() == "ready"

    @property
    def display_name(self) -> str:
        return self.hostname or self.id

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ClusterNode":
        return cls(
            id=data["ID"],
            hostname=(data.get("Description") or {}).get("Hostname") or data.get("Hostname"),
            role=(data.get("Spec") or {}).get("Role", "worker"),
            ready_state=(data.get("Status") or {}).get("State", "unknown"),
        )


class ServiceSpec(BaseModel):
    """
    A swarm service snapshot.

    ``version_index`` is the optimistic concurrency token that must accompany
    any update of this service.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Service ID")
    name: str = Field(..., description="Service name")
    version_index: int = Field(..., description="Version index read with this snapshot")
    image: str = Field(..., description="Image reference currently in the spec")
    desired_replicas: int = Field(default=1, description="Desired replica count")
    raw_spec: Dict[str, Any] = Field(default_factory=dict, description="Full Docker service spec")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ServiceSpec":
        spec = data.get("Spec") or {}
        container_spec = (spec.get("TaskTemplate") or {}).get("ContainerSpec") or {}
        replicated = (spec.get("Mode") or {}).get("Replicated") or {}
        return cls(
            id=data["ID"],
            name=spec.get("Name", ""),
            version_index=(data.get("Version") or {}).get("Index", 0),
            image=container_spec.get("Image", ""),
            desired_replicas=replicated.get("Replicas") or 1,
            raw_spec=spec,
        )


class ServiceTask(BaseModel):
    """A single task (container instance) of a service."""

    model_config = ConfigDict(frozen=True)

    id: str
    node_id: Optional[str] = None
    state: str
    timestamp: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ServiceTask":
        status = data.get("Status") or {}
        return cls(
            id=data.get("ID", ""),
            node_id=data.get("NodeID"),
            state=status.get("State", "unknown"),
            timestamp=parse_docker_timestamp(status.get("Timestamp")),
            error=status.get("Err") or status.get("Message"),
        )
