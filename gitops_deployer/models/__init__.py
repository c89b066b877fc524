"""
Pydantic models for the deployment engine.
"""

from gitops_deployer.models.cluster import (
    ClusterNode,
    ServiceSpec,
    ServiceTask,
    parse_docker_timestamp,
)
from gitops_deployer.models.deployment import (
    DeploymentOutcome,
    DeploymentRequest,
    FailedTask,
    HealthStatus,
    ImagePullOutcome,
    ManifestCommit,
    PullSummary,
)
from gitops_deployer.models.image import ImageReference
from gitops_deployer.models.pipeline import (
    PipelineEvent,
    PipelineEventKind,
    PipelineObservation,
    PipelineStatus,
)
from gitops_deployer.models.registry import RegistryCredential

__all__ = [
    # Cluster
    "ClusterNode",
    "ServiceSpec",
    "ServiceTask",
    "parse_docker_timestamp",
    # Deployment
    "DeploymentOutcome",
    "DeploymentRequest",
    "FailedTask",
    "HealthStatus",
    "ImagePullOutcome",
    "ManifestCommit",
    "PullSummary",
    # Images and registry
    "ImageReference",
    "RegistryCredential",
    # Pipelines
    "PipelineEvent",
    "PipelineEventKind",
    "PipelineObservation",
    "PipelineStatus",
]
