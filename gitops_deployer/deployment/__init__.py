"""
Deployment pipeline: image sync, service update, health verification and
the orchestrator that sequences them.
"""

from gitops_deployer.deployment.health import HealthVerifier
from gitops_deployer.deployment.image_sync import NodeImageSynchronizer, summarize
from gitops_deployer.deployment.orchestrator import DeploymentOrchestrator, EndpointLane
from gitops_deployer.deployment.service_updater import ServiceUpdater, build_update_spec

__all__ = [
    "DeploymentOrchestrator",
    "EndpointLane",
    "HealthVerifier",
    "NodeImageSynchronizer",
    "ServiceUpdater",
    "build_update_spec",
    "summarize",
]
