"""gitops-deployer - Swarm image rollout and GitOps manifest bookkeeping."""

__version__ = "1.0.0"

from .deployment import DeploymentOrchestrator

__all__ = ["DeploymentOrchestrator", "__version__"]
