"""Configuration for gitops-deployer."""

from gitops_deployer.config.mappings import (
    ServiceMapping,
    ServiceMappingStore,
    StaticMappingProvider,
)
from gitops_deployer.config.settings import (
    ClusterSettings,
    DeployerConfig,
    DeploymentSettings,
    LoggingSettings,
    ManifestCommitPolicy,
    PipelineSettings,
    RegistrySettings,
    SourceControlSettings,
)

__all__ = [
    "ClusterSettings",
    "DeployerConfig",
    "DeploymentSettings",
    "LoggingSettings",
    "ManifestCommitPolicy",
    "PipelineSettings",
    "RegistrySettings",
    "ServiceMapping",
    "ServiceMappingStore",
    "SourceControlSettings",
    "StaticMappingProvider",
]
