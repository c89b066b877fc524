"""
Settings for gitops-deployer.

Loaded from a YAML file; secrets and endpoints can be overridden through
environment variables.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator


class ManifestCommitPolicy(str, Enum):
    """When a manifest commit is allowed after the image sync."""

    ANY_NODE = "any_node"  # commit once the rollout proceeded
    ALL_NODES = "all_nodes"  # skip the commit if any node pull failed


class ClusterSettings(BaseModel):
    """Cluster management API (Portainer) connection."""

    url: str = Field(default="http://localhost:9000", description="Portainer base URL")
    endpoint_id: int = Field(default=1, description="Swarm environment ID")
    api_key: Optional[str] = Field(None, repr=False)
    username: Optional[str] = None
    password: Optional[str] = Field(None, repr=False)
    request_timeout: float = Field(default=300.0, gt=0)
    pull_timeout: float = Field(default=600.0, gt=0)

    @model_validator(mode="after")
    def validate_auth(self) -> "ClusterSettings":
        if self.username and not self.password:
            raise ValueError("cluster.password is required when cluster.username is set")
        return self


class RegistrySettings(BaseModel):
    """Image registry (ECR) token issuing."""

    region: str = Field(default="us-east-1")
    registry_id: Optional[str] = None
    default_token_lifetime_hours: float = Field(default=12.0, gt=0)


class SourceControlSettings(BaseModel):
    """Source-control API (GitLab) connection."""

    url: str = Field(default="https://gitlab.com")
    token: Optional[str] = Field(None, repr=False, description="Fallback token when none is supplied per call")
    request_timeout: float = Field(default=30.0, gt=0)


class DeploymentSettings(BaseModel):
    health_timeout: float = Field(default=60.0, gt=0)
    health_poll_interval: float = Field(default=3.0, gt=0)
    max_failed_task_details: int = Field(default=5, ge=1)
    manifest_commit_policy: ManifestCommitPolicy = ManifestCommitPolicy.ANY_NODE
    commit_on_unhealthy: bool = True


class PipelineSettings(BaseModel):
    initial_delay: float = Field(default=5.0, ge=0)
    poll_interval: float = Field(default=15.0, gt=0)
    max_wait: float = Field(default=600.0, gt=0)
    no_pipeline_after: float = Field(default=30.0, ge=0)


class LoggingSettings(BaseModel):
    log_dir: Optional[str] = None
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False


class DeployerConfig(BaseModel):
    """Top-level configuration."""

    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    source_control: SourceControlSettings = Field(default_factory=SourceControlSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    mappings_file: Optional[str] = Field(None, description="Path to the service whitelist")

    @classmethod
    def from_file(cls, path: Union[str, Path], environ: Optional[Dict[str, str]] = None) -> "DeployerConfig":
        """
        Load configuration from a YAML file, then apply environment overrides.

        A missing file yields the defaults plus environment overrides.
        """
        config_path = Path(path)
        data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Configuration file {config_path} must contain a mapping")

        return cls.model_validate(apply_env_overrides(data, environ))

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json", exclude_none=True), sort_keys=False)


# env var -> (section, key)
ENV_OVERRIDES = {
    "PORTAINER_URL": ("cluster", "url"),
    "PORTAINER_ENDPOINT_ID": ("cluster", "endpoint_id"),
    "PORTAINER_API_KEY": ("cluster", "api_key"),
    "PORTAINER_USERNAME": ("cluster", "username"),
    "PORTAINER_PASSWORD": ("cluster", "password"),
    "AWS_REGION": ("registry", "region"),
    "ECR_REGISTRY_ID": ("registry", "registry_id"),
    "GITLAB_URL": ("source_control", "url"),
    "GITLAB_TOKEN": ("source_control", "token"),
}


def apply_env_overrides(
    data: Dict[str, Any], environ: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Return a copy of ``data`` with environment overrides applied."""
    env = os.environ if environ is None else environ
    merged = {key: (dict(value) if isinstance(value, dict) else value) for key, value in data.items()}

    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            merged.setdefault(section, {})[key] = value

    if env.get("DEPLOYER_MAPPINGS_FILE"):
        merged["mappings_file"] = env["DEPLOYER_MAPPINGS_FILE"]

    return merged
