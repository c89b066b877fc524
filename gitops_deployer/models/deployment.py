"""
Deployment-related data models.

These models describe per-node pull results, service health, manifest
commits and the overall outcome returned to callers. All of them are
immutable once built; the orchestrator only collects them.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImagePullOutcome(BaseModel):
    """Result of pulling an image on one node."""

    model_config = ConfigDict(frozen=True)

    node: str = Field(..., description="Node hostname (or ID when unnamed)")
    status: Literal["success", "failed"] = Field(..., description="Pull result")
    digest: Optional[str] = Field(None, description="Content digest reported by the node")
    image_id: Optional[str] = Field(None, description="Local image ID on the node")
    error: Optional[str] = Field(None, description="Error message when the pull failed")

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PullSummary(BaseModel):
    """Aggregate view over the outcomes of one image sync."""

    model_config = ConfigDict(frozen=True)

    succeeded: int
    total: int

    @classmethod
    def from_outcomes(cls, outcomes: List[ImagePullOutcome]) -> "PullSummary":
        return cls(succeeded=sum(1 for o in outcomes if o.succeeded), total=len(outcomes))

    @property
    def usable(self) -> bool:
        """At least one node has the image."""
        return self.succeeded > 0

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.succeeded == self.total

    def describe(self) -> str:
        return f"{self.succeeded}/{self.total} nodes"


class FailedTask(BaseModel):
    """A task that failed after the service's last good state."""

    model_config = ConfigDict(frozen=True)

    node: str
    error: str
    state: str


class HealthStatus(BaseModel):
    """Terminal result of one health verification."""

    model_config = ConfigDict(frozen=True)

    state: Literal["healthy", "failed", "timeout"]
    running_tasks: int = 0
    desired_replicas: int = 1
    failed_tasks: List[FailedTask] = Field(default_factory=list)
    message: str = ""

    @property
    def healthy(self) -> bool:
        return self.state == "healthy"

    @property
    def progress(self) -> str:
        return f"{self.running_tasks}/{self.desired_replicas}"


class ManifestCommit(BaseModel):
    """Commit that recorded a new image tag in the GitOps manifest."""

    model_config = ConfigDict(frozen=True)

    commit_id: str
    branch: str
    file_path: str


class DeploymentRequest(BaseModel):
    """One service/tag pair of a batch deployment."""

    model_config = ConfigDict(frozen=True)

    service_name: str = Field(..., min_length=1)
    tag: str = Field(..., min_length=1)


class DeploymentOutcome(BaseModel):
    """
    The result of deploying one service.

    ``success`` reflects the cluster rollout (pull, update and health).
    ``rolled_out`` tells whether the service update was applied at all, so an
    unhealthy rollout can be told apart from one that never started.
    Manifest bookkeeping is reported separately: a rollout whose manifest
    commit failed keeps ``success`` and sets ``manifest_error``.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str
    success: bool
    rolled_out: bool = False
    image: Optional[str] = None
    pull_outcomes: List[ImagePullOutcome] = Field(default_factory=list)
    health: Optional[HealthStatus] = None
    manifest_commit: Optional[ManifestCommit] = None
    manifest_error: Optional[str] = None
    message: str

    @property
    def pull_summary(self) -> PullSummary:
        return PullSummary.from_outcomes(self.pull_outcomes)

    @property
    def partial(self) -> bool:
        """Rollout succeeded but the manifest could not be updated."""
        return self.success and self.manifest_error is not None
