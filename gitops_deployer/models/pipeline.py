"""
Pipeline monitoring models.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PipelineStatus(str, Enum):
    """Pipeline status as reported by the source-control API."""

    NOT_STARTED = "not_started"
    CREATED = "created"
    WAITING_FOR_RESOURCE = "waiting_for_resource"
    PREPARING = "preparing"
    PENDING = "pending"
    RUNNING = "running"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: str) -> "PipelineStatus":
        try:
            return cls(value.lower())
        except ValueError:
            # Unknown statuses are treated as still in flight
            return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def label(self) -> str:
        return _LABELS.get(self, self.value.replace("_", " ").capitalize())


TERMINAL_STATUSES = frozenset(
    {
        PipelineStatus.SUCCESS,
        PipelineStatus.FAILED,
        PipelineStatus.CANCELED,
        PipelineStatus.SKIPPED,
    }
)

_LABELS = {
    PipelineStatus.SUCCESS: "Completed Successfully",
    PipelineStatus.FAILED: "Failed",
    PipelineStatus.RUNNING: "Running",
    PipelineStatus.PENDING: "Pending",
    PipelineStatus.CANCELED: "Canceled",
    PipelineStatus.SKIPPED: "Skipped",
    PipelineStatus.NOT_STARTED: "Not started",
}


class PipelineObservation(BaseModel):
    """A single observed pipeline state."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: int
    status: PipelineStatus
    web_url: Optional[str] = None


class PipelineEventKind(str, Enum):
    WAITING = "waiting"
    PROGRESS = "progress"
    COMPLETED = "completed"
    NO_PIPELINE = "no_pipeline"
    TIMEOUT = "timeout"


_TERMINAL_KINDS = frozenset(
    {PipelineEventKind.COMPLETED, PipelineEventKind.NO_PIPELINE, PipelineEventKind.TIMEOUT}
)


class PipelineEvent(BaseModel):
    """Notification emitted by the pipeline monitor."""

    model_config = ConfigDict(frozen=True)

    kind: PipelineEventKind
    commit_sha: str
    status: PipelineStatus = PipelineStatus.NOT_STARTED
    pipeline_id: Optional[int] = None
    url: Optional[str] = None
    message: str = ""

    @property
    def terminal(self) -> bool:
        return self.kind in _TERMINAL_KINDS
