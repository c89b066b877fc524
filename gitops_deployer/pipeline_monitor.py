"""
Pipeline monitoring after a manifest commit.

Runs detached from the deployment request and reports progress through a
notifier callback. Each monitor keeps its own last observed status, so
concurrent monitors for different commits never interfere.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from gitops_deployer.logging_config import log_pipeline_event
from gitops_deployer.models import (
    PipelineEvent,
    PipelineEventKind,
    PipelineObservation,
    PipelineStatus,
)
from gitops_deployer.source_control import GitLabClient
from gitops_deployer.utils.log_sanitizer import short_sha

logger = logging.getLogger(__name__)

Notifier = Callable[[PipelineEvent], Awaitable[None]]


class PipelineMonitor:
    """Watches the CI pipeline of one commit until it finishes."""

    def __init__(
        self,
        source_control: GitLabClient,
        project_id: str,
        commit_sha: str,
        notifier: Optional[Notifier] = None,
        project_path: Optional[str] = None,
        initial_delay: float = 5.0,
        poll_interval: float = 15.0,
        max_wait: float = 600.0,
        no_pipeline_after: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the monitor.

        Args:
            source_control: Client used to list pipelines
            project_id: Project the commit belongs to
            commit_sha: Commit to watch
            notifier: Async callback receiving every emitted event
            project_path: Project path for pipeline URLs (falls back to the ID)
            initial_delay: Seconds to wait for the pipeline to register
            poll_interval: Seconds between polls
            max_wait: Hard ceiling in seconds
            no_pipeline_after: Seconds without any pipeline before giving up
        """
        self.source_control = source_control
        self.project_id = project_id
        self.commit_sha = commit_sha
        self.notifier = notifier
        self.project_path = project_path or project_id
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.no_pipeline_after = no_pipeline_after
        self._clock = clock
        self._sleep = sleep

        self.last_observation: Optional[PipelineObservation] = None
        self.result: Optional[PipelineEvent] = None

    @property
    def last_status(self) -> PipelineStatus:
        if self.last_observation is None:
            return PipelineStatus.NOT_STARTED
        return self.last_observation.status

    def start(self) -> "asyncio.Task[PipelineEvent]":
        """Run the monitor as a detached task."""
        return asyncio.create_task(
            self.run(), name=f"pipeline-monitor-{self.project_id}-{short_sha(self.commit_sha)}"
        )

    async def run(self) -> PipelineEvent:
        """
        Poll until the pipeline finishes, is found missing or the ceiling hits.

        Returns:
            The single terminal event
        """
        if self.result is not None:
            return self.result

        started = self._clock()
        await self._emit(
            PipelineEventKind.WAITING,
            message=f"Waiting for pipeline of commit {short_sha(self.commit_sha)} to start...",
        )
        await self._sleep(self.initial_delay)

        while self._clock() - started < self.max_wait:
            try:
                pipelines = await self.source_control.list_pipelines(
                    self.project_id, self.commit_sha
                )
            except Exception as e:
                # Transient API errors do not end monitoring
                logger.warning(f"Error checking pipeline status for {short_sha(self.commit_sha)}: {e}")
                await self._sleep(self.poll_interval)
                continue

            observation = None
            if pipelines:
                try:
                    observation = self._observe(pipelines[0])
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(
                        f"Ignoring malformed pipeline entry for {short_sha(self.commit_sha)}: {e}"
                    )

            if observation is not None:
                if observation.status.is_terminal:
                    self.last_observation = observation
                    return await self._finish(
                        PipelineEventKind.COMPLETED,
                        message=f"Pipeline {observation.pipeline_id} {observation.status.label.lower()}",
                    )
                if observation != self.last_observation:
                    self.last_observation = observation
                    await self._emit(
                        PipelineEventKind.PROGRESS,
                        message=f"Pipeline {observation.pipeline_id}: {observation.status.label}",
                    )
            elif self._clock() - started > self.no_pipeline_after:
                return await self._finish(
                    PipelineEventKind.NO_PIPELINE,
                    message="No pipeline found for this commit. CI/CD may not be configured.",
                )

            await self._sleep(self.poll_interval)

        return await self._finish(
            PipelineEventKind.TIMEOUT,
            message=(
                f"Stopped monitoring after {self.max_wait:.0f}s; "
                f"last status: {self.last_status.label}"
            ),
        )

    @staticmethod
    def _observe(entry: dict) -> PipelineObservation:
        return PipelineObservation(
            pipeline_id=entry["id"],
            status=PipelineStatus.parse(str(entry.get("status", ""))),
            web_url=entry.get("web_url"),
        )

    def _event(self, kind: PipelineEventKind, message: str) -> PipelineEvent:
        observation = self.last_observation
        url = None
        if observation is not None:
            # GitLab's own link wins over one built from the project path
            url = observation.web_url or self.source_control.pipeline_url(
                self.project_path, observation.pipeline_id
            )
        return PipelineEvent(
            kind=kind,
            commit_sha=self.commit_sha,
            status=self.last_status,
            pipeline_id=observation.pipeline_id if observation else None,
            url=url,
            message=message,
        )

    async def _finish(self, kind: PipelineEventKind, message: str) -> PipelineEvent:
        event = self._event(kind, message)
        self.result = event
        await self._notify(event)
        return event

    async def _emit(self, kind: PipelineEventKind, message: str) -> None:
        await self._notify(self._event(kind, message))

    async def _notify(self, event: PipelineEvent) -> None:
        log_pipeline_event(self.project_id, self.commit_sha, event.status.value, event.pipeline_id)
        if self.notifier is None:
            return
        try:
            await self.notifier(event)
        except Exception as e:
            logger.error(f"Failed to deliver pipeline notification: {e}")
