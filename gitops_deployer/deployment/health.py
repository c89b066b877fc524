"""
Service convergence verification.

Polls the task list of a service until it converges, fails or runs out of
time. Each call produces a single terminal HealthStatus.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from gitops_deployer.cluster_client import ClusterClient
from gitops_deployer.models import FailedTask, HealthStatus, ServiceSpec, ServiceTask

logger = logging.getLogger(__name__)

RUNNING_STATES = frozenset({"running"})
STARTING_STATES = frozenset(
    {"new", "pending", "assigned", "accepted", "preparing", "ready", "starting"}
)
FAILED_STATES = frozenset({"failed", "rejected"})


def _newest(tasks: List[ServiceTask]) -> Optional[datetime]:
    stamps = [t.timestamp for t in tasks if t.timestamp is not None]
    return max(stamps) if stamps else None


def new_failures(tasks: List[ServiceTask]) -> List[ServiceTask]:
    """
    Failed tasks newer than the most recent running task.

    Failures left over from earlier deployments are older than the last
    good state and are ignored. With nothing running every failure counts.
    """
    running = [t for t in tasks if t.state in RUNNING_STATES]
    failed = [t for t in tasks if t.state in FAILED_STATES]

    last_good = _newest(running)
    if last_good is None:
        return failed
    return [t for t in failed if t.timestamp is not None and t.timestamp > last_good]


def evaluate(
    tasks: List[ServiceTask], desired: int, max_details: int = 5
) -> Optional[HealthStatus]:
    """
    Evaluate one task snapshot.

    Returns:
        A terminal status (healthy or failed), or None to keep polling
    """
    running = sum(1 for t in tasks if t.state in RUNNING_STATES)
    starting = sum(1 for t in tasks if t.state in STARTING_STATES)

    if running == desired and starting == 0:
        return HealthStatus(
            state="healthy",
            running_tasks=running,
            desired_replicas=desired,
            message=f"Service is healthy. All {desired} replica(s) running.",
        )

    failures = new_failures(tasks)
    if failures and running < desired:
        details = [
            FailedTask(
                node=t.node_id or "unknown",
                error=t.error or "Unknown error",
                state=t.state,
            )
            for t in failures[:max_details]
        ]
        return HealthStatus(
            state="failed",
            running_tasks=running,
            desired_replicas=desired,
            failed_tasks=details,
            message=(
                f"Service deployment failed. {running}/{desired} running, "
                f"{len(failures)} task(s) failed."
            ),
        )

    return None


class HealthVerifier:
    """Waits for a service to converge on its desired replica count."""

    def __init__(
        self,
        cluster: ClusterClient,
        poll_interval: float = 3.0,
        max_failed_details: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.max_failed_details = max_failed_details
        self._clock = clock
        self._sleep = sleep

    async def check_health(self, service: ServiceSpec, timeout: float = 60.0) -> HealthStatus:
        """
        Poll the service's tasks until healthy, failed or timed out.

        Degraded health is a returned status, not an exception.

        Args:
            service: Service to watch
            timeout: Seconds to wait before reporting a timeout

        Returns:
            The terminal health status
        """
        desired = service.desired_replicas
        deadline = self._clock() + timeout
        running = 0
        logger.info(
            f"Starting health check for {service.name} "
            f"(target {desired} replica(s), timeout {timeout:.0f}s)"
        )

        while True:
            try:
                tasks = await self.cluster.list_tasks(service.id)
            except Exception as e:
                logger.warning(f"Could not list tasks for {service.name}: {e}")
            else:
                running = sum(1 for t in tasks if t.state in RUNNING_STATES)
                logger.debug(f"{service.name}: {running}/{desired} running, {len(tasks)} task(s)")
                status = evaluate(tasks, desired, self.max_failed_details)
                if status is not None:
                    log = logger.info if status.healthy else logger.warning
                    log(f"Health check for {service.name}: {status.state} - {status.message}")
                    return status

            if self._clock() + self.poll_interval > deadline:
                break
            await self._sleep(self.poll_interval)

        logger.warning(f"Health check for {service.name} timed out after {timeout:.0f}s")
        return HealthStatus(
            state="timeout",
            running_tasks=running,
            desired_replicas=desired,
            message=(
                f"Health check timeout after {timeout:.0f}s. "
                f"{running}/{desired} running."
            ),
        )
