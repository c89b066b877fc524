"""
Deployment orchestrator.

Sequences image sync, service update and health verification for one or
more services, then records the new tags in the GitOps manifest and starts
pipeline monitoring for the resulting commits.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from gitops_deployer import manifest
from gitops_deployer.cluster_client import ClusterClient
from gitops_deployer.config import (
    DeployerConfig,
    DeploymentSettings,
    ManifestCommitPolicy,
    PipelineSettings,
    ServiceMapping,
    ServiceMappingStore,
    StaticMappingProvider,
)
from gitops_deployer.config.mappings import MappingProvider
from gitops_deployer.deployment.health import HealthVerifier
from gitops_deployer.deployment.image_sync import NodeImageSynchronizer, summarize
from gitops_deployer.deployment.service_updater import ServiceUpdater
from gitops_deployer.exceptions import (
    DeployerError,
    SourceControlError,
    TotalPullFailureError,
    VersionConflictError,
)
from gitops_deployer.logging_config import log_deployment_operation
from gitops_deployer.models import (
    DeploymentOutcome,
    DeploymentRequest,
    HealthStatus,
    ImagePullOutcome,
    ImageReference,
    ManifestCommit,
    ServiceSpec,
)
from gitops_deployer.pipeline_monitor import Notifier, PipelineMonitor
from gitops_deployer.registry_credentials import CredentialCache, EcrTokenIssuer
from gitops_deployer.source_control import GitLabClient
from gitops_deployer.utils.log_sanitizer import (
    sanitize_for_log,
    sanitize_service_name,
    short_sha,
)

logger = logging.getLogger(__name__)

SourceControlFactory = Callable[[Optional[str]], GitLabClient]


@dataclass
class EndpointLane:
    """Cluster client of one swarm endpoint and the collaborators bound to it."""

    cluster: ClusterClient
    synchronizer: NodeImageSynchronizer
    updater: ServiceUpdater
    verifier: HealthVerifier


LaneFactory = Callable[[int], EndpointLane]


@dataclass
class _Rollout:
    """Working state of one requested service while the batch runs."""

    request: DeploymentRequest
    mapping: Optional[ServiceMapping] = None
    # None selects the default endpoint
    endpoint: Optional[int] = None
    lane: Optional[EndpointLane] = None
    service: Optional[ServiceSpec] = None
    image: Optional[ImageReference] = None
    pull_outcomes: List[ImagePullOutcome] = field(default_factory=list)
    health: Optional[HealthStatus] = None
    rolled_out: bool = False
    error: Optional[str] = None
    manifest_commit: Optional[ManifestCommit] = None
    manifest_error: Optional[str] = None
    manifest_note: Optional[str] = None

    @property
    def name(self) -> str:
        return self.request.service_name


class DeploymentOrchestrator:
    """Runs image rollouts and GitOps manifest updates."""

    def __init__(
        self,
        cluster: ClusterClient,
        synchronizer: NodeImageSynchronizer,
        updater: ServiceUpdater,
        verifier: HealthVerifier,
        mappings: MappingProvider,
        source_control_factory: Optional[SourceControlFactory] = None,
        settings: Optional[DeploymentSettings] = None,
        pipeline_settings: Optional[PipelineSettings] = None,
        endpoint_id: Optional[int] = None,
        lane_factory: Optional[LaneFactory] = None,
    ) -> None:
        """
        Initialize deployment orchestrator.

        ``cluster`` and the collaborators next to it serve the default
        endpoint (``endpoint_id``). Services whitelisted on another endpoint
        get their own lane from ``lane_factory``; without a factory they are
        rejected.
        """
        self.cluster = cluster
        self.synchronizer = synchronizer
        self.updater = updater
        self.verifier = verifier
        self.mappings = mappings
        self.source_control_factory = source_control_factory
        self.settings = settings or DeploymentSettings()
        self.pipeline_settings = pipeline_settings or PipelineSettings()
        self.endpoint_id = endpoint_id
        self.lane_factory = lane_factory

        self._default_lane = EndpointLane(cluster, synchronizer, updater, verifier)
        self._lanes: Dict[int, EndpointLane] = {}

        # One client per token, kept open while monitors use it
        self._source_control_clients: Dict[Optional[str], GitLabClient] = {}

        # Track background tasks to prevent garbage collection
        self._background_tasks: set = set()

    @classmethod
    def from_config(
        cls, config: DeployerConfig, mappings: Optional[MappingProvider] = None
    ) -> "DeploymentOrchestrator":
        """Build an orchestrator and its collaborators from configuration."""
        # One credential cache for every endpoint
        credentials = CredentialCache(
            EcrTokenIssuer(config.registry.region, config.registry.registry_id),
            default_lifetime=timedelta(hours=config.registry.default_token_lifetime_hours),
        )

        def build_lane(endpoint_id: int) -> EndpointLane:
            cluster = ClusterClient(
                base_url=config.cluster.url,
                endpoint_id=endpoint_id,
                api_key=config.cluster.api_key,
                username=config.cluster.username,
                password=config.cluster.password,
                timeout=config.cluster.request_timeout,
                pull_timeout=config.cluster.pull_timeout,
            )
            return EndpointLane(
                cluster=cluster,
                synchronizer=NodeImageSynchronizer(cluster, credentials),
                updater=ServiceUpdater(cluster),
                verifier=HealthVerifier(
                    cluster,
                    poll_interval=config.deployment.health_poll_interval,
                    max_failed_details=config.deployment.max_failed_task_details,
                ),
            )

        default = build_lane(config.cluster.endpoint_id)
        if mappings is None:
            if config.mappings_file:
                mappings = ServiceMappingStore(config.mappings_file)
            else:
                mappings = StaticMappingProvider([])

        scm = config.source_control

        def source_control_factory(token: Optional[str]) -> GitLabClient:
            effective = token or scm.token
            if not effective:
                raise SourceControlError("No source-control token available")
            return GitLabClient(scm.url, effective, timeout=scm.request_timeout)

        return cls(
            cluster=default.cluster,
            synchronizer=default.synchronizer,
            updater=default.updater,
            verifier=default.verifier,
            mappings=mappings,
            source_control_factory=source_control_factory,
            settings=config.deployment,
            pipeline_settings=config.pipeline,
            endpoint_id=config.cluster.endpoint_id,
            lane_factory=build_lane,
        )

    # Entry points

    async def deploy(
        self,
        service_name: str,
        tag: str,
        *,
        update_manifest: bool = False,
        token: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> DeploymentOutcome:
        """
        Deploy a single service at ``tag``.

        Never raises; every failure is reported on the returned outcome.

        Args:
            service_name: Swarm service name
            tag: Image tag to roll out
            update_manifest: Record the tag in the GitOps manifest afterwards
            token: Source-control token of the operator
            notifier: Receives pipeline monitor events
        """
        try:
            request = DeploymentRequest(service_name=service_name, tag=tag)
        except ValidationError as e:
            return DeploymentOutcome(
                service_name=service_name,
                success=False,
                message=f"Deployment of {service_name} failed: invalid request: {e}",
            )
        outcomes = await self.deploy_batch(
            [request],
            update_manifest=update_manifest,
            token=token,
            notifier=notifier,
        )
        return outcomes[0]

    async def deploy_batch(
        self,
        requests: Sequence[DeploymentRequest],
        *,
        update_manifest: bool = False,
        token: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> List[DeploymentOutcome]:
        """
        Deploy several services.

        Services resolving to the same image are pulled once. Each service is
        then updated and verified on its own, and manifest changes that land
        in the same file are committed together.

        Returns:
            One outcome per request, in request order
        """
        rollouts = [_Rollout(request=request) for request in requests]
        logger.info(
            f"Starting deployment of {len(rollouts)} service(s): "
            + ", ".join(f"{r.name}:{r.request.tag}" for r in rollouts)
        )

        seen = set()
        for rollout in rollouts:
            if rollout.name in seen:
                rollout.error = f"{rollout.name} is requested more than once in this batch"
                logger.error(f"Rejected duplicate request for {sanitize_for_log(rollout.name)}")
            seen.add(rollout.name)

        await asyncio.gather(*(self._resolve(r) for r in rollouts if r.error is None))

        groups: "OrderedDict[Tuple[Optional[int], str], List[_Rollout]]" = OrderedDict()
        for rollout in rollouts:
            if rollout.error is None and rollout.image is not None:
                groups.setdefault((rollout.endpoint, str(rollout.image)), []).append(rollout)

        if groups:
            await self._roll_out_groups(groups)

        if update_manifest:
            await self._update_manifests(rollouts, token, notifier)

        outcomes = [self._outcome(r) for r in rollouts]
        for outcome in outcomes:
            log_deployment_operation(
                "rollout",
                outcome.service_name,
                outcome.success,
                {"image": outcome.image, "message": outcome.message},
            )
        return outcomes

    async def create_release_tag(
        self,
        service_name: str,
        tag: str,
        message: str = "",
        *,
        ref: str = "main",
        token: Optional[str] = None,
        notifier: Optional[Notifier] = None,
    ) -> Dict:
        """
        Create a release tag in the service's source project and watch its build.

        Raises:
            DeployerError: If the service has no source project or tagging fails
        """
        mapping = self.mappings.get(service_name)
        if not mapping.registry_project_id:
            raise DeployerError(f'Service "{service_name}" has no source project configured')

        client = self._source_control(token)
        created = await client.create_tag(mapping.registry_project_id, tag, ref, message)

        commit_sha = (created.get("commit") or {}).get("id") or created.get("target")
        if commit_sha:
            self._start_monitor(client, mapping.registry_project_id, commit_sha, notifier)
        return created

    async def recent_tags(
        self, service_name: str, *, limit: int = 5, token: Optional[str] = None
    ) -> List[Dict]:
        """Most recent release tags of the service's source project."""
        mapping = self.mappings.get(service_name)
        if not mapping.registry_project_id:
            raise DeployerError(f'Service "{service_name}" has no source project configured')
        client = self._source_control(token)
        return await client.list_tags(mapping.registry_project_id, limit=limit)

    async def redeploy_stack(self, service_name: str) -> bool:
        """
        Ask the cluster to redeploy the GitOps stack the service belongs to.

        Returns:
            True if the stack webhook accepted the trigger
        """
        mapping = self.mappings.get(service_name)
        if not mapping.webhook_id:
            raise DeployerError(
                f'Stack of service "{service_name}" has no redeploy webhook configured'
            )
        logger.info(
            f"Triggering redeploy of stack {mapping.stack_name or '-'} "
            f"for {sanitize_service_name(service_name)}"
        )
        return await self.cluster.trigger_stack_webhook(mapping.webhook_id)

    async def wait_for_monitors(self) -> None:
        """Wait until all running pipeline monitors have finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop running monitors and close HTTP clients."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for client in self._source_control_clients.values():
            await client.close()
        self._source_control_clients.clear()
        for lane in self._lanes.values():
            await lane.cluster.close()
        self._lanes.clear()
        await self.cluster.close()

    # Rollout

    def _lane(self, endpoint: Optional[int]) -> EndpointLane:
        if endpoint is None:
            return self._default_lane
        lane = self._lanes.get(endpoint)
        if lane is None:
            if self.lane_factory is None:
                raise DeployerError(f"Endpoint {endpoint} is not reachable from this deployer")
            lane = self.lane_factory(endpoint)
            self._lanes[endpoint] = lane
        return lane

    async def _resolve(self, rollout: _Rollout) -> None:
        try:
            tag = rollout.request.tag
            if not tag or any(c.isspace() for c in tag) or ":" in tag or "@" in tag:
                raise ValueError(f"Invalid image tag: {tag!r}")
            rollout.mapping = self.mappings.get(rollout.name)
            endpoint = rollout.mapping.endpoint_id
            if endpoint is not None and endpoint != self.endpoint_id:
                rollout.endpoint = endpoint
            rollout.lane = self._lane(rollout.endpoint)
            rollout.service = await rollout.lane.cluster.get_service(rollout.name)
            current = ImageReference.parse(rollout.service.image)
            rollout.image = current.with_tag(rollout.request.tag)
        except Exception as e:
            logger.error(f"Cannot deploy {sanitize_for_log(rollout.name)}: {e}")
            rollout.error = str(e)

    async def _roll_out_groups(
        self, groups: "OrderedDict[Tuple[Optional[int], str], List[_Rollout]]"
    ) -> None:
        by_endpoint: "OrderedDict[Optional[int], List[List[_Rollout]]]" = OrderedDict()
        for (endpoint, _), members in groups.items():
            by_endpoint.setdefault(endpoint, []).append(members)

        await asyncio.gather(
            *(
                self._roll_out_endpoint(self._lane(endpoint), image_groups)
                for endpoint, image_groups in by_endpoint.items()
            )
        )

    async def _roll_out_endpoint(
        self, lane: EndpointLane, image_groups: List[List[_Rollout]]
    ) -> None:
        try:
            nodes = await lane.cluster.list_nodes()
        except Exception as e:
            logger.error(f"Cannot list cluster nodes: {e}")
            for members in image_groups:
                for rollout in members:
                    rollout.error = f"Cannot list cluster nodes: {e}"
            return

        async def roll_out_group(members: List[_Rollout]) -> None:
            image = members[0].image
            assert image is not None
            try:
                outcomes = await lane.synchronizer.sync_image(nodes, image)
            except Exception as e:
                logger.error(f"Image sync of {image} failed: {e}")
                for rollout in members:
                    rollout.error = f"Image sync failed: {e}"
                return
            summary = summarize(outcomes)
            for rollout in members:
                rollout.pull_outcomes = outcomes

            if not summary.usable:
                error = TotalPullFailureError(str(image), summary.total)
                logger.error(f"{error}; services left untouched: {[m.name for m in members]}")
                for rollout in members:
                    rollout.error = str(error)
                return

            await asyncio.gather(*(self._update_and_verify(r) for r in members))

        await asyncio.gather(*(roll_out_group(members) for members in image_groups))

    async def _update_and_verify(self, rollout: _Rollout) -> None:
        assert rollout.service is not None and rollout.image is not None
        lane = rollout.lane or self._default_lane
        try:
            await lane.updater.update_service(rollout.service, rollout.image)
        except VersionConflictError as e:
            rollout.error = f"{e}. Re-read the service and retry."
            return
        except Exception as e:
            rollout.error = f"Failed to update service: {e}"
            return

        rollout.rolled_out = True
        try:
            rollout.health = await lane.verifier.check_health(
                rollout.service, timeout=self.settings.health_timeout
            )
        except Exception as e:
            logger.error(f"Health check of {rollout.name} crashed: {e}", exc_info=True)
            rollout.error = f"Health check failed: {e}"

    # Manifest bookkeeping

    def _manifest_candidates(self, rollouts: List[_Rollout]) -> List[_Rollout]:
        candidates = []
        for rollout in rollouts:
            if not rollout.rolled_out:
                continue
            if rollout.mapping is None or not rollout.mapping.has_manifest:
                rollout.manifest_note = "no GitOps manifest configured"
                continue
            summary = summarize(rollout.pull_outcomes)
            if (
                self.settings.manifest_commit_policy == ManifestCommitPolicy.ALL_NODES
                and not summary.complete
            ):
                rollout.manifest_note = (
                    f"manifest not updated: image pulled on only {summary.describe()}"
                )
                continue
            if rollout.health is None or not rollout.health.healthy:
                if not self.settings.commit_on_unhealthy:
                    rollout.manifest_note = "manifest not updated: service is not healthy"
                    continue
            candidates.append(rollout)
        return candidates

    async def _update_manifests(
        self, rollouts: List[_Rollout], token: Optional[str], notifier: Optional[Notifier]
    ) -> None:
        groups: "OrderedDict[Tuple[str, str, str], List[_Rollout]]" = OrderedDict()
        for rollout in self._manifest_candidates(rollouts):
            assert rollout.mapping is not None
            groups.setdefault(rollout.mapping.manifest_location, []).append(rollout)

        if not groups:
            return

        try:
            client = self._source_control(token)
        except DeployerError as e:
            for members in groups.values():
                for rollout in members:
                    rollout.manifest_error = str(e)
            return

        # One commit per file group; commits to the same repository run in order
        by_repo: "OrderedDict[str, List[Tuple[Tuple[str, str, str], List[_Rollout]]]]" = (
            OrderedDict()
        )
        for location, members in groups.items():
            by_repo.setdefault(location[0], []).append((location, members))

        async def commit_repo(file_groups) -> None:
            for location, members in file_groups:
                await self._commit_manifest_group(client, location, members, notifier)

        await asyncio.gather(*(commit_repo(file_groups) for file_groups in by_repo.values()))

    async def _commit_manifest_group(
        self,
        client: GitLabClient,
        location: Tuple[str, str, str],
        members: List[_Rollout],
        notifier: Optional[Notifier],
    ) -> None:
        repo_id, file_path, branch = location
        updates: "OrderedDict[str, str]" = OrderedDict()
        for rollout in members:
            assert rollout.mapping is not None
            updates[rollout.mapping.manifest_key] = rollout.request.tag

        try:
            content = await client.get_file(repo_id, file_path, branch)
            patched, previous = manifest.apply_updates(content, updates)
            patched = manifest.clean(patched)
            message = manifest.commit_message(updates, previous)
            commit = await client.commit_file(repo_id, file_path, branch, patched, message)
        except Exception as e:
            logger.error(f"Manifest update of {file_path} in {repo_id} failed: {e}")
            for rollout in members:
                rollout.manifest_error = str(e)
                log_deployment_operation("manifest", rollout.name, False, {"error": str(e)})
            return

        logger.info(
            f"Committed {file_path}@{branch} ({short_sha(commit.commit_id)}) "
            f"for {', '.join(updates)}"
        )
        for rollout in members:
            rollout.manifest_commit = commit
            log_deployment_operation(
                "manifest", rollout.name, True, {"commit": commit.commit_id, "file": file_path}
            )

        self._start_monitor(client, repo_id, commit.commit_id, notifier)

    def _source_control(self, token: Optional[str]) -> GitLabClient:
        if self.source_control_factory is None:
            raise SourceControlError("Source control is not configured")
        client = self._source_control_clients.get(token)
        if client is None:
            client = self.source_control_factory(token)
            self._source_control_clients[token] = client
        return client

    def _start_monitor(
        self,
        client: GitLabClient,
        project_id: str,
        commit_sha: str,
        notifier: Optional[Notifier],
    ) -> PipelineMonitor:
        settings = self.pipeline_settings
        monitor = PipelineMonitor(
            client,
            project_id,
            commit_sha,
            notifier=notifier,
            initial_delay=settings.initial_delay,
            poll_interval=settings.poll_interval,
            max_wait=settings.max_wait,
            no_pipeline_after=settings.no_pipeline_after,
        )
        task = monitor.start()
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return monitor

    # Results

    def _outcome(self, rollout: _Rollout) -> DeploymentOutcome:
        health = rollout.health
        success = rollout.rolled_out and health is not None and health.healthy
        return DeploymentOutcome(
            service_name=rollout.name,
            success=success,
            rolled_out=rollout.rolled_out,
            image=str(rollout.image) if rollout.image else None,
            pull_outcomes=rollout.pull_outcomes,
            health=health,
            manifest_commit=rollout.manifest_commit,
            manifest_error=rollout.manifest_error,
            message=self._message(rollout),
        )

    @staticmethod
    def _message(rollout: _Rollout) -> str:
        parts: List[str] = []
        if rollout.pull_outcomes:
            parts.append(f"image pulled on {summarize(rollout.pull_outcomes).describe()}")

        if rollout.error:
            parts.append(rollout.error)
            if rollout.manifest_commit is not None:
                parts.append(f"manifest committed {short_sha(rollout.manifest_commit.commit_id)}")
            return f"Deployment of {rollout.name} failed: " + "; ".join(parts)

        health = rollout.health
        if health is not None:
            if health.healthy:
                parts.append(f"service healthy ({health.progress} running)")
            elif health.state == "failed":
                parts.append(f"service unhealthy ({health.progress} running): {health.message}")
            else:
                parts.append(f"health check timed out ({health.progress} running)")

        if rollout.manifest_commit is not None:
            parts.append(
                f"manifest committed {short_sha(rollout.manifest_commit.commit_id)} "
                f"on {rollout.manifest_commit.branch}"
            )
        elif rollout.manifest_error:
            parts.append(f"manifest update failed: {rollout.manifest_error}")
        elif rollout.manifest_note:
            parts.append(rollout.manifest_note)

        return f"{rollout.name} -> {rollout.image}: " + "; ".join(parts)
