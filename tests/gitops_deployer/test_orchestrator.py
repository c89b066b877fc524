"""
Tests for the deployment orchestrator.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from gitops_deployer.config import (
    DeployerConfig,
    DeploymentSettings,
    ManifestCommitPolicy,
    PipelineSettings,
    ServiceMapping,
    ServiceMappingStore,
    StaticMappingProvider,
)
from gitops_deployer.deployment import DeploymentOrchestrator, EndpointLane
from gitops_deployer.exceptions import (
    ClusterAPIError,
    ServiceNotFoundError,
    SourceControlError,
    VersionConflictError,
)
from gitops_deployer.models import (
    DeploymentRequest,
    HealthStatus,
    ImagePullOutcome,
    ManifestCommit,
    PipelineEventKind,
)

REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"

MANIFEST = (
    "services:\n"
    "  svc-a:\n"
    f"    image: {REGISTRY}/shop/app:v1\n"
    "  svc-b:\n"
    f"    image: {REGISTRY}/shop/app:v1\n"
)


def pulled(*statuses):
    return [
        ImagePullOutcome(node=f"node-{i + 1}", status=status, error=None if status == "success" else "boom")
        for i, status in enumerate(statuses)
    ]


def healthy(replicas=3):
    return HealthStatus(
        state="healthy",
        running_tasks=replicas,
        desired_replicas=replicas,
        message=f"Service is healthy. All {replicas} replica(s) running.",
    )


class TestDeploymentOrchestrator:
    @pytest.fixture
    def services(self, make_service):
        return {
            "svc-a": make_service("svc-a", image=f"{REGISTRY}/shop/app:v1"),
            "svc-b": make_service("svc-b", image=f"{REGISTRY}/shop/app:v1"),
            "svc-c": make_service("svc-c", image=f"{REGISTRY}/shop/other:v7"),
        }

    @pytest.fixture
    def cluster(self, services, nodes):
        cluster = Mock()
        cluster.list_nodes = AsyncMock(return_value=nodes)

        async def get_service(name):
            if name not in services:
                raise ServiceNotFoundError(name)
            return services[name]

        cluster.get_service = AsyncMock(side_effect=get_service)
        cluster.close = AsyncMock()
        return cluster

    @pytest.fixture
    def synchronizer(self):
        synchronizer = Mock()
        synchronizer.sync_image = AsyncMock(return_value=pulled("success", "success", "failed"))
        return synchronizer

    @pytest.fixture
    def updater(self):
        updater = Mock()
        updater.update_service = AsyncMock()
        return updater

    @pytest.fixture
    def verifier(self):
        verifier = Mock()
        verifier.check_health = AsyncMock(return_value=healthy())
        return verifier

    @pytest.fixture
    def mappings(self):
        return StaticMappingProvider(
            [
                ServiceMapping(
                    service_name="svc-a",
                    registry_project_id="17",
                    manifest_repo_id="42",
                    manifest_file_path="stacks/shop.yml",
                ),
                ServiceMapping(
                    service_name="svc-b",
                    manifest_repo_id="42",
                    manifest_file_path="stacks/shop.yml",
                ),
                ServiceMapping(
                    service_name="svc-c",
                    manifest_repo_id="99",
                    manifest_file_path="stacks/other.yml",
                    manifest_service_name="other",
                ),
            ]
        )

    @pytest.fixture
    def source_control(self):
        scm = Mock()
        scm.get_file = AsyncMock(return_value=MANIFEST)
        scm.commit_file = AsyncMock(
            side_effect=lambda repo, path, branch, content, message: ManifestCommit(
                commit_id=f"commit-{repo}", branch=branch, file_path=path
            )
        )
        scm.create_tag = AsyncMock(return_value={"name": "v2", "commit": {"id": "tagcommit"}})
        scm.list_pipelines = AsyncMock(return_value=[{"id": 5, "status": "success"}])
        scm.pipeline_url = Mock(return_value="https://gitlab.example.com/p/-/pipelines/5")
        scm.close = AsyncMock()
        return scm

    @pytest.fixture
    def orchestrator(self, cluster, synchronizer, updater, verifier, mappings, source_control):
        orchestrator = DeploymentOrchestrator(
            cluster=cluster,
            synchronizer=synchronizer,
            updater=updater,
            verifier=verifier,
            mappings=mappings,
            source_control_factory=lambda token: source_control,
        )
        orchestrator._start_monitor = Mock()
        return orchestrator

    @pytest.mark.asyncio
    async def test_partial_pull_still_deploys(self, orchestrator, updater, verifier, services):
        outcome = await orchestrator.deploy("svc-a", "v2")

        assert outcome.success
        assert outcome.rolled_out
        assert outcome.image == f"{REGISTRY}/shop/app:v2"
        assert "2/3 nodes" in outcome.message
        assert "service healthy (3/3 running)" in outcome.message

        service, image = updater.update_service.await_args.args
        assert service is services["svc-a"]
        assert str(image) == f"{REGISTRY}/shop/app:v2"
        verifier.check_health.assert_awaited_once_with(services["svc-a"], timeout=60.0)

    @pytest.mark.asyncio
    async def test_total_pull_failure_never_updates(self, orchestrator, synchronizer, updater, verifier):
        synchronizer.sync_image.return_value = pulled("failed", "failed", "failed")

        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True)

        assert not outcome.success
        assert not outcome.rolled_out
        assert "0/3" in outcome.message
        updater.update_service.assert_not_awaited()
        verifier.check_health.assert_not_awaited()
        assert outcome.manifest_commit is None

    @pytest.mark.asyncio
    async def test_version_conflict_is_reported(self, orchestrator, updater, verifier):
        updater.update_service.side_effect = VersionConflictError("svc-a", 42)

        outcome = await orchestrator.deploy("svc-a", "v2")

        assert not outcome.success
        assert "retry" in outcome.message
        verifier.check_health.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check_crash_is_reported(self, orchestrator, verifier):
        verifier.check_health.side_effect = RuntimeError("tasks endpoint gone")

        outcome = await orchestrator.deploy("svc-a", "v2")

        assert outcome.rolled_out
        assert not outcome.success
        assert "Health check failed: tasks endpoint gone" in outcome.message

    @pytest.mark.asyncio
    async def test_unhealthy_rollout(self, orchestrator, verifier):
        verifier.check_health.return_value = HealthStatus(
            state="timeout", running_tasks=1, desired_replicas=3, message="timeout"
        )

        outcome = await orchestrator.deploy("svc-a", "v2")

        assert outcome.rolled_out
        assert not outcome.success
        assert "health check timed out (1/3 running)" in outcome.message

    @pytest.mark.asyncio
    async def test_unknown_service(self, orchestrator, cluster, synchronizer):
        outcome = await orchestrator.deploy("svc-x", "v2")

        assert not outcome.success
        assert "not configured" in outcome.message
        cluster.get_service.assert_not_awaited()
        synchronizer.sync_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_outcomes(self, orchestrator, cluster):
        cluster.list_nodes.side_effect = ClusterAPIError("proxy down", 502)

        outcome = await orchestrator.deploy("svc-a", "v2")

        assert not outcome.success
        assert "proxy down" in outcome.message

    @pytest.mark.asyncio
    async def test_manifest_commit(self, orchestrator, source_control):
        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True, token="glpat-user")

        assert outcome.manifest_commit.commit_id == "commit-42"
        repo, path, branch, content, message = source_control.commit_file.await_args.args
        assert (repo, path, branch) == ("42", "stacks/shop.yml", "main")
        assert f"  svc-a:\n    image: {REGISTRY}/shop/app:v2\n" in content
        assert f"  svc-b:\n    image: {REGISTRY}/shop/app:v1\n" in content
        assert message == "Update svc-a image tag from v1 to v2"
        orchestrator._start_monitor.assert_called_once_with(source_control, "42", "commit-42", None)

    @pytest.mark.asyncio
    async def test_manifest_failure_keeps_rollout_success(self, orchestrator, source_control):
        source_control.commit_file.side_effect = SourceControlError("Access denied", 403)

        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True)

        assert outcome.success
        assert outcome.partial
        assert "Access denied" in outcome.manifest_error
        orchestrator._start_monitor.assert_not_called()

    @pytest.mark.asyncio
    async def test_all_nodes_policy_skips_commit_on_partial_pull(self, orchestrator, source_control):
        orchestrator.settings = DeploymentSettings(manifest_commit_policy=ManifestCommitPolicy.ALL_NODES)

        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True)

        assert outcome.success
        assert outcome.manifest_commit is None
        assert "manifest not updated" in outcome.message
        source_control.commit_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhealthy_rollout_not_committed_when_disabled(self, orchestrator, verifier, source_control):
        orchestrator.settings = DeploymentSettings(commit_on_unhealthy=False)
        verifier.check_health.return_value = HealthStatus(
            state="failed", running_tasks=0, desired_replicas=3, message="crash loop"
        )

        await orchestrator.deploy("svc-a", "v2", update_manifest=True)

        source_control.commit_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_shares_pull_and_commit(self, orchestrator, synchronizer, updater, source_control):
        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-b", tag="v2"),
            ],
            update_manifest=True,
        )

        assert [o.service_name for o in outcomes] == ["svc-a", "svc-b"]
        assert all(o.success for o in outcomes)
        assert synchronizer.sync_image.await_count == 1
        assert updater.update_service.await_count == 2

        source_control.get_file.assert_awaited_once_with("42", "stacks/shop.yml", "main")
        assert source_control.commit_file.await_count == 1
        content = source_control.commit_file.await_args.args[3]
        message = source_control.commit_file.await_args.args[4]
        assert content.count(f"{REGISTRY}/shop/app:v2") == 2
        assert message.startswith("Update image tags for svc-a, svc-b")
        assert outcomes[0].manifest_commit == outcomes[1].manifest_commit
        orchestrator._start_monitor.assert_called_once()

    @pytest.mark.asyncio
    async def test_commits_to_one_repository_run_in_order(self, orchestrator, source_control):
        orchestrator.mappings = StaticMappingProvider(
            [
                ServiceMapping(
                    service_name="svc-a", manifest_repo_id="42", manifest_file_path="stacks/a.yml"
                ),
                ServiceMapping(
                    service_name="svc-b", manifest_repo_id="42", manifest_file_path="stacks/b.yml"
                ),
            ]
        )
        calls = []

        async def get_file(repo, path, ref):
            calls.append(("get", path))
            await asyncio.sleep(0)
            return MANIFEST

        async def commit_file(repo, path, branch, content, message):
            calls.append(("commit", path))
            await asyncio.sleep(0)
            return ManifestCommit(commit_id=f"commit-{path}", branch=branch, file_path=path)

        source_control.get_file.side_effect = get_file
        source_control.commit_file.side_effect = commit_file

        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-b", tag="v2"),
            ],
            update_manifest=True,
        )

        assert calls == [
            ("get", "stacks/a.yml"),
            ("commit", "stacks/a.yml"),
            ("get", "stacks/b.yml"),
            ("commit", "stacks/b.yml"),
        ]
        assert outcomes[0].manifest_commit.commit_id == "commit-stacks/a.yml"
        assert outcomes[1].manifest_commit.commit_id == "commit-stacks/b.yml"

    @pytest.mark.asyncio
    async def test_duplicate_service_in_batch_is_rejected(self, orchestrator, updater, source_control):
        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-a", tag="v3"),
            ],
            update_manifest=True,
        )

        assert outcomes[0].success
        assert not outcomes[1].success
        assert outcomes[1].manifest_commit is None
        assert "more than once" in outcomes[1].message
        assert updater.update_service.await_count == 1
        assert str(updater.update_service.await_args.args[1]) == f"{REGISTRY}/shop/app:v2"
        content = source_control.commit_file.await_args.args[3]
        assert f"{REGISTRY}/shop/app:v3" not in content

    @pytest.mark.asyncio
    async def test_service_on_other_endpoint_uses_its_lane(
        self, orchestrator, cluster, synchronizer, updater, make_service, nodes
    ):
        remote_service = make_service("svc-r", image=f"{REGISTRY}/shop/app:v1")
        remote = EndpointLane(
            cluster=Mock(
                get_service=AsyncMock(return_value=remote_service),
                list_nodes=AsyncMock(return_value=nodes[:1]),
                close=AsyncMock(),
            ),
            synchronizer=Mock(sync_image=AsyncMock(return_value=pulled("success"))),
            updater=Mock(update_service=AsyncMock()),
            verifier=Mock(check_health=AsyncMock(return_value=healthy(1))),
        )
        lane_factory = Mock(return_value=remote)
        orchestrator.endpoint_id = 1
        orchestrator.lane_factory = lane_factory
        orchestrator.mappings = StaticMappingProvider(
            [
                ServiceMapping(service_name="svc-a", endpoint_id=1),
                ServiceMapping(service_name="svc-r", endpoint_id=3),
            ]
        )

        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-r", tag="v2"),
            ]
        )
        await orchestrator.aclose()

        assert [o.success for o in outcomes] == [True, True]
        lane_factory.assert_called_once_with(3)
        assert [call.args[0] for call in cluster.get_service.await_args_list] == ["svc-a"]
        remote.cluster.get_service.assert_awaited_once_with("svc-r")
        # Same image, different swarms: pulled once per endpoint
        assert synchronizer.sync_image.await_count == 1
        assert remote.synchronizer.sync_image.await_args.args[0] == nodes[:1]
        assert updater.update_service.await_args.args[0].name == "svc-a"
        assert remote.updater.update_service.await_args.args[0] is remote_service
        remote.cluster.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_rejected(self, orchestrator, cluster):
        orchestrator.mappings = StaticMappingProvider(
            [ServiceMapping(service_name="svc-a", endpoint_id=3)]
        )

        outcome = await orchestrator.deploy("svc-a", "v2")

        assert not outcome.success
        assert "Endpoint 3 is not reachable" in outcome.message
        cluster.get_service.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_pulls_each_image_once(self, orchestrator, synchronizer):
        await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-c", tag="v8"),
                DeploymentRequest(service_name="svc-b", tag="v2"),
            ]
        )

        pulled_images = sorted(str(call.args[1]) for call in synchronizer.sync_image.await_args_list)
        assert pulled_images == [f"{REGISTRY}/shop/app:v2", f"{REGISTRY}/shop/other:v8"]

    @pytest.mark.asyncio
    async def test_batch_isolates_services(self, orchestrator, updater):
        async def update(service, image):
            if service.name == "svc-b":
                raise ClusterAPIError("spec rejected", 400)

        updater.update_service.side_effect = update

        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-b", tag="v2"),
                DeploymentRequest(service_name="svc-x", tag="v2"),
            ]
        )

        assert [o.success for o in outcomes] == [True, False, False]
        assert "spec rejected" in outcomes[1].message

    @pytest.mark.asyncio
    async def test_manifest_group_failure_is_isolated(self, orchestrator, source_control):
        other_manifest = "services:\n  other:\n    image: shop/other:v7\n"

        async def get_file(repo, path, ref):
            if repo == "42":
                raise SourceControlError("Failed to fetch stacks/shop.yml", 404)
            return other_manifest

        source_control.get_file.side_effect = get_file

        outcomes = await orchestrator.deploy_batch(
            [
                DeploymentRequest(service_name="svc-a", tag="v2"),
                DeploymentRequest(service_name="svc-c", tag="v8"),
            ],
            update_manifest=True,
        )

        assert outcomes[0].manifest_error is not None
        assert outcomes[0].manifest_commit is None
        assert outcomes[1].manifest_error is None
        assert outcomes[1].manifest_commit.commit_id == "commit-99"
        committed = source_control.commit_file.await_args.args[3]
        assert "image: shop/other:v8" in committed

    @pytest.mark.asyncio
    async def test_service_missing_from_manifest(self, orchestrator, source_control):
        source_control.get_file.return_value = "services:\n  svc-b:\n    image: x/app:v1\n"

        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True)

        assert outcome.success
        assert "not found in manifest" in outcome.manifest_error
        source_control.commit_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_release_tag(self, orchestrator, source_control):
        created = await orchestrator.create_release_tag("svc-a", "v2", "Release v2", token="glpat-user")

        assert created["name"] == "v2"
        source_control.create_tag.assert_awaited_once_with("17", "v2", "main", "Release v2")
        orchestrator._start_monitor.assert_called_once_with(source_control, "17", "tagcommit", None)

    @pytest.mark.asyncio
    async def test_release_tag_requires_source_project(self, orchestrator):
        from gitops_deployer.exceptions import DeployerError

        with pytest.raises(DeployerError, match="no source project"):
            await orchestrator.create_release_tag("svc-b", "v2")

    @pytest.mark.asyncio
    async def test_monitor_runs_in_background(
        self, cluster, synchronizer, updater, verifier, mappings, source_control
    ):
        events = []

        async def notifier(event):
            events.append(event)

        orchestrator = DeploymentOrchestrator(
            cluster=cluster,
            synchronizer=synchronizer,
            updater=updater,
            verifier=verifier,
            mappings=mappings,
            source_control_factory=lambda token: source_control,
            pipeline_settings=PipelineSettings(initial_delay=0, poll_interval=0.01, max_wait=5),
        )

        outcome = await orchestrator.deploy("svc-a", "v2", update_manifest=True, notifier=notifier)
        await orchestrator.wait_for_monitors()
        await orchestrator.aclose()

        assert outcome.manifest_commit is not None
        assert [e.kind for e in events] == [PipelineEventKind.WAITING, PipelineEventKind.COMPLETED]
        source_control.close.assert_awaited_once()
        cluster.close.assert_awaited_once()

    def test_from_config(self, tmp_path):
        whitelist = tmp_path / "whitelist.yml"
        whitelist.write_text("services:\n  svc-a:\n    gitlabProjectId: '17'\n")
        config = DeployerConfig(mappings_file=str(whitelist))

        orchestrator = DeploymentOrchestrator.from_config(config)

        assert isinstance(orchestrator.mappings, ServiceMappingStore)
        assert orchestrator.mappings.get("svc-a").registry_project_id == "17"
        assert orchestrator.settings.health_timeout == 60.0
        assert orchestrator.endpoint_id == config.cluster.endpoint_id
        lane = orchestrator.lane_factory(7)
        assert lane.cluster.endpoint_id == 7
        assert lane.synchronizer.credentials is orchestrator.synchronizer.credentials
        with pytest.raises(SourceControlError, match="token"):
            orchestrator.source_control_factory(None)


class TestStackOperations:
    @pytest.fixture
    def mappings(self):
        return StaticMappingProvider(
            [
                ServiceMapping(service_name="svc-a", registry_project_id="17", stack_name="shop", webhook_id="hook-1"),
                ServiceMapping(service_name="svc-b"),
            ]
        )

    @pytest.fixture
    def orchestrator(self, mappings):
        cluster = Mock()
        cluster.trigger_stack_webhook = AsyncMock(return_value=True)
        scm = Mock()
        scm.list_tags = AsyncMock(return_value=[{"name": "v2"}, {"name": "v1"}])
        return DeploymentOrchestrator(
            cluster=cluster,
            synchronizer=Mock(),
            updater=Mock(),
            verifier=Mock(),
            mappings=mappings,
            source_control_factory=lambda token: scm,
        )

    @pytest.mark.asyncio
    async def test_redeploy_stack(self, orchestrator):
        assert await orchestrator.redeploy_stack("svc-a") is True
        orchestrator.cluster.trigger_stack_webhook.assert_awaited_once_with("hook-1")

    @pytest.mark.asyncio
    async def test_redeploy_stack_without_webhook(self, orchestrator):
        from gitops_deployer.exceptions import DeployerError

        with pytest.raises(DeployerError, match="webhook"):
            await orchestrator.redeploy_stack("svc-b")

    @pytest.mark.asyncio
    async def test_recent_tags(self, orchestrator):
        tags = await orchestrator.recent_tags("svc-a", limit=2)

        assert [t["name"] for t in tags] == ["v2", "v1"]
        client = orchestrator.source_control_factory(None)
        client.list_tags.assert_awaited_once_with("17", limit=2)

    @pytest.mark.asyncio
    async def test_invalid_tag_is_reported(self, orchestrator):
        outcome = await orchestrator.deploy("svc-a", "")
        assert not outcome.success
        assert "invalid request" in outcome.message

        outcome = await orchestrator.deploy("svc-a", "v1:latest")
        assert not outcome.success
        assert "Invalid image tag" in outcome.message
