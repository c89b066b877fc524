#!/usr/bin/env python3
"""
gitops-deployer CLI entry point.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from tabulate import tabulate

from gitops_deployer.config import DeployerConfig, ServiceMappingStore
from gitops_deployer.deployment import DeploymentOrchestrator
from gitops_deployer.exceptions import DeployerError
from gitops_deployer.logging_config import setup_logging
from gitops_deployer.models import DeploymentOutcome, DeploymentRequest, PipelineEvent

DEFAULT_CONFIG_PATH = "/etc/gitops-deployer/config.yml"

logger = logging.getLogger(__name__)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2))


def print_table(data: list, headers: list) -> None:
    """Print data as a table."""
    print(tabulate(data, headers=headers, tablefmt="grid"))


def parse_requests(pairs: List[str]) -> List[DeploymentRequest]:
    """Parse ``service=tag`` arguments."""
    requests = []
    for pair in pairs:
        service, sep, tag = pair.partition("=")
        if not sep or not service or not tag:
            raise ValueError(f"Expected SERVICE=TAG, got {pair!r}")
        requests.append(DeploymentRequest(service_name=service, tag=tag))
    return requests


def print_outcomes(outcomes: List[DeploymentOutcome]) -> None:
    rows = []
    for outcome in outcomes:
        if outcome.manifest_commit:
            manifest_state = outcome.manifest_commit.commit_id[:8]
        elif outcome.manifest_error:
            manifest_state = "failed"
        else:
            manifest_state = "-"
        rows.append(
            [
                outcome.service_name,
                outcome.image or "-",
                outcome.pull_summary.describe(),
                outcome.health.state if outcome.health else "-",
                manifest_state,
                "OK" if outcome.success else "FAILED",
            ]
        )
    print_table(rows, ["Service", "Image", "Pulled", "Health", "Manifest", "Result"])
    for outcome in outcomes:
        print(outcome.message)


async def print_pipeline_event(event: PipelineEvent) -> None:
    line = f"[pipeline {event.commit_sha[:8]}] {event.message}"
    if event.url:
        line += f" ({event.url})"
    print(line, flush=True)


def build_orchestrator(config: DeployerConfig, mappings_path: Optional[str]) -> DeploymentOrchestrator:
    mappings = ServiceMappingStore(mappings_path) if mappings_path else None
    return DeploymentOrchestrator.from_config(config, mappings=mappings)


async def run_deploy(config: DeployerConfig, args: argparse.Namespace) -> int:
    requests = parse_requests(args.services)
    orchestrator = build_orchestrator(config, args.mappings)
    try:
        outcomes = await orchestrator.deploy_batch(
            requests,
            update_manifest=args.update_manifest,
            token=args.token,
            notifier=print_pipeline_event if args.watch else None,
        )
        if args.json:
            print_json([o.model_dump(mode="json") for o in outcomes])
        else:
            print_outcomes(outcomes)
        if args.watch:
            await orchestrator.wait_for_monitors()
    finally:
        await orchestrator.aclose()

    return 0 if all(o.success for o in outcomes) else 1


async def run_create_tag(config: DeployerConfig, args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(config, args.mappings)
    try:
        created = await orchestrator.create_release_tag(
            args.service,
            args.tag,
            args.message,
            ref=args.ref,
            token=args.token,
            notifier=print_pipeline_event if args.watch else None,
        )
        print(f"Created tag {created.get('name', args.tag)} for {args.service}")
        if args.watch:
            await orchestrator.wait_for_monitors()
    finally:
        await orchestrator.aclose()
    return 0


async def run_tags(config: DeployerConfig, args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(config, args.mappings)
    try:
        tags = await orchestrator.recent_tags(args.service, limit=args.limit, token=args.token)
    finally:
        await orchestrator.aclose()

    if args.json:
        print_json(tags)
        return 0

    rows = [
        [
            tag.get("name"),
            (tag.get("commit") or {}).get("short_id", "-"),
            (tag.get("commit") or {}).get("created_at", "-"),
            (tag.get("message") or "").strip(),
        ]
        for tag in tags
    ]
    print_table(rows, ["Tag", "Commit", "Created", "Message"])
    return 0


async def run_redeploy_stack(config: DeployerConfig, args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(config, args.mappings)
    try:
        triggered = await orchestrator.redeploy_stack(args.service)
    finally:
        await orchestrator.aclose()

    if not triggered:
        print(f"Stack redeploy for {args.service} was rejected", file=sys.stderr)
        return 1
    print(f"Stack redeploy triggered for {args.service}")
    return 0


def run_services(config: DeployerConfig, args: argparse.Namespace) -> int:
    path = args.mappings or config.mappings_file
    if not path:
        print("No service whitelist configured (use --mappings)", file=sys.stderr)
        return 1

    mappings = ServiceMappingStore(path).all()
    if args.json:
        print_json([m.model_dump(mode="json") for m in mappings])
        return 0

    rows = [
        [
            m.service_name,
            m.stack_name or "-",
            m.registry_project_id or "-",
            f"{m.manifest_repo_id}:{m.manifest_file_path}@{m.manifest_branch}" if m.has_manifest else "-",
            m.description,
        ]
        for m in mappings
    ]
    print_table(rows, ["Service", "Stack", "Source project", "Manifest", "Description"])
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Roll out images to a Docker Swarm and record them in GitOps manifests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Deploy one service
  gitops-deployer deploy shop_api=v1.4.2

  # Deploy two services and commit the new tags
  gitops-deployer deploy shop_api=v1.4.2 shop_worker=v1.4.2 --update-manifest --watch

  # Tag a release and follow its build pipeline
  gitops-deployer create-tag shop_api v1.4.3 -m "Release 1.4.3" --watch
        """,
    )
    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--mappings", help="Path to the service whitelist (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    deploy_parser = subparsers.add_parser("deploy", help="Deploy one or more services")
    deploy_parser.add_argument("services", nargs="+", metavar="SERVICE=TAG")
    deploy_parser.add_argument(
        "--update-manifest", action="store_true", help="Commit the new tags to the GitOps manifest"
    )
    deploy_parser.add_argument("--token", help="GitLab token (defaults to the configured one)")
    deploy_parser.add_argument(
        "--watch", action="store_true", help="Follow the pipeline of the manifest commit"
    )
    deploy_parser.add_argument("--json", action="store_true", help="Output as JSON")

    tag_parser = subparsers.add_parser("create-tag", help="Create a release tag")
    tag_parser.add_argument("service", help="Service whose source project gets the tag")
    tag_parser.add_argument("tag", help="Tag name")
    tag_parser.add_argument("--message", "-m", default="", help="Tag message")
    tag_parser.add_argument("--ref", default="main", help="Ref to tag (default: main)")
    tag_parser.add_argument("--token", help="GitLab token (defaults to the configured one)")
    tag_parser.add_argument("--watch", action="store_true", help="Follow the build pipeline")

    tags_parser = subparsers.add_parser("tags", help="List recent release tags of a service")
    tags_parser.add_argument("service", help="Service name")
    tags_parser.add_argument("--limit", type=int, default=5, help="Number of tags (default: 5)")
    tags_parser.add_argument("--token", help="GitLab token (defaults to the configured one)")
    tags_parser.add_argument("--json", action="store_true", help="Output as JSON")

    redeploy_parser = subparsers.add_parser(
        "redeploy-stack", help="Trigger the GitOps redeploy webhook of a service's stack"
    )
    redeploy_parser.add_argument("service", help="Service name")

    services_parser = subparsers.add_parser("services", help="List whitelisted services")
    services_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        path = Path(args.config)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DeployerConfig().to_yaml())
        print(f"Generated default configuration at: {args.config}")
        return 0

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = DeployerConfig.from_file(args.config)
    except Exception as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    setup_logging(
        log_dir=config.logging.log_dir,
        console_level="DEBUG" if args.verbose else config.logging.console_level,
        file_level=config.logging.file_level,
        use_json=config.logging.use_json,
    )

    try:
        if args.command == "deploy":
            return asyncio.run(run_deploy(config, args))
        if args.command == "create-tag":
            return asyncio.run(run_create_tag(config, args))
        if args.command == "tags":
            return asyncio.run(run_tags(config, args))
        if args.command == "redeploy-stack":
            return asyncio.run(run_redeploy_stack(config, args))
        if args.command == "services":
            return run_services(config, args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (DeployerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
