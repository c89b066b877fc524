"""
Service whitelist and mapping resolution.

Maps a logical service name to where its image is built and where its
GitOps manifest lives. The whitelist file uses the layout::

    endpoints:
      - id: 1
        stacks: [shop]
    stacks:
      shop:
        services: [shop_api, shop_worker]
        gitOpsRepoId: "42"
        gitOpsFilePath: stacks/shop.yml
        gitOpsBranch: main
        gitOpsWebhook: 7d5c...
    services:
      shop_api:
        gitlabProjectId: "17"
        description: Public API
        manifestService: api

JSON files with the same structure are accepted too.
"""

import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from gitops_deployer.exceptions import ServiceNotConfiguredError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 60.0


class ServiceMapping(BaseModel):
    """Where a service's image comes from and where its manifest lives."""

    model_config = ConfigDict(frozen=True)

    service_name: str = Field(..., description="Swarm service name")
    registry_project_id: Optional[str] = Field(None, description="Source project building the image")
    manifest_repo_id: Optional[str] = Field(None, description="Repository holding the manifest")
    manifest_file_path: Optional[str] = None
    manifest_branch: str = "main"
    manifest_service_name: Optional[str] = Field(
        None, description="Key of the service in the manifest when it differs"
    )
    stack_name: Optional[str] = None
    endpoint_id: Optional[int] = None
    webhook_id: Optional[str] = None
    description: str = ""

    @property
    def manifest_key(self) -> str:
        return self.manifest_service_name or self.service_name

    @property
    def has_manifest(self) -> bool:
        return bool(self.manifest_repo_id and self.manifest_file_path)

    @property
    def manifest_location(self) -> Tuple[str, str, str]:
        """Grouping key for manifest writes: (repo, file, branch)."""
        return (self.manifest_repo_id or "", self.manifest_file_path or "", self.manifest_branch)


class MappingProvider(Protocol):
    def get(self, service_name: str) -> ServiceMapping: ...


class StaticMappingProvider:
    """Mappings supplied directly by the caller."""

    def __init__(self, mappings: Iterable[ServiceMapping]):
        self._mappings = {m.service_name: m for m in mappings}

    def get(self, service_name: str) -> ServiceMapping:
        try:
            return self._mappings[service_name]
        except KeyError:
            raise ServiceNotConfiguredError(service_name) from None

    def all(self) -> List[ServiceMapping]:
        return list(self._mappings.values())


def parse_whitelist(data: dict) -> Dict[str, ServiceMapping]:
    """Build service mappings from a whitelist document."""
    services = data.get("services") or {}
    stacks = data.get("stacks") or {}

    endpoint_for_stack: Dict[str, int] = {}
    for endpoint in data.get("endpoints") or []:
        for stack_name in endpoint.get("stacks") or []:
            endpoint_for_stack.setdefault(stack_name, endpoint["id"])

    mappings: Dict[str, ServiceMapping] = {}
    for stack_name, stack in stacks.items():
        for service_name in stack.get("services") or []:
            if service_name in mappings:
                logger.warning(
                    f"Service {service_name} listed in more than one stack, "
                    f"keeping {mappings[service_name].stack_name}"
                )
                continue
            service = services.get(service_name) or {}
            mappings[service_name] = ServiceMapping(
                service_name=service_name,
                registry_project_id=service.get("gitlabProjectId"),
                manifest_repo_id=stack.get("gitOpsRepoId"),
                manifest_file_path=stack.get("gitOpsFilePath"),
                manifest_branch=stack.get("gitOpsBranch") or "main",
                manifest_service_name=service.get("manifestService"),
                stack_name=stack_name,
                endpoint_id=endpoint_for_stack.get(stack_name),
                webhook_id=stack.get("gitOpsWebhook"),
                description=service.get("description", ""),
            )

    # Services not attached to any stack can still be rolled out, just
    # without manifest bookkeeping
    for service_name, service in services.items():
        if service_name not in mappings:
            mappings[service_name] = ServiceMapping(
                service_name=service_name,
                registry_project_id=(service or {}).get("gitlabProjectId"),
                description=(service or {}).get("description", ""),
            )

    return mappings


class ServiceMappingStore:
    """
    Whitelist file reader with a short-TTL cache.

    The cached snapshot is replaced as a whole on refresh, so concurrent
    readers always see a consistent set of mappings.
    """

    def __init__(
        self,
        path: Union[str, Path],
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._snapshot: Optional[Tuple[float, Dict[str, ServiceMapping]]] = None

    def _load(self) -> Dict[str, ServiceMapping]:
        with open(self.path, "r") as f:
            if self.path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        return parse_whitelist(data or {})

    def mappings(self) -> Dict[str, ServiceMapping]:
        snapshot = self._snapshot
        now = self._clock()
        if snapshot and now - snapshot[0] < self.ttl:
            return snapshot[1]

        try:
            mappings = self._load()
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Could not load service whitelist {self.path}: {e}")
            if snapshot:
                return snapshot[1]
            return {}

        self._snapshot = (now, mappings)
        logger.debug(f"Loaded {len(mappings)} service mappings from {self.path}")
        return mappings

    def get(self, service_name: str) -> ServiceMapping:
        mapping = self.mappings().get(service_name)
        if mapping is None:
            raise ServiceNotConfiguredError(service_name)
        return mapping

    def all(self) -> List[ServiceMapping]:
        return list(self.mappings().values())

    def invalidate(self) -> None:
        self._snapshot = None
