"""
Cluster management API client.

Talks to the Docker API of a swarm through the Portainer proxy
(``/api/endpoints/{id}/docker/...``). Node-scoped calls carry the
``X-PortainerAgent-Target`` header so they run on the named node.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from gitops_deployer.exceptions import (
    ClusterAPIError,
    ServiceNotFoundError,
    VersionConflictError,
)
from gitops_deployer.models import ClusterNode, ServiceSpec, ServiceTask

logger = logging.getLogger(__name__)

NODE_TARGET_HEADER = "X-PortainerAgent-Target"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("details") or data)
    return str(data)


def _pull_stream_error(body: str) -> Optional[str]:
    """First error reported in a Docker pull progress stream, if any."""
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        if not isinstance(message, dict):
            continue
        if message.get("error"):
            return str(message["error"])
        detail = message.get("errorDetail")
        if isinstance(detail, dict) and detail.get("message"):
            return str(detail["message"])
    return None


class ClusterClient:
    """Client for the swarm behind one Portainer environment."""

    def __init__(
        self,
        base_url: str,
        endpoint_id: int,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 300.0,
        pull_timeout: float = 600.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the cluster client.

        Args:
            base_url: Portainer base URL
            endpoint_id: Portainer environment ID of the swarm
            api_key: Portainer API key (preferred)
            username: Username for JWT login when no API key is given
            password: Password for JWT login
            timeout: Default request timeout in seconds
            pull_timeout: Timeout for image pulls in seconds
            client: Pre-built HTTP client, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.endpoint_id = endpoint_id
        self.api_key = api_key
        self.username = username
        self.password = password
        self.pull_timeout = pull_timeout
        self._jwt: Optional[str] = None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @property
    def _docker_prefix(self) -> str:
        return f"/api/endpoints/{self.endpoint_id}/docker"

    def _auth_headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"X-API-Key": self.api_key}
        if self._jwt:
            return {"Authorization": f"Bearer {self._jwt}"}
        return {}

    async def authenticate(self) -> None:
        """Log in with username/password when no API key is configured."""
        if self.api_key or self._jwt:
            return

        if not self.username or not self.password:
            raise ClusterAPIError("Either API key or username/password must be provided")

        response = await self._client.post(
            "/api/auth", json={"username": self.username, "password": self.password}
        )
        if response.status_code != 200:
            raise ClusterAPIError(
                f"Authentication failed: {_error_message(response)}", response.status_code
            )
        self._jwt = response.json().get("jwt")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        node: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        await self.authenticate()

        request_headers = self._auth_headers()
        if node:
            request_headers[NODE_TARGET_HEADER] = node
        if headers:
            request_headers.update(headers)

        try:
            response = await self._client.request(
                method, f"{self._docker_prefix}{path}", headers=request_headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise ClusterAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise ClusterAPIError(
                f"{method} {path} failed: {_error_message(response)}", response.status_code
            )
        return response

    async def list_nodes(self) -> List[ClusterNode]:
        response = await self._request("GET", "/nodes")
        return [ClusterNode.from_api(item) for item in response.json()]

    async def list_services(self) -> List[ServiceSpec]:
        response = await self._request("GET", "/services")
        return [ServiceSpec.from_api(item) for item in response.json()]

    async def get_service(self, service_name: str) -> ServiceSpec:
        """
        Get a service by name.

        Raises:
            ServiceNotFoundError: If no service has this name
        """
        response = await self._request(
            "GET", "/services", params={"filters": json.dumps({"name": [service_name]})}
        )
        # The name filter is a prefix match
        for item in response.json():
            if (item.get("Spec") or {}).get("Name") == service_name:
                return ServiceSpec.from_api(item)
        raise ServiceNotFoundError(service_name)

    async def create_image(
        self, node: str, repository: str, tag: str, registry_auth: str
    ) -> None:
        """
        Pull ``repository:tag`` on one node.

        Args:
            node: Node hostname to run the pull on
            repository: Image repository including the registry host
            tag: Tag to pull
            registry_auth: Encoded ``X-Registry-Auth`` value

        Raises:
            ClusterAPIError: If the request fails or the progress stream
                reports an error
        """
        response = await self._request(
            "POST",
            "/images/create",
            node=node,
            params={"fromImage": repository, "tag": tag},
            headers={"X-Registry-Auth": registry_auth},
            timeout=self.pull_timeout,
        )
        # Docker answers 200 once the stream starts; pull errors arrive inside it
        error = _pull_stream_error(response.text)
        if error:
            raise ClusterAPIError(f"Pull of {repository}:{tag} failed: {error}", response.status_code)

    async def list_images(self, node: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/images/json", node=node)
        return list(response.json())

    async def update_service(self, service: ServiceSpec, spec: Dict[str, Any]) -> None:
        """
        Submit a new spec for ``service``.

        Raises:
            VersionConflictError: If the service changed since it was read
            ClusterAPIError: For any other rejection
        """
        try:
            response = await self._request(
                "POST",
                f"/services/{service.id}/update",
                params={"version": service.version_index, "registryAuthFrom": "spec"},
                json=spec,
            )
        except ClusterAPIError as e:
            if e.status_code == 409 or "out of sequence" in str(e).lower():
                raise VersionConflictError(service.name, service.version_index, str(e)) from e
            raise

        try:
            body = response.json()
        except ValueError:
            body = {}
        warnings = body.get("Warnings") if isinstance(body, dict) else None
        for warning in warnings or []:
            logger.warning(f"Service {service.name} update warning: {warning}")

    async def list_tasks(self, service_id: str) -> List[ServiceTask]:
        response = await self._request(
            "GET", "/tasks", params={"filters": json.dumps({"service": [service_id]})}
        )
        return [ServiceTask.from_api(item) for item in response.json()]

    async def trigger_stack_webhook(self, webhook_id: str) -> bool:
        """
        Trigger a stack redeploy through its Portainer webhook.

        Returns:
            True if the webhook accepted the trigger
        """
        try:
            response = await self._client.post(f"/api/stacks/webhooks/{webhook_id}", timeout=120.0)
        except httpx.HTTPError as e:
            logger.error(f"Failed to trigger webhook {webhook_id}: {e}")
            return False

        if response.status_code >= 400:
            logger.error(f"Failed to trigger webhook {webhook_id}: {_error_message(response)}")
            return False

        logger.info(f"Webhook triggered successfully: {webhook_id}")
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
