"""
Source-control API client (GitLab REST v4).

Reads and commits manifest files, creates release tags and lists the
pipelines triggered by a commit.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from gitops_deployer.exceptions import SourceControlError
from gitops_deployer.models import ManifestCommit
from gitops_deployer.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def _encode(value: str) -> str:
    return quote(str(value), safe="")


class GitLabClient:
    """Client for one GitLab instance, authenticated with a personal token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the GitLab client.

        Args:
            base_url: GitLab base URL (e.g. https://gitlab.example.com)
            token: Personal access token with ``api`` scope
            timeout: Request timeout in seconds
            client: Pre-built HTTP client, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"PRIVATE-TOKEN": token},
            timeout=timeout,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, f"/api/v4{path}", **kwargs)
        except httpx.HTTPError as e:
            raise SourceControlError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise SourceControlError(
                f"{method} {path} failed: {_error_message(response)}", response.status_code
            )
        return response

    def _file_path(self, project_id: str, file_path: str) -> str:
        return f"/projects/{_encode(project_id)}/repository/files/{_encode(file_path)}"

    async def get_file(self, project_id: str, file_path: str, ref: str = "main") -> str:
        """Fetch the raw content of a file at ``ref``."""
        logger.info(f"Fetching {file_path} from project {project_id} (ref: {ref})")
        try:
            response = await self._request(
                "GET", f"{self._file_path(project_id, file_path)}/raw", params={"ref": ref}
            )
        except SourceControlError as e:
            raise SourceControlError(
                f"Failed to fetch {file_path} from project {project_id}: {e}", e.status_code
            ) from e
        return response.text

    async def file_exists(self, project_id: str, file_path: str, ref: str = "main") -> bool:
        try:
            await self._request(
                "HEAD", self._file_path(project_id, file_path), params={"ref": ref}
            )
        except SourceControlError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def commit_file(
        self,
        project_id: str,
        file_path: str,
        branch: str,
        content: str,
        message: str,
    ) -> ManifestCommit:
        """
        Commit ``content`` to ``file_path`` on ``branch``.

        The file is updated when it exists and created otherwise. The change
        goes through the commits API, which returns the SHA of the commit it
        created.

        Raises:
            SourceControlError: With a specific message for common rejections
        """
        if not content or not content.strip():
            raise SourceControlError("File content cannot be empty")
        if not message or not message.strip():
            raise SourceControlError("Commit message cannot be empty")

        exists = await self.file_exists(project_id, file_path, branch)
        logger.info(
            f"{'Updating' if exists else 'Creating'} {file_path} in project {project_id} "
            f"(branch: {branch}): {sanitize_for_log(message.splitlines()[0])}"
        )

        payload = {
            "branch": branch,
            "commit_message": message,
            "actions": [
                {
                    "action": "update" if exists else "create",
                    "file_path": file_path,
                    "content": content,
                }
            ],
        }
        try:
            response = await self._request(
                "POST", f"/projects/{_encode(project_id)}/repository/commits", json=payload
            )
        except SourceControlError as e:
            raise SourceControlError(
                self._describe_commit_error(e, project_id, file_path, branch), e.status_code
            ) from e

        data = response.json()
        commit_id = data.get("id")
        if not commit_id:
            raise SourceControlError(f"Commit to {file_path} returned no commit id")
        return ManifestCommit(commit_id=commit_id, branch=branch, file_path=file_path)

    @staticmethod
    def _describe_commit_error(
        error: SourceControlError, project_id: str, file_path: str, branch: str
    ) -> str:
        detail = str(error).lower()
        if error.status_code == 400:
            if "too large" in detail:
                return "File content is too large for the GitLab API"
            if "branch" in detail and "not found" in detail:
                return f"Branch '{branch}' does not exist in project {project_id}"
            if "encoding" in detail:
                return "Invalid file encoding. Check that the file content is valid text"
        elif error.status_code == 404:
            return f"Repository or file not found. Check permissions and project ID {project_id}"
        elif error.status_code in (401, 403):
            return "Access denied. Check GitLab token permissions (needs api scope)"
        return f"Failed to commit {file_path}: {error}"

    async def create_tag(
        self, project_id: str, tag_name: str, ref: str, message: str = ""
    ) -> Dict[str, Any]:
        """Create a tag at ``ref`` and return the tag payload."""
        response = await self._request(
            "POST",
            f"/projects/{_encode(project_id)}/repository/tags",
            json={"tag_name": tag_name, "ref": ref, "message": message},
        )
        logger.info(f"Created tag {tag_name} in project {project_id} at {ref}")
        return response.json()

    async def list_tags(self, project_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Most recently updated tags first."""
        response = await self._request(
            "GET",
            f"/projects/{_encode(project_id)}/repository/tags",
            params={"per_page": limit, "order_by": "updated", "sort": "desc"},
        )
        return list(response.json())

    async def list_pipelines(self, project_id: str, sha: str) -> List[Dict[str, Any]]:
        """Pipelines for a commit, newest first."""
        response = await self._request(
            "GET",
            f"/projects/{_encode(project_id)}/pipelines",
            params={"sha": sha, "order_by": "id", "sort": "desc"},
        )
        return list(response.json())

    def pipeline_url(self, project: str, pipeline_id: int) -> str:
        """Web URL of a pipeline; ``project`` is a path or a numeric ID."""
        return f"{self.base_url}/{project}/-/pipelines/{pipeline_id}"

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
