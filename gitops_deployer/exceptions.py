"""
Exception types for the deployment engine.

Node and task level failures are reported as data on the outcome models.
Only conditions that stop a single service's deployment are raised, and the
orchestrator converts those into failed outcomes.
"""

from typing import Optional


class DeployerError(Exception):
    """Base class for all deployment engine errors."""


class ClusterAPIError(DeployerError):
    """The cluster management API returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceNotFoundError(ClusterAPIError):
    """The named service does not exist on the cluster."""

    def __init__(self, service_name: str):
        super().__init__(f'Service "{service_name}" not found', status_code=404)
        self.service_name = service_name


class VersionConflictError(ClusterAPIError):
    """
    The service changed since it was read.

    Raised when the version index sent with an update is stale. Callers may
    re-read the service and retry explicitly.
    """

    def __init__(self, service_name: str, version_index: int, detail: str = ""):
        message = (
            f"Service {service_name} was modified concurrently "
            f"(version {version_index} is stale)"
        )
        if detail:
            message += f": {detail}"
        super().__init__(message, status_code=409)
        self.service_name = service_name
        self.version_index = version_index


class TotalPullFailureError(DeployerError):
    """No node managed to pull the image."""

    def __init__(self, image: str, attempted: int):
        if attempted:
            message = f"Failed to pull {image} on any node (0/{attempted})"
        else:
            message = f"No ready nodes available to pull {image}"
        super().__init__(message)
        self.image = image
        self.attempted = attempted


class RegistryAuthError(DeployerError):
    """A registry credential could not be obtained."""


class ManifestValidationError(DeployerError):
    """The manifest is missing the target service or fails cleaning rules."""


class SourceControlError(DeployerError):
    """The source-control API returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceNotConfiguredError(DeployerError):
    """No mapping exists for the requested logical service name."""

    def __init__(self, service_name: str):
        super().__init__(f'Service "{service_name}" is not configured for deployment')
        self.service_name = service_name
