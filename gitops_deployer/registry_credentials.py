"""
Registry credential cache.

Obtains short-lived registry logins from a token-issuing API and caches the
current one process-wide until it expires.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

import boto3

from gitops_deployer.exceptions import RegistryAuthError
from gitops_deployer.models import RegistryCredential

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=12)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IssuedToken:
    """Raw token as returned by the issuing API."""

    authorization_token: str  # base64("user:password")
    proxy_endpoint: str
    expires_at: Optional[datetime] = None


class RegistryTokenIssuer(Protocol):
    async def issue(self) -> IssuedToken: ...


class EcrTokenIssuer:
    """Issues registry tokens through the ECR ``GetAuthorizationToken`` API."""

    def __init__(self, region: str, registry_id: Optional[str] = None, client: Any = None):
        """
        Initialize the issuer.

        Args:
            region: AWS region of the registry
            registry_id: Registry (account) ID; the caller's default registry when None
            client: Pre-built boto3 ECR client, mainly for tests
        """
        self.region = region
        self.registry_id = registry_id
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ecr", region_name=self.region)
        return self._client

    def _fetch(self) -> IssuedToken:
        kwargs = {"registryIds": [self.registry_id]} if self.registry_id else {}
        response = self.client.get_authorization_token(**kwargs)

        auth_data = response.get("authorizationData") or []
        if not auth_data:
            raise RegistryAuthError("No authorization data returned from ECR")

        data = auth_data[0]
        token = data.get("authorizationToken")
        if not token:
            raise RegistryAuthError("No authorization token returned from ECR")

        endpoint = data.get("proxyEndpoint") or (
            f"{self.registry_id}.dkr.ecr.{self.region}.amazonaws.com"
        )
        return IssuedToken(
            authorization_token=token,
            proxy_endpoint=endpoint,
            expires_at=data.get("expiresAt"),
        )

    async def issue(self) -> IssuedToken:
        # boto3 is blocking
        return await asyncio.to_thread(self._fetch)


class CredentialCache:
    """
    Process-wide cache for the current registry credential.

    Reads are a plain expiry check. A refresh replaces the cached value in a
    single assignment; two callers refreshing at the same time both fetch
    and the last one wins, which is harmless.
    """

    def __init__(
        self,
        issuer: RegistryTokenIssuer,
        default_lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.issuer = issuer
        self.default_lifetime = default_lifetime
        self._clock = clock
        self._credential: Optional[RegistryCredential] = None

    @property
    def cached(self) -> Optional[RegistryCredential]:
        return self._credential

    def invalidate(self) -> None:
        self._credential = None

    async def get_credential(self) -> RegistryCredential:
        """
        Return a valid registry credential, fetching a new one when needed.

        Raises:
            RegistryAuthError: If a token could not be obtained
        """
        credential = self._credential
        if credential is not None and not credential.is_expired(self._clock()):
            return credential

        logger.info("Fetching registry authorization token...")
        try:
            issued = await self.issuer.issue()
        except RegistryAuthError:
            raise
        except Exception as e:
            logger.error(f"Failed to get registry token: {e}")
            raise RegistryAuthError(f"Failed to get registry authorization token: {e}") from e

        credential = self._decode(issued)
        self._credential = credential
        logger.info(f"Registry token obtained (expires: {credential.expires_at.isoformat()})")
        return credential

    def _decode(self, issued: IssuedToken) -> RegistryCredential:
        try:
            decoded = base64.b64decode(issued.authorization_token).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise RegistryAuthError(f"Malformed registry token: {e}") from e

        username, sep, password = decoded.partition(":")
        if not sep or not username:
            raise RegistryAuthError("Malformed registry token: expected user:password")

        expires_at = issued.expires_at
        if expires_at is None:
            expires_at = self._clock() + self.default_lifetime
        elif expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return RegistryCredential(
            username=username,
            password=password,
            registry_host=issued.proxy_endpoint,
            expires_at=expires_at,
        )
