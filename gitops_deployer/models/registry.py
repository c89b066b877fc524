"""
Registry credential model.
"""

import base64
import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RegistryCredential(BaseModel):
    """Short-lived registry login, cached process-wide until it expires."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: str = Field(..., repr=False)
    registry_host: str = Field(..., description="Registry server address")
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_registry_auth_header(self) -> str:
        """Encode as the base64 JSON blob Docker expects in ``X-Registry-Auth``."""
        payload = {
            "username": self.username,
            "password": self.password,
            "serveraddress": self.registry_host,
        }
        return base64.b64encode(json.dumps(payload).encode()).decode()
