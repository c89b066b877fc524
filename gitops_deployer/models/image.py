"""
Image reference parsing.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageReference(BaseModel):
    """
    A container image reference split into its parts.

    ``registry/repository:tag@digest``; registry, tag and digest are optional
    in the textual form. Registry hosts may carry a port.
    """

    model_config = ConfigDict(frozen=True)

    registry: Optional[str] = Field(None, description="Registry host, e.g. 123.dkr.ecr.aws")
    repository: str = Field(..., description="Repository path within the registry")
    tag: Optional[str] = Field(None, description="Image tag")
    digest: Optional[str] = Field(None, description="Content digest (sha256:...)")

    @classmethod
    def parse(cls, image_ref: str) -> "ImageReference":
        """
        Parse an image reference.

        Args:
            image_ref: Full image reference

        Returns:
            Parsed reference
        """
        ref = image_ref.strip()
        if "://" in ref:
            ref = ref.split("://", 1)[1]
        if not ref:
            raise ValueError("Image reference cannot be empty")

        digest = None
        if "@" in ref:
            ref, digest = ref.split("@", 1)

        # Split registry from the rest
        registry = None
        parts = ref.split("/", 1)
        if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            remainder = parts[1]
        else:
            remainder = ref

        tag = None
        if ":" in remainder:
            remainder, tag = remainder.rsplit(":", 1)

        return cls(registry=registry, repository=remainder, tag=tag or None, digest=digest)

    @property
    def repository_path(self) -> str:
        """Registry and repository without tag or digest."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def effective_tag(self) -> str:
        """Tag to pull; Docker treats a missing tag as ``latest``."""
        return self.tag or "latest"

    def with_tag(self, tag: str) -> "ImageReference":
        """Return a copy pointing at ``tag`` with any digest dropped."""
        return ImageReference(registry=self.registry, repository=self.repository, tag=tag)

    def __str__(self) -> str:
        ref = self.repository_path
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref
