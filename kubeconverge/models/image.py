"""Data model for container image build definitions."""

import hashlib
import json
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

BUILD_HASH_LABEL = "io.kubeconverge.build-hash"

_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class ImageSpec(BaseModel):
    """A container image built from a local context and pushed to a registry."""

    model_config = ConfigDict(frozen=True)

    name: str
    repository: str
    tag: str = "latest"
    context: str = "."
    dockerfile: str = "Dockerfile"
    build_args: dict[str, str] = Field(default_factory=dict)
    build_hash: str = ""

    @field_validator("name", "repository")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("value cannot be empty")
        return v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v: str) -> str:
        """Validate tag follows the registry tag grammar."""
        if not _TAG_PATTERN.match(v):
            raise ValueError(f"tag '{v}' is not a valid image tag")
        return v

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    def context_path(self, base_dir: Path) -> Path:
        """Resolve the build context relative to the manifest directory."""
        path = Path(self.context)
        return path if path.is_absolute() else base_dir / path

    def compute_build_hash(self, base_dir: Path) -> str:
        """Digest of the build definition and every file in the build context.

        Raises:
            FileNotFoundError: If the context directory or Dockerfile is missing
        """
        context = self.context_path(base_dir)
        if not context.is_dir():
            raise FileNotFoundError(f"build context not found: {context}")
        if not (context / self.dockerfile).is_file():
            raise FileNotFoundError(f"dockerfile not found: {context / self.dockerfile}")

        digest = hashlib.sha256()
        definition = {
            "dockerfile": self.dockerfile,
            "build_args": dict(sorted(self.build_args.items())),
        }
        digest.update(json.dumps(definition, sort_keys=True).encode())

        for path in sorted(p for p in context.rglob("*") if p.is_file()):
            digest.update(str(path.relative_to(context)).encode())
            digest.update(b"\0")
            digest.update(path.read_bytes())

        return digest.hexdigest()
