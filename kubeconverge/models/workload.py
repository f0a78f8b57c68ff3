"""Data models for workload specifications.

A WorkloadSpec is immutable. Changing a workload means superseding it with a
new version; the reconciler detects the change through ``spec_hash``.
"""

import hashlib
import json
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SERVICE_TYPES = ["ClusterIP", "NodePort", "LoadBalancer"]
TOLERATION_OPERATORS = ["Equal", "Exists"]
NODE_PORT_RANGE = (30000, 32767)

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class ResourceRequirements(BaseModel):
    """Container resource requests and limits (Kubernetes quantity strings)."""

    model_config = ConfigDict(frozen=True)

    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class Toleration(BaseModel):
    """Toleration of a node taint."""

    model_config = ConfigDict(frozen=True)

    key: str | None = None
    operator: str = "Equal"
    value: str | None = None
    effect: str | None = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if v not in TOLERATION_OPERATORS:
            raise ValueError(f"operator must be one of {TOLERATION_OPERATORS}, got '{v}'")
        return v

    def tolerates(self, taint) -> bool:
        """Return True if this toleration matches ``taint`` (a NodeTaint)."""
        if self.effect and self.effect != taint.effect:
            return False
        if self.key is None:
            # Empty key with Exists tolerates everything
            return self.operator == "Exists"
        if self.key != taint.key:
            return False
        if self.operator == "Exists":
            return True
        return (self.value or "") == (taint.value or "")

    def to_api_dict(self) -> dict:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class Placement(BaseModel):
    """Where the workload's pods may be scheduled."""

    model_config = ConfigDict(frozen=True)

    node_selector: dict[str, str] = Field(default_factory=dict)
    tolerations: list[Toleration] = Field(default_factory=list)

    def tolerates(self, taint) -> bool:
        return any(t.tolerates(taint) for t in self.tolerations)


class PortMapping(BaseModel):
    """One service port mapped onto a container port."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    port: int = Field(ge=1, le=65535)
    target_port: int | None = Field(default=None, ge=1, le=65535)
    node_port: int | None = None
    protocol: str = "TCP"

    @property
    def container_port(self) -> int:
        return self.target_port or self.port


class Exposure(BaseModel):
    """How the workload is exposed through a Service."""

    model_config = ConfigDict(frozen=True)

    type: str = "ClusterIP"
    ports: list[PortMapping] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in SERVICE_TYPES:
            raise ValueError(f"service type must be one of {SERVICE_TYPES}, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_node_ports(self) -> "Exposure":
        """Only NodePort/LoadBalancer services may pin node ports."""
        if self.type == "ClusterIP" and any(p.node_port for p in self.ports):
            raise ValueError("node_port requires service type NodePort or LoadBalancer")
        return self


class WorkloadSpec(BaseModel):
    """Desired state of one containerized workload."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = "default"
    image: str
    replicas: int = Field(default=1, ge=0)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    placement: Placement = Field(default_factory=Placement)
    exposure: Exposure | None = None
    env: dict[str, str] = Field(default_factory=dict)
    generation: int = Field(default=1, ge=1)

    @field_validator("name", "namespace")
    @classmethod
    def validate_dns_label(cls, v: str) -> str:
        """Validate name follows RFC 1123 label rules."""
        if not v or len(v) > 63 or not _DNS_LABEL.match(v):
            raise ValueError(
                f"'{v}' must be a lowercase RFC 1123 label (a-z, 0-9, '-', max 63 characters)"
            )
        return v

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if not v or any(c.isspace() for c in v):
            raise ValueError(f"image reference '{v}' is invalid")
        return v

    @property
    def key(self) -> str:
        """Namespaced identifier, unique within a target graph."""
        return f"{self.namespace}/{self.name}"

    @property
    def spec_hash(self) -> str:
        """Stable digest of everything that affects the applied objects."""
        content = self.model_dump(exclude={"generation"}, mode="json")
        encoded = json.dumps(content, sort_keys=True, separators=(",", ":")).encode()
        return hashlib.sha256(encoded).hexdigest()[:16]

    @property
    def exposure_hash(self) -> str | None:
        """Digest of the exposure alone, used to detect service changes."""
        if self.exposure is None:
            return None
        content = {"name": self.name, "exposure": self.exposure.model_dump(mode="json")}
        encoded = json.dumps(content, sort_keys=True, separators=(",", ":")).encode()
        return hashlib.sha256(encoded).hexdigest()[:16]

    def supersede(self, **changes) -> "WorkloadSpec":
        """Return a new version of this workload with ``changes`` applied."""
        data = {**self.model_dump(), **changes, "generation": self.generation + 1}
        return type(self)(**data)
