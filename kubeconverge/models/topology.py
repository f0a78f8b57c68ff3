"""Data models for cluster topology: nodes, labels, taints, bootstrap."""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ROLES = ["control-plane", "worker"]
TAINT_EFFECTS = ["NoSchedule", "PreferNoSchedule", "NoExecute"]
WORKER_ROLE_LABEL = "node-role.kubernetes.io/worker"

_HOSTNAME_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$", re.IGNORECASE
)


class NodeTaint(BaseModel):
    """Kubernetes node taint configuration."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str = ""
    effect: str  # NoSchedule, PreferNoSchedule, NoExecute

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Validate taint key is not empty."""
        if not v:
            raise ValueError("taint key cannot be empty")
        return v

    @field_validator("effect")
    @classmethod
    def validate_effect(cls, v: str) -> str:
        """Validate taint effect is one of the allowed values."""
        if v not in TAINT_EFFECTS:
            raise ValueError(f"effect must be one of {TAINT_EFFECTS}, got {v}")
        return v

    def to_api_dict(self) -> dict:
        """Convert to the shape used in a Node's spec.taints."""
        return {"key": self.key, "value": self.value or None, "effect": self.effect}

    def __str__(self) -> str:
        return f"{self.key}={self.value}:{self.effect}"


class NodeSpec(BaseModel):
    """Desired configuration of one cluster node."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: str = "worker"  # control-plane or worker
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[NodeTaint] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate node name follows DNS naming conventions."""
        if not v:
            raise ValueError("node name cannot be empty")
        if len(v) > 253:
            raise ValueError("node name cannot exceed 253 characters")
        if not _HOSTNAME_PATTERN.match(v):
            raise ValueError(
                f"node name '{v}' must contain only alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either control-plane or worker."""
        if v not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got '{v}'")
        return v

    @property
    def effective_labels(self) -> dict[str, str]:
        """Labels the reconciler manages on this node, including the role label."""
        labels = dict(self.labels)
        if self.role == "worker":
            labels.setdefault(WORKER_ROLE_LABEL, "worker")
        return labels


class BootstrapRecord(BaseModel):
    """How the control plane is initialised and how workers join it."""

    model_config = ConfigDict(frozen=True)

    node: str
    playbook: str
    join_playbook: str | None = None
    inventory: str | None = None
    private_data_dir: str = "ansible"
    extravars: dict[str, str] = Field(default_factory=dict)

    @field_validator("playbook")
    @classmethod
    def validate_playbook(cls, v: str) -> str:
        """Validate playbook is not empty."""
        if not v:
            raise ValueError("bootstrap playbook cannot be empty")
        return v


class ClusterTopology(BaseModel):
    """The set of nodes making up the cluster."""

    model_config = ConfigDict(frozen=True)

    name: str
    nodes: list[NodeSpec] = Field(default_factory=list)
    bootstrap: BootstrapRecord

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate topology name is not empty."""
        if not v:
            raise ValueError("topology name cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_nodes(self) -> "ClusterTopology":
        """Node names must be unique and the bootstrap record must name a control-plane node."""
        seen = set()
        for node in self.nodes:
            if node.name in seen:
                raise ValueError(f"duplicate node name '{node.name}'")
            seen.add(node.name)

        bootstrap_node = self.get_node(self.bootstrap.node)
        if bootstrap_node is None:
            raise ValueError(f"bootstrap node '{self.bootstrap.node}' is not declared in nodes")
        if bootstrap_node.role != "control-plane":
            raise ValueError(
                f"bootstrap node '{self.bootstrap.node}' must have role 'control-plane', "
                f"got '{bootstrap_node.role}'"
            )
        return self

    def get_node(self, name: str) -> NodeSpec | None:
        """Return the node named ``name`` or None."""
        return next((n for n in self.nodes if n.name == name), None)

    @property
    def control_plane(self) -> NodeSpec:
        """The control-plane node that the bootstrap record initialises."""
        return self.get_node(self.bootstrap.node)

    @property
    def workers(self) -> list[NodeSpec]:
        return [n for n in self.nodes if n.role == "worker"]

    def declared_labels(self) -> set[tuple[str, str]]:
        """Every (key, value) label pair declared on any node."""
        return {(k, v) for node in self.nodes for k, v in node.effective_labels.items()}
