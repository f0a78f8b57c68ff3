"""Observed cluster and registry state."""

from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from kubeconverge.models.topology import NodeTaint


class ObservedNode(BaseModel):
    """A node as reported by the Kubernetes API."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[NodeTaint] = Field(default_factory=list)
    ready: bool = False


class ObservedImage(BaseModel):
    """Local and registry state of one image reference."""

    reference: str
    build_hash: str | None = None  # from the local image's build-hash label
    pushed: bool = False
    digest: str | None = None


class WorkloadStatus(BaseModel):
    """Rollout status of a workload as reported by the cluster."""

    name: str
    namespace: str = "default"
    desired: int = 0
    ready: int = 0
    updated: int = 0
    available: int = 0
    # status.replicas counts pods of every ReplicaSet, old ones included
    total: int | None = None
    generation: int = 0
    observed_generation: int = 0
    fatal_reason: str | None = None

    def at_target(self, replicas: int) -> bool:
        """Whether the rollout is complete for ``replicas`` pods.

        The controller must have observed the latest generation, every pod
        must belong to the new ReplicaSet, and all of them must be ready and
        available.
        """
        if self.observed_generation < self.generation:
            return False
        total = self.updated if self.total is None else self.total
        return (
            self.updated >= replicas
            and total <= self.updated
            and self.ready >= replicas
            and self.available >= replicas
        )


@dataclass
class ObservedState:
    """Everything the planner needs to know about the live system.

    Workload and service maps are keyed by ``namespace/name`` and hold the
    spec hash annotated on the applied object.
    """

    reachable: bool = True
    nodes: dict[str, ObservedNode] = field(default_factory=dict)
    workloads: dict[str, str | None] = field(default_factory=dict)
    services: dict[str, str | None] = field(default_factory=dict)
    images: dict[str, ObservedImage] = field(default_factory=dict)
