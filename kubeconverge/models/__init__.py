"""Data models for desired state, observed state and pass results."""

from kubeconverge.models.actions import (
    ActionKind,
    ActionOutcome,
    ActionRecord,
    HealthState,
    PassReport,
    PassStatus,
    Tier,
    WorkloadHealth,
)
from kubeconverge.models.image import ImageSpec
from kubeconverge.models.state import ObservedImage, ObservedNode, ObservedState, WorkloadStatus
from kubeconverge.models.topology import BootstrapRecord, ClusterTopology, NodeSpec, NodeTaint
from kubeconverge.models.workload import (
    Exposure,
    Placement,
    PortMapping,
    ResourceRequirements,
    Toleration,
    WorkloadSpec,
)

__all__ = [
    "ActionKind",
    "ActionOutcome",
    "ActionRecord",
    "BootstrapRecord",
    "ClusterTopology",
    "Exposure",
    "HealthState",
    "ImageSpec",
    "NodeSpec",
    "NodeTaint",
    "ObservedImage",
    "ObservedNode",
    "ObservedState",
    "PassReport",
    "PassStatus",
    "Placement",
    "PortMapping",
    "ResourceRequirements",
    "Tier",
    "Toleration",
    "WorkloadHealth",
    "WorkloadSpec",
    "WorkloadStatus",
]
