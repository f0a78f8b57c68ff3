"""Executor interfaces.

Executors are the only code that touches external systems. Every mutating
call must be idempotent and report whether it changed anything.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from kubeconverge.models.actions import ActionOutcome
from kubeconverge.models.image import ImageSpec
from kubeconverge.models.state import ObservedImage, ObservedState, WorkloadStatus
from kubeconverge.models.topology import ClusterTopology, NodeSpec, NodeTaint
from kubeconverge.models.workload import WorkloadSpec


class ClusterExecutor(ABC):
    """Reads and mutates cluster objects through the control-plane API."""

    @abstractmethod
    def observe(self, workloads: tuple[WorkloadSpec, ...]) -> ObservedState:
        """Return nodes plus the applied revision of each workload and service."""

    @abstractmethod
    def label_node(self, name: str, labels: dict[str, str]) -> ActionOutcome:
        """Ensure ``labels`` are set on node ``name``."""

    @abstractmethod
    def taint_node(self, name: str, taints: list[NodeTaint]) -> ActionOutcome:
        """Ensure ``taints`` are present on node ``name``."""

    @abstractmethod
    def apply_workload(self, workload: WorkloadSpec, revision: str) -> ActionOutcome:
        """Create or update the workload's Deployment at ``revision``."""

    @abstractmethod
    def apply_service(self, workload: WorkloadSpec) -> ActionOutcome:
        """Create or update the Service exposing the workload."""

    @abstractmethod
    def workload_status(self, workload: WorkloadSpec) -> WorkloadStatus:
        """Return the current rollout status of the workload."""

    def lease_api(self):
        """Return a coordination API client for cluster leases, or None without one."""
        return None


class ImageExecutor(ABC):
    """Builds images and publishes them to a registry."""

    @abstractmethod
    def observe(self, image: ImageSpec) -> ObservedImage:
        """Return local build state and registry presence of ``image``."""

    @abstractmethod
    def build(self, image: ImageSpec) -> ActionOutcome:
        """Build ``image`` from its context, labelled with its build hash."""

    @abstractmethod
    def push(self, image: ImageSpec) -> ActionOutcome:
        """Push ``image``; REDUNDANT when the registry already had the same digest."""


class ProvisionExecutor(ABC):
    """Runs the configuration-management tool to create cluster membership."""

    @abstractmethod
    def bootstrap(self, topology: ClusterTopology) -> ActionOutcome:
        """Initialise the control plane named by the bootstrap record."""

    @abstractmethod
    def join(self, topology: ClusterTopology, node: NodeSpec) -> ActionOutcome:
        """Join a worker node to the cluster."""


@dataclass
class Executors:
    """The executor set a reconciler drives."""

    cluster: ClusterExecutor
    images: ImageExecutor
    provision: ProvisionExecutor
