"""Provision executor running Ansible playbooks through ansible-runner."""

import ansible_runner

from kubeconverge.exceptions import FatalError, TransientError
from kubeconverge.executors.base import ProvisionExecutor
from kubeconverge.logging_config import get_logger
from kubeconverge.models.actions import ActionOutcome
from kubeconverge.models.topology import BootstrapRecord, ClusterTopology, NodeSpec

logger = get_logger(__name__)


def _hosts(stats: dict, key: str) -> list[str]:
    return sorted(host for host, count in (stats.get(key) or {}).items() if count)


class AnsibleProvisionExecutor(ProvisionExecutor):
    """Bootstraps the control plane and joins workers with Ansible playbooks."""

    def __init__(self, verbosity: int = 0):
        self.verbosity = verbosity

    def _run_playbook(
        self, record: BootstrapRecord, playbook: str, limit: str, extravars: dict
    ) -> ActionOutcome:
        runner_params = {
            "private_data_dir": record.private_data_dir,
            "playbook": playbook,
            "limit": limit,
            "extravars": extravars,
            "quiet": True,
            "verbosity": self.verbosity,
        }
        if record.inventory:
            runner_params["inventory"] = record.inventory

        logger.info(f"Running playbook {playbook} (limit: {limit})")
        runner = ansible_runner.run(**runner_params)
        stats = runner.stats or {}
        logger.debug(f"Playbook {playbook} finished: status={runner.status} rc={runner.rc}")

        if runner.rc == 0 and runner.status == "successful":
            return ActionOutcome.APPLIED if _hosts(stats, "changed") else ActionOutcome.NOOP

        unreachable = _hosts(stats, "dark")
        if unreachable:
            raise TransientError(
                f"Playbook {playbook}: hosts unreachable: {', '.join(unreachable)}",
                "Check SSH connectivity and that the instances are running",
            )
        if runner.status == "timeout":
            raise TransientError(f"Playbook {playbook} timed out")

        failed = _hosts(stats, "failures")
        raise FatalError(
            f"Playbook {playbook} failed (status: {runner.status}, rc: {runner.rc})",
            f"Failed hosts: {', '.join(failed)}" if failed else None,
        )

    def bootstrap(self, topology: ClusterTopology) -> ActionOutcome:
        record = topology.bootstrap
        extravars = {
            **record.extravars,
            "cluster_name": topology.name,
            "control_plane_node": record.node,
        }
        return self._run_playbook(record, record.playbook, record.node, extravars)

    def join(self, topology: ClusterTopology, node: NodeSpec) -> ActionOutcome:
        record = topology.bootstrap
        if not record.join_playbook:
            raise FatalError(
                f"Cannot join node '{node.name}': no join_playbook in the bootstrap record"
            )
        extravars = {
            **record.extravars,
            "cluster_name": topology.name,
            "control_plane_node": record.node,
            "node_role": node.role,
        }
        return self._run_playbook(record, record.join_playbook, node.name, extravars)
