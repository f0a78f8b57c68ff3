"""Diff a target graph against observed state into ordered actions."""

from kubeconverge.manifest import TargetGraph
from kubeconverge.models.actions import ActionKind, ActionRecord
from kubeconverge.models.state import ObservedState


def _format_pairs(pairs: dict[str, str]) -> str:
    return ", ".join(f"{k}={v}" for k, v in sorted(pairs.items()))


def plan_topology(graph: TargetGraph, observed: ObservedState) -> list[ActionRecord]:
    """Bootstrap, join, label and taint actions for the cluster's nodes."""
    topology = graph.topology
    record = topology.bootstrap
    actions = []

    if not observed.reachable or record.node not in observed.nodes:
        actions.append(
            ActionRecord(kind=ActionKind.BOOTSTRAP, subject=record.node, detail=record.playbook)
        )

    if record.join_playbook:
        for node in topology.nodes:
            if node.name != record.node and node.name not in observed.nodes:
                actions.append(
                    ActionRecord(
                        kind=ActionKind.JOIN, subject=node.name, detail=record.join_playbook
                    )
                )

    for node in topology.nodes:
        current = observed.nodes.get(node.name)
        current_labels = current.labels if current else {}
        missing_labels = {
            k: v for k, v in node.effective_labels.items() if current_labels.get(k) != v
        }
        if missing_labels:
            actions.append(
                ActionRecord(
                    kind=ActionKind.LABEL, subject=node.name, detail=_format_pairs(missing_labels)
                )
            )

        current_taints = set(current.taints) if current else set()
        missing_taints = [t for t in node.taints if t not in current_taints]
        if missing_taints:
            actions.append(
                ActionRecord(
                    kind=ActionKind.TAINT,
                    subject=node.name,
                    detail=", ".join(str(t) for t in missing_taints),
                )
            )
    return actions


def plan_images(graph: TargetGraph, observed: ObservedState) -> list[ActionRecord]:
    """Build and push actions for images whose build hash or registry state differs."""
    actions = []
    for image in graph.images:
        current = observed.images.get(image.reference)
        if current is None or current.build_hash != image.build_hash:
            actions.append(
                ActionRecord(
                    kind=ActionKind.BUILD, subject=image.reference, detail=image.build_hash[:12]
                )
            )
            actions.append(ActionRecord(kind=ActionKind.PUSH, subject=image.reference))
        elif not current.pushed:
            actions.append(ActionRecord(kind=ActionKind.PUSH, subject=image.reference))
    return actions


def plan_workloads(graph: TargetGraph, observed: ObservedState) -> list[ActionRecord]:
    """Apply, patch and expose actions for workloads whose revision differs."""
    actions = []
    for workload in graph.workloads:
        revision = graph.deployment_hash(workload)
        if workload.key not in observed.workloads:
            actions.append(
                ActionRecord(kind=ActionKind.APPLY, subject=workload.key, detail=revision)
            )
        elif observed.workloads[workload.key] != revision:
            actions.append(
                ActionRecord(kind=ActionKind.PATCH, subject=workload.key, detail=revision)
            )

        if workload.exposure is not None:
            if observed.services.get(workload.key, None) != workload.exposure_hash:
                actions.append(
                    ActionRecord(
                        kind=ActionKind.EXPOSE,
                        subject=workload.key,
                        detail=workload.exposure.type,
                    )
                )
    return actions


def plan(graph: TargetGraph, observed: ObservedState) -> list[ActionRecord]:
    """Return the minimal ordered action list that converges ``observed`` to ``graph``.

    Actions are ordered by tier: membership, then node labels and taints,
    then images, then workload placement, then service exposure. The sort is
    stable so declaration order is kept within a tier.
    """
    actions = (
        plan_topology(graph, observed)
        + plan_images(graph, observed)
        + plan_workloads(graph, observed)
    )
    return sorted(actions, key=lambda a: a.tier)
