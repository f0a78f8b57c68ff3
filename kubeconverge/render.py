"""Render workload specs into Kubernetes object bodies."""

from kubeconverge.models.workload import WorkloadSpec

SPEC_HASH_ANNOTATION = "kubeconverge.io/spec-hash"
REVISION_ANNOTATION = "kubeconverge.io/revision"
MANAGED_BY = "kubeconverge"


def selector_labels(workload: WorkloadSpec) -> dict[str, str]:
    return {"app.kubernetes.io/name": workload.name}


def object_labels(workload: WorkloadSpec) -> dict[str, str]:
    return {**selector_labels(workload), "app.kubernetes.io/managed-by": MANAGED_BY}


def render_container(workload: WorkloadSpec) -> dict:
    container = {"name": workload.name, "image": workload.image}
    if workload.exposure is not None and workload.exposure.ports:
        container["ports"] = []
        for mapping in workload.exposure.ports:
            port = {"containerPort": mapping.container_port, "protocol": mapping.protocol}
            if mapping.name:
                port["name"] = mapping.name
            container["ports"].append(port)
    if workload.env:
        container["env"] = [{"name": k, "value": v} for k, v in sorted(workload.env.items())]
    resources = {}
    if workload.resources.requests:
        resources["requests"] = dict(workload.resources.requests)
    if workload.resources.limits:
        resources["limits"] = dict(workload.resources.limits)
    if resources:
        container["resources"] = resources
    return container


def render_deployment(workload: WorkloadSpec, revision: str) -> dict:
    """Deployment body stamped with ``revision``.

    The revision is also set on the pod template so a changed image build
    rolls the pods even when the tag is unchanged.
    """
    pod_spec = {"containers": [render_container(workload)]}
    if workload.placement.node_selector:
        pod_spec["nodeSelector"] = dict(workload.placement.node_selector)
    if workload.placement.tolerations:
        pod_spec["tolerations"] = [t.to_api_dict() for t in workload.placement.tolerations]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": workload.name,
            "namespace": workload.namespace,
            "labels": object_labels(workload),
            "annotations": {SPEC_HASH_ANNOTATION: revision},
        },
        "spec": {
            "replicas": workload.replicas,
            "selector": {"matchLabels": selector_labels(workload)},
            "template": {
                "metadata": {
                    "labels": object_labels(workload),
                    "annotations": {REVISION_ANNOTATION: revision},
                },
                "spec": pod_spec,
            },
        },
    }


def render_service(workload: WorkloadSpec) -> dict:
    """Service body for a workload's exposure."""
    if workload.exposure is None:
        raise ValueError(f"workload '{workload.key}' has no exposure")

    ports = []
    for mapping in workload.exposure.ports:
        port = {
            "port": mapping.port,
            "targetPort": mapping.container_port,
            "protocol": mapping.protocol,
        }
        if mapping.name:
            port["name"] = mapping.name
        if mapping.node_port:
            port["nodePort"] = mapping.node_port
        ports.append(port)

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": workload.name,
            "namespace": workload.namespace,
            "labels": object_labels(workload),
            "annotations": {SPEC_HASH_ANNOTATION: workload.exposure_hash},
        },
        "spec": {
            "type": workload.exposure.type,
            "selector": selector_labels(workload),
            "ports": ports,
        },
    }
