"""Action executors: thin, idempotent adapters over external systems."""

from kubeconverge.config import ReconcilerSettings
from kubeconverge.executors.base import ClusterExecutor, Executors, ImageExecutor, ProvisionExecutor


def build_executors(settings: ReconcilerSettings) -> Executors:
    """Create the production executor set for ``settings``."""
    from kubeconverge.executors.images import DockerImageExecutor
    from kubeconverge.executors.kubernetes import KubernetesExecutor
    from kubeconverge.executors.provision import AnsibleProvisionExecutor

    return Executors(
        cluster=KubernetesExecutor(
            kubeconfig=settings.kubeconfig,
            context=settings.context,
            field_manager=settings.field_manager,
        ),
        images=DockerImageExecutor(docker_bin=settings.docker_bin),
        provision=AnsibleProvisionExecutor(),
    )


__all__ = [
    "ClusterExecutor",
    "Executors",
    "ImageExecutor",
    "ProvisionExecutor",
    "build_executors",
]
