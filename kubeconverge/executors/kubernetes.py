"""Cluster executor backed by the Kubernetes API."""

import os
from contextlib import contextmanager
from pathlib import Path

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from kubeconverge.exceptions import ExecutorError, FatalError, TransientError
from kubeconverge.executors.base import ClusterExecutor
from kubeconverge.logging_config import get_logger
from kubeconverge.models.actions import ActionOutcome
from kubeconverge.models.state import ObservedNode, ObservedState, WorkloadStatus
from kubeconverge.models.topology import TAINT_EFFECTS, NodeTaint
from kubeconverge.models.workload import WorkloadSpec
from kubeconverge.render import (
    SPEC_HASH_ANNOTATION,
    object_labels,
    render_deployment,
    render_service,
)

logger = get_logger(__name__)

FATAL_STATUS_CODES = {400, 401, 403, 422}
FATAL_WAITING_REASONS = {
    "InvalidImageName",
    "CreateContainerConfigError",
    "CreateContainerError",
}


def classify_api_error(error: ApiException, description: str) -> ExecutorError:
    """Map an API error onto the transient/fatal taxonomy."""
    status = error.status or 0
    reason = error.reason or "unknown"
    if status in (401, 403):
        return FatalError(
            f"{description}: permission denied ({status} {reason})",
            "Check the kubeconfig credentials and RBAC permissions for this user",
        )
    if status in FATAL_STATUS_CODES:
        return FatalError(f"{description}: rejected by the API server ({status} {reason})", error.body)
    return TransientError(f"{description}: {status} {reason}", error.body)


def _annotation(obj, key: str) -> str | None:
    annotations = (obj.metadata.annotations if obj.metadata else None) or {}
    return annotations.get(key)


class KubernetesExecutor(ClusterExecutor):
    """Applies nodes, deployments and services through the Kubernetes API."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        field_manager: str = "kubeconverge",
        core_api: client.CoreV1Api | None = None,
        apps_api: client.AppsV1Api | None = None,
        coordination_api: client.CoordinationV1Api | None = None,
    ):
        """Initialize the executor.

        Args:
            kubeconfig: Path to kubeconfig; falls back to $KUBECONFIG then ~/.kube/config
            context: Kubeconfig context to use
            field_manager: Field manager name recorded on every write
            core_api: Preconfigured CoreV1Api (skips kubeconfig loading)
            apps_api: Preconfigured AppsV1Api (skips kubeconfig loading)
            coordination_api: Preconfigured CoordinationV1Api for cluster leases
        """
        self.kubeconfig = kubeconfig
        self.context = context
        self.field_manager = field_manager
        self._core = core_api
        self._apps = apps_api
        self._coordination = coordination_api

    def _load(self) -> None:
        """Load kubeconfig lazily so a cluster bootstrapped mid-pass becomes reachable."""
        if self._core is not None and self._apps is not None:
            return

        kubeconfig = self.kubeconfig or os.environ.get("KUBECONFIG", "~/.kube/config")
        kubeconfig_path = Path(kubeconfig).expanduser()
        try:
            if kubeconfig_path.exists():
                config.load_kube_config(config_file=str(kubeconfig_path), context=self.context)
            else:
                config.load_incluster_config()
        except ConfigException as e:
            raise TransientError(
                f"Failed to load kubeconfig from {kubeconfig_path}",
                f"{e}\nThe cluster may not be bootstrapped yet",
            )

        self._core = self._core or client.CoreV1Api()
        self._apps = self._apps or client.AppsV1Api()
        logger.debug(f"Kubernetes API clients initialised from {kubeconfig_path}")

    @property
    def core(self) -> client.CoreV1Api:
        self._load()
        return self._core

    @property
    def apps(self) -> client.AppsV1Api:
        self._load()
        return self._apps

    def lease_api(self) -> client.CoordinationV1Api | None:
        try:
            self._load()
        except TransientError as e:
            logger.debug(f"No lease API yet: {e.message}")
            return None
        if self._coordination is None:
            self._coordination = client.CoordinationV1Api(self._core.api_client)
        return self._coordination

    @contextmanager
    def _api_call(self, description: str):
        try:
            yield
        except ApiException as e:
            error = classify_api_error(e, description)
            logger.warning(f"{error.message}")
            raise error from e
        except (HTTPError, ConnectionError) as e:
            logger.warning(f"{description}: connection failed: {e}")
            raise TransientError(f"{description}: connection failed", str(e)) from e

    def _read_optional(self, read, description: str, *args):
        """Call a read function, returning None when the object does not exist."""
        try:
            with self._api_call(description):
                return read(*args)
        except TransientError as e:
            if isinstance(e.__cause__, ApiException) and e.__cause__.status == 404:
                return None
            raise

    def observe(self, workloads: tuple[WorkloadSpec, ...]) -> ObservedState:
        try:
            self._load()
        except TransientError as e:
            logger.info(f"Cluster not reachable: {e.message}")
            return ObservedState(reachable=False)

        state = ObservedState()
        with self._api_call("list nodes"):
            nodes = self.core.list_node()

        for node in nodes.items:
            taints = []
            for taint in (node.spec.taints if node.spec else None) or []:
                if taint.effect not in TAINT_EFFECTS:
                    continue
                taints.append(NodeTaint(key=taint.key, value=taint.value or "", effect=taint.effect))
            conditions = (node.status.conditions if node.status else None) or []
            ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
            state.nodes[node.metadata.name] = ObservedNode(
                name=node.metadata.name,
                labels=dict(node.metadata.labels or {}),
                taints=taints,
                ready=ready,
            )

        for workload in workloads:
            deployment = self._read_optional(
                self.apps.read_namespaced_deployment,
                f"read deployment {workload.key}",
                workload.name,
                workload.namespace,
            )
            if deployment is not None:
                state.workloads[workload.key] = _annotation(deployment, SPEC_HASH_ANNOTATION)

            if workload.exposure is None:
                continue
            service = self._read_optional(
                self.core.read_namespaced_service,
                f"read service {workload.key}",
                workload.name,
                workload.namespace,
            )
            if service is not None:
                state.services[workload.key] = _annotation(service, SPEC_HASH_ANNOTATION)

        logger.debug(
            f"Observed {len(state.nodes)} nodes, {len(state.workloads)} deployments, "
            f"{len(state.services)} services"
        )
        return state

    def label_node(self, name: str, labels: dict[str, str]) -> ActionOutcome:
        with self._api_call(f"read node {name}"):
            node = self.core.read_node(name)

        current = node.metadata.labels or {}
        if all(current.get(k) == v for k, v in labels.items()):
            logger.debug(f"Node {name} already carries {labels}")
            return ActionOutcome.NOOP

        logger.info(f"Labelling node {name}: {labels}")
        with self._api_call(f"label node {name}"):
            self.core.patch_node(
                name, {"metadata": {"labels": labels}}, field_manager=self.field_manager
            )
        return ActionOutcome.APPLIED

    def taint_node(self, name: str, taints: list[NodeTaint]) -> ActionOutcome:
        with self._api_call(f"read node {name}"):
            node = self.core.read_node(name)

        existing = []
        for taint in (node.spec.taints if node.spec else None) or []:
            existing.append({"key": taint.key, "value": taint.value, "effect": taint.effect})

        present = {(t["key"], t["value"] or "", t["effect"]) for t in existing}
        if all((t.key, t.value, t.effect) in present for t in taints):
            return ActionOutcome.NOOP

        # Taints are replaced as a list; keep unrelated ones and replace same key/effect
        desired_keys = {(t.key, t.effect) for t in taints}
        merged = [t for t in existing if (t["key"], t["effect"]) not in desired_keys]
        merged.extend(t.to_api_dict() for t in taints)

        logger.info(f"Tainting node {name}: {', '.join(str(t) for t in taints)}")
        with self._api_call(f"taint node {name}"):
            self.core.patch_node(name, {"spec": {"taints": merged}}, field_manager=self.field_manager)
        return ActionOutcome.APPLIED

    def apply_workload(self, workload: WorkloadSpec, revision: str) -> ActionOutcome:
        body = render_deployment(workload, revision)
        existing = self._read_optional(
            self.apps.read_namespaced_deployment,
            f"read deployment {workload.key}",
            workload.name,
            workload.namespace,
        )

        if existing is None:
            logger.info(f"Creating deployment {workload.key} at revision {revision}")
            with self._api_call(f"create deployment {workload.key}"):
                self.apps.create_namespaced_deployment(
                    workload.namespace, body, field_manager=self.field_manager
                )
            return ActionOutcome.APPLIED

        if _annotation(existing, SPEC_HASH_ANNOTATION) == revision:
            logger.debug(f"Deployment {workload.key} already at revision {revision}")
            return ActionOutcome.NOOP

        logger.info(f"Replacing deployment {workload.key} with revision {revision}")
        body["metadata"]["resourceVersion"] = existing.metadata.resource_version
        with self._api_call(f"replace deployment {workload.key}"):
            self.apps.replace_namespaced_deployment(
                workload.name, workload.namespace, body, field_manager=self.field_manager
            )
        return ActionOutcome.APPLIED

    def apply_service(self, workload: WorkloadSpec) -> ActionOutcome:
        body = render_service(workload)
        existing = self._read_optional(
            self.core.read_namespaced_service,
            f"read service {workload.key}",
            workload.name,
            workload.namespace,
        )

        if existing is None:
            logger.info(f"Creating service {workload.key} ({workload.exposure.type})")
            with self._api_call(f"create service {workload.key}"):
                self.core.create_namespaced_service(
                    workload.namespace, body, field_manager=self.field_manager
                )
            return ActionOutcome.APPLIED

        if _annotation(existing, SPEC_HASH_ANNOTATION) == workload.exposure_hash:
            return ActionOutcome.NOOP

        # Replacing drops ports absent from the body; clusterIP is immutable
        body["metadata"]["resourceVersion"] = existing.metadata.resource_version
        cluster_ip = existing.spec.cluster_ip if existing.spec else None
        if cluster_ip:
            body["spec"]["clusterIP"] = cluster_ip

        logger.info(f"Replacing service {workload.key}")
        with self._api_call(f"replace service {workload.key}"):
            self.core.replace_namespaced_service(
                workload.name, workload.namespace, body, field_manager=self.field_manager
            )
        return ActionOutcome.APPLIED

    def workload_status(self, workload: WorkloadSpec) -> WorkloadStatus:
        deployment = self._read_optional(
            self.apps.read_namespaced_deployment_status,
            f"read deployment status {workload.key}",
            workload.name,
            workload.namespace,
        )
        if deployment is None:
            raise TransientError(f"Deployment {workload.key} does not exist yet")

        status = deployment.status
        fatal_reason = None
        for condition in status.conditions or []:
            if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
                fatal_reason = "ProgressDeadlineExceeded"

        if fatal_reason is None:
            fatal_reason = self._fatal_pod_reason(workload)

        return WorkloadStatus(
            name=workload.name,
            namespace=workload.namespace,
            desired=deployment.spec.replicas if deployment.spec.replicas is not None else 1,
            ready=status.ready_replicas or 0,
            updated=status.updated_replicas or 0,
            available=status.available_replicas or 0,
            total=status.replicas or 0,
            generation=deployment.metadata.generation or 0,
            observed_generation=status.observed_generation or 0,
            fatal_reason=fatal_reason,
        )

    def _fatal_pod_reason(self, workload: WorkloadSpec) -> str | None:
        selector = ",".join(f"{k}={v}" for k, v in object_labels(workload).items())
        with self._api_call(f"list pods for {workload.key}"):
            pods = self.core.list_namespaced_pod(workload.namespace, label_selector=selector)

        for pod in pods.items:
            for container_status in (pod.status.container_statuses if pod.status else None) or []:
                waiting = container_status.state.waiting if container_status.state else None
                if waiting is not None and waiting.reason in FATAL_WAITING_REASONS:
                    return f"{waiting.reason}: {waiting.message or pod.metadata.name}"
        return None
