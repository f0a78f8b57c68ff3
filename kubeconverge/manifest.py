"""Desired-state loader.

Reads a manifest set (YAML documents of kind ``Topology``, ``Image`` and
``Workload``) and validates it into an immutable :class:`TargetGraph`.
Every problem found is collected so a single run reports all of them.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubeconverge.exceptions import ValidationError
from kubeconverge.logging_config import get_logger
from kubeconverge.models.image import ImageSpec
from kubeconverge.models.topology import ClusterTopology
from kubeconverge.models.workload import NODE_PORT_RANGE, WorkloadSpec

logger = get_logger(__name__)

KINDS = ["Topology", "Image", "Workload"]
MANIFEST_SUFFIXES = (".yml", ".yaml")
BLOCKING_EFFECTS = ("NoSchedule", "NoExecute")


@dataclass(frozen=True)
class TargetGraph:
    """Validated desired state for one cluster."""

    topology: ClusterTopology
    images: tuple[ImageSpec, ...] = ()
    workloads: tuple[WorkloadSpec, ...] = ()

    @property
    def name(self) -> str:
        return self.topology.name

    def image_for(self, workload: WorkloadSpec) -> ImageSpec | None:
        """Return the managed image a workload runs, if it is built by us."""
        return next((i for i in self.images if i.reference == workload.image), None)

    def get_workload(self, key: str) -> WorkloadSpec | None:
        return next((w for w in self.workloads if w.key == key), None)

    def deployment_hash(self, workload: WorkloadSpec) -> str:
        """Spec hash of the workload combined with its image's build hash.

        A rebuilt image under an unchanged tag must still roll the workload.
        """
        image = self.image_for(workload)
        if image is None or not image.build_hash:
            return workload.spec_hash
        combined = f"{workload.spec_hash}:{image.build_hash}".encode()
        return hashlib.sha256(combined).hexdigest()[:16]


def _format_pydantic_errors(where: str, error: PydanticValidationError) -> list[str]:
    problems = []
    for item in error.errors():
        field = ".".join(str(x) for x in item["loc"]) or "document"
        problems.append(f"{where}: {field}: {item['msg']}")
    return problems


class ManifestLoader:
    """Loads and validates manifest files into a TargetGraph."""

    def __init__(self):
        self.yaml = YAML(typ="safe")

    def discover(self, path: str | Path) -> list[Path]:
        """Return the manifest files at ``path`` (a file or a directory).

        Raises:
            ValidationError: If the path does not exist or holds no manifests
        """
        manifest_path = Path(path)
        if not manifest_path.exists():
            raise ValidationError(
                f"Manifest not found: {manifest_path}",
                details=f"Expected location: {manifest_path.absolute()}",
            )
        if manifest_path.is_file():
            return [manifest_path]

        files = sorted(p for p in manifest_path.rglob("*") if p.suffix in MANIFEST_SUFFIXES)
        if not files:
            raise ValidationError(
                f"No manifest files found in {manifest_path}",
                details=f"Manifest files must end in {' or '.join(MANIFEST_SUFFIXES)}",
            )
        return files

    def read_documents(self, files: list[Path]) -> tuple[list[tuple[str, Path, dict]], list[str]]:
        """Parse every YAML document in ``files``.

        Returns:
            (documents, problems) where documents are (location, base_dir, data)
        """
        documents = []
        problems = []
        for file in files:
            logger.debug(f"Reading manifest file: {file}")
            try:
                with open(file) as f:
                    loaded = list(self.yaml.load_all(f))
            except YAMLError as e:
                problems.append(f"{file}: invalid YAML: {e}")
                continue
            except OSError as e:
                problems.append(f"{file}: cannot read file: {e}")
                continue

            for index, data in enumerate(loaded):
                if data is None:
                    continue
                where = f"{file}#{index}"
                if not isinstance(data, dict):
                    problems.append(f"{where}: document must be a mapping")
                    continue
                documents.append((where, file.parent, data))
        return documents, problems

    def load(self, path: str | Path) -> TargetGraph:
        """Load a manifest set from ``path``.

        Raises:
            ValidationError: On malformed documents, unknown references or port conflicts
        """
        files = self.discover(path)
        documents, problems = self.read_documents(files)
        logger.info(f"Loaded {len(documents)} manifest documents from {len(files)} files")

        topologies: list[ClusterTopology] = []
        images: list[ImageSpec] = []
        raw_workloads: list[tuple[str, dict]] = []

        for where, base_dir, data in documents:
            body = dict(data)
            kind = body.pop("kind", None)
            if kind not in KINDS:
                problems.append(f"{where}: kind must be one of {KINDS}, got {kind!r}")
                continue

            if kind == "Workload":
                raw_workloads.append((where, body))
                continue

            try:
                if kind == "Topology":
                    topologies.append(ClusterTopology(**body))
                else:
                    image = ImageSpec(**body)
                    try:
                        image = image.model_copy(
                            update={
                                "context": str(image.context_path(base_dir).resolve()),
                                "build_hash": image.compute_build_hash(base_dir),
                            }
                        )
                    except FileNotFoundError as e:
                        problems.append(f"{where}: image '{image.name}': {e}")
                    images.append(image)
            except PydanticValidationError as e:
                problems.extend(_format_pydantic_errors(where, e))

        if len(topologies) != 1:
            problems.append(
                f"exactly one Topology with a control-plane bootstrap record is required, "
                f"found {len(topologies)}"
            )

        problems.extend(self._check_images(images))
        workloads = self._build_workloads(raw_workloads, images, problems)

        if len(topologies) == 1:
            problems.extend(self._check_placement(topologies[0], workloads))
        problems.extend(self._check_ports(workloads))

        if problems:
            logger.error(f"Manifest validation failed with {len(problems)} problems")
            raise ValidationError(
                f"Manifest validation failed ({len(problems)} problems)", problems=problems
            )

        graph = TargetGraph(
            topology=topologies[0], images=tuple(images), workloads=tuple(workloads)
        )
        logger.info(
            f"Target graph '{graph.name}': {len(graph.topology.nodes)} nodes, "
            f"{len(graph.images)} images, {len(graph.workloads)} workloads"
        )
        return graph

    def _check_images(self, images: list[ImageSpec]) -> list[str]:
        problems = []
        seen_names = set()
        seen_refs = set()
        for image in images:
            if image.name in seen_names:
                problems.append(f"duplicate image name '{image.name}'")
            if image.reference in seen_refs:
                problems.append(f"duplicate image reference '{image.reference}'")
            seen_names.add(image.name)
            seen_refs.add(image.reference)
        return problems

    def _build_workloads(
        self, raw_workloads: list[tuple[str, dict]], images: list[ImageSpec], problems: list[str]
    ) -> list[WorkloadSpec]:
        """Resolve image names to references and construct workload models."""
        by_name = {i.name: i for i in images}
        workloads = []
        seen = set()
        for where, body in raw_workloads:
            image = body.get("image")
            if isinstance(image, str) and image in by_name:
                body = {**body, "image": by_name[image].reference}
            elif isinstance(image, str) and ":" not in image and "/" not in image and "@" not in image:
                problems.append(
                    f"{where}: image '{image}' is neither a declared Image nor a tagged reference"
                )
                continue

            try:
                workload = WorkloadSpec(**body)
            except PydanticValidationError as e:
                problems.extend(_format_pydantic_errors(where, e))
                continue

            if workload.key in seen:
                problems.append(f"{where}: duplicate workload '{workload.key}'")
                continue
            seen.add(workload.key)
            workloads.append(workload)
        return workloads

    def _check_placement(
        self, topology: ClusterTopology, workloads: list[WorkloadSpec]
    ) -> list[str]:
        """Node selectors must reference declared labels and match a schedulable node."""
        problems = []
        declared = topology.declared_labels()
        for workload in workloads:
            selector = workload.placement.node_selector
            unknown = [f"{k}={v}" for k, v in selector.items() if (k, v) not in declared]
            if unknown:
                problems.append(
                    f"workload '{workload.key}': node selector references undeclared "
                    f"labels: {', '.join(sorted(unknown))}"
                )
                continue

            candidates = [
                node
                for node in topology.nodes
                if all(node.effective_labels.get(k) == v for k, v in selector.items())
            ]
            if not candidates:
                problems.append(
                    f"workload '{workload.key}': no single node carries all of "
                    f"{', '.join(f'{k}={v}' for k, v in selector.items())}"
                )
                continue

            schedulable = [
                node
                for node in candidates
                if all(
                    workload.placement.tolerates(taint)
                    for taint in node.taints
                    if taint.effect in BLOCKING_EFFECTS
                )
            ]
            if not schedulable:
                problems.append(
                    f"workload '{workload.key}': every matching node has a taint the "
                    f"workload does not tolerate ({', '.join(n.name for n in candidates)})"
                )
        return problems

    def _check_ports(self, workloads: list[WorkloadSpec]) -> list[str]:
        problems = []
        node_ports: dict[int, str] = {}
        low, high = NODE_PORT_RANGE
        for workload in workloads:
            if workload.exposure is None:
                continue
            seen_ports = set()
            seen_names = set()
            seen_node_ports = set()
            for mapping in workload.exposure.ports:
                if (mapping.port, mapping.protocol) in seen_ports:
                    problems.append(
                        f"workload '{workload.key}': port {mapping.port}/{mapping.protocol} "
                        f"is mapped more than once"
                    )
                seen_ports.add((mapping.port, mapping.protocol))

                if mapping.name:
                    if mapping.name in seen_names:
                        problems.append(
                            f"workload '{workload.key}': duplicate port name '{mapping.name}'"
                        )
                    seen_names.add(mapping.name)

                if mapping.node_port is None:
                    continue
                if not low <= mapping.node_port <= high:
                    problems.append(
                        f"workload '{workload.key}': node_port {mapping.node_port} is outside "
                        f"{low}-{high}"
                    )
                owner = node_ports.get(mapping.node_port)
                if owner is not None and owner != workload.key:
                    problems.append(
                        f"workload '{workload.key}': node_port {mapping.node_port} conflicts "
                        f"with workload '{owner}'"
                    )
                elif (mapping.node_port, mapping.protocol) in seen_node_ports:
                    problems.append(
                        f"workload '{workload.key}': node_port {mapping.node_port}/"
                        f"{mapping.protocol} is used twice"
                    )
                # One service may share a node port between TCP and UDP
                seen_node_ports.add((mapping.node_port, mapping.protocol))
                node_ports[mapping.node_port] = workload.key

            if len(workload.exposure.ports) > 1 and len(seen_names) < len(workload.exposure.ports):
                problems.append(
                    f"workload '{workload.key}': every port needs a name when exposing more than one"
                )
        return problems


def load_manifest(path: str | Path) -> TargetGraph:
    """Load and validate the manifest set at ``path``."""
    return ManifestLoader().load(path)
