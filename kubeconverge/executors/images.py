"""Image executor driving the docker CLI."""

import json
import re
import subprocess
from pathlib import Path

from kubeconverge.exceptions import ExecutorError, FatalError, TransientError
from kubeconverge.executors.base import ImageExecutor
from kubeconverge.logging_config import get_logger
from kubeconverge.models.actions import ActionOutcome
from kubeconverge.models.image import BUILD_HASH_LABEL, ImageSpec
from kubeconverge.models.state import ObservedImage

logger = get_logger(__name__)

FATAL_MARKERS = (
    "denied",
    "unauthorized",
    "authentication required",
    "forbidden",
)
TRANSIENT_MARKERS = (
    "toomanyrequests",
    "too many requests",
    "rate limit",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "tls handshake",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "no such host",
    "unexpected eof",
)
MISSING_MARKERS = ("no such manifest", "manifest unknown", "not found")

_PUSH_DIGEST = re.compile(r"digest: (sha256:[0-9a-f]{64})")


def classify_docker_error(stderr: str, description: str, default=FatalError) -> ExecutorError:
    """Map docker CLI stderr onto the transient/fatal taxonomy."""
    text = stderr.lower()
    message = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
    if any(marker in text for marker in FATAL_MARKERS):
        return FatalError(
            f"{description}: registry access denied",
            f"{message}\nRun 'docker login' for the target registry",
        )
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return TransientError(f"{description}: {message}")
    return default(f"{description} failed", stderr.strip() or None)


class DockerImageExecutor(ImageExecutor):
    """Builds and pushes images with the docker CLI."""

    def __init__(self, docker_bin: str = "docker", build_timeout: int = 1800, push_timeout: int = 900):
        """Initialize the executor.

        Args:
            docker_bin: Docker executable name or path
            build_timeout: Seconds before a build is abandoned
            push_timeout: Seconds before a push is abandoned
        """
        self.docker_bin = docker_bin
        self.build_timeout = build_timeout
        self.push_timeout = push_timeout

    def _run(self, args: list[str], description: str, timeout: int = 60) -> subprocess.CompletedProcess:
        command = [self.docker_bin, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            return subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise FatalError(
                f"{self.docker_bin} not found",
                "Install Docker from https://docs.docker.com/engine/install/",
            )
        except subprocess.TimeoutExpired:
            raise TransientError(f"{description} timed out after {timeout}s")

    def local_build_hash(self, image: ImageSpec) -> str | None:
        """Build hash label of the local image, or None if it is not present."""
        result = self._run(
            ["image", "inspect", "--format", "{{json .Config.Labels}}", image.reference],
            f"inspect {image.reference}",
        )
        if result.returncode != 0:
            if "no such" in result.stderr.lower():
                return None
            raise classify_docker_error(result.stderr, f"inspect {image.reference}")

        try:
            labels = json.loads(result.stdout.strip() or "null") or {}
        except json.JSONDecodeError:
            logger.warning(f"Unparseable labels for {image.reference}: {result.stdout!r}")
            return None
        return labels.get(BUILD_HASH_LABEL)

    def local_repo_digests(self, image: ImageSpec) -> list[str]:
        """Registry digests docker recorded for the local image when it was pushed."""
        result = self._run(
            ["image", "inspect", "--format", "{{json .RepoDigests}}", image.reference],
            f"inspect {image.reference}",
        )
        if result.returncode != 0:
            if "no such" in result.stderr.lower():
                return []
            raise classify_docker_error(result.stderr, f"inspect {image.reference}")

        try:
            entries = json.loads(result.stdout.strip() or "null") or []
        except json.JSONDecodeError:
            logger.warning(f"Unparseable repo digests for {image.reference}: {result.stdout!r}")
            return []
        # Entries look like registry.example.com/lab/jenkins@sha256:...
        return [entry.rpartition("@")[2] for entry in entries]

    def remote_digest(self, image: ImageSpec) -> str | None:
        """Registry digest of the image tag, or None if the registry lacks it."""
        result = self._run(
            ["manifest", "inspect", "--verbose", image.reference],
            f"query registry for {image.reference}",
        )
        if result.returncode != 0:
            if any(marker in result.stderr.lower() for marker in MISSING_MARKERS):
                return None
            raise classify_docker_error(
                result.stderr, f"query registry for {image.reference}", default=TransientError
            )

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise TransientError(f"Unparseable manifest for {image.reference}", str(e))

        # Multi-platform tags return a list of per-platform entries
        entry = data[0] if isinstance(data, list) and data else data
        if not isinstance(entry, dict):
            return None
        return (entry.get("Descriptor") or {}).get("digest")

    def observe(self, image: ImageSpec) -> ObservedImage:
        build_hash = self.local_build_hash(image)
        digest = self.remote_digest(image)
        # The tag only counts as pushed when it holds the local build
        pushed = (
            digest is not None
            and build_hash is not None
            and digest in self.local_repo_digests(image)
        )
        if digest is not None and not pushed:
            logger.info(f"Registry tag {image.reference} does not hold the local build")
        return ObservedImage(
            reference=image.reference,
            build_hash=build_hash,
            pushed=pushed,
            digest=digest,
        )

    def build(self, image: ImageSpec) -> ActionOutcome:
        if self.local_build_hash(image) == image.build_hash:
            logger.debug(f"Image {image.reference} already built at {image.build_hash[:12]}")
            return ActionOutcome.NOOP

        context = Path(image.context)
        args = [
            "build",
            "--tag",
            image.reference,
            "--file",
            str(context / image.dockerfile),
            "--label",
            f"{BUILD_HASH_LABEL}={image.build_hash}",
        ]
        for key, value in sorted(image.build_args.items()):
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(str(context))

        logger.info(f"Building image {image.reference} from {context}")
        result = self._run(args, f"build {image.reference}", timeout=self.build_timeout)
        if result.returncode != 0:
            raise classify_docker_error(result.stderr, f"build {image.reference}")
        return ActionOutcome.APPLIED

    def push(self, image: ImageSpec) -> ActionOutcome:
        before = self.remote_digest(image)

        logger.info(f"Pushing image {image.reference}")
        description = f"push {image.reference}"
        result = self._run(["push", image.reference], description, timeout=self.push_timeout)
        if result.returncode != 0:
            raise classify_docker_error(result.stderr, description, default=TransientError)

        match = _PUSH_DIGEST.search(result.stdout)
        pushed = match.group(1) if match else None
        if before is not None and before == pushed:
            logger.warning(f"Redundant push: {image.reference} already at {pushed}")
            return ActionOutcome.REDUNDANT
        return ActionOutcome.APPLIED
