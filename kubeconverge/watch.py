"""Re-run reconciliation passes when the manifest set changes."""

import hashlib
import threading
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path

from kubeconverge.exceptions import ValidationError
from kubeconverge.logging_config import get_logger
from kubeconverge.manifest import ManifestLoader
from kubeconverge.models.actions import PassReport
from kubeconverge.reconciler import Controller

logger = get_logger(__name__)


def fingerprint(files: list[Path]) -> str:
    """Digest of the names and contents of ``files``."""
    digest = hashlib.sha256()
    for file in sorted(files):
        digest.update(str(file).encode())
        try:
            digest.update(file.read_bytes())
        except OSError:
            digest.update(b"<unreadable>")
    return digest.hexdigest()


class ManifestWatcher:
    """Polls a manifest path and triggers a pass whenever its content changes."""

    def __init__(
        self,
        path: str | Path,
        controller: Controller,
        interval: float = 10.0,
        on_report: Callable[[PassReport], None] | None = None,
        on_invalid: Callable[[ValidationError], None] | None = None,
    ):
        self.path = Path(path)
        self.controller = controller
        self.interval = interval
        self.on_report = on_report
        self.on_invalid = on_invalid
        self.loader = ManifestLoader()
        self._last: str | None = None

    def poll(self) -> Future | None:
        """Check the manifest once; trigger a pass if it changed and is valid."""
        try:
            files = self.loader.discover(self.path)
        except ValidationError as e:
            self._invalid(e)
            return None

        current = fingerprint(files)
        if current == self._last:
            return None
        self._last = current

        try:
            graph = self.loader.load(self.path)
        except ValidationError as e:
            self._invalid(e)
            return None

        logger.info(f"Manifest changed; triggering pass for '{graph.name}'")
        future = self.controller.trigger(graph)
        if self.on_report is not None:
            future.add_done_callback(self._report_done)
        return future

    def _invalid(self, error: ValidationError) -> None:
        logger.error(f"Manifest invalid: {error.message}")
        if self.on_invalid is not None:
            self.on_invalid(error)

    def _report_done(self, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Pass failed: {error}")
            return
        self.on_report(future.result())

    def run(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set."""
        logger.info(f"Watching {self.path} every {self.interval}s")
        while not stop_event.is_set():
            self.poll()
            stop_event.wait(self.interval)
