"""Rollout health verification."""

import threading
import time
from collections.abc import Callable

from kubeconverge.exceptions import TransientError, VerificationTimeoutError
from kubeconverge.executors.base import ClusterExecutor
from kubeconverge.logging_config import get_logger
from kubeconverge.models.actions import HealthState, WorkloadHealth
from kubeconverge.models.state import WorkloadStatus
from kubeconverge.models.workload import WorkloadSpec

logger = get_logger(__name__)


class HealthVerifier:
    """Polls workload readiness until every workload settles or time runs out.

    A workload is Converged after ``stable_polls`` consecutive polls at its
    target, Degraded if its ready count drops after first reaching the
    target, and Failed if the cluster reports a non-recoverable container
    state. Cancellation is observed between polls, so a cancelled
    verification stops within one poll interval.
    """

    def __init__(
        self,
        cluster: ClusterExecutor,
        poll_interval: float = 5.0,
        timeout: float = 300.0,
        stable_polls: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.stable_polls = max(1, stable_polls)
        self.clock = clock

    def _at_target(self, workload: WorkloadSpec, status: WorkloadStatus) -> bool:
        return status.at_target(workload.replicas)

    def verify(
        self,
        workloads: tuple[WorkloadSpec, ...] | list[WorkloadSpec],
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> list[WorkloadHealth]:
        """Verify ``workloads`` and return one result per workload.

        Raises:
            VerificationTimeoutError: If any workload did not settle in time;
                the exception carries the full result list
        """
        cancel = cancel_event or threading.Event()
        deadline = self.clock() + (self.timeout if timeout is None else timeout)
        pending = {w.key: w for w in workloads}
        results: dict[str, WorkloadHealth] = {}
        reached: set[str] = set()
        streak: dict[str, int] = {key: 0 for key in pending}
        last: dict[str, WorkloadStatus] = {}

        logger.info(f"Verifying {len(pending)} workloads (timeout {deadline - self.clock():.0f}s)")

        while pending:
            if cancel.is_set():
                break

            for key, workload in list(pending.items()):
                try:
                    status = self.cluster.workload_status(workload)
                except TransientError as e:
                    logger.warning(f"Status of {key} unavailable: {e.message}")
                    streak[key] = 0
                    continue
                last[key] = status

                if status.fatal_reason:
                    results[key] = self._result(
                        workload, HealthState.FAILED, status, status.fatal_reason
                    )
                    del pending[key]
                elif self._at_target(workload, status):
                    reached.add(key)
                    streak[key] += 1
                    if streak[key] >= self.stable_polls:
                        results[key] = self._result(workload, HealthState.CONVERGED, status)
                        del pending[key]
                elif key in reached:
                    message = f"ready replicas dropped to {status.ready}/{workload.replicas}"
                    logger.warning(f"Workload {key} degraded: {message}")
                    results[key] = self._result(workload, HealthState.DEGRADED, status, message)
                    del pending[key]
                else:
                    streak[key] = 0

            if not pending:
                break

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            # Waiting on the event makes cancellation prompt
            cancel.wait(min(self.poll_interval, remaining))

        state = HealthState.CANCELLED if cancel.is_set() else HealthState.TIMED_OUT
        for key, workload in pending.items():
            message = "verification cancelled" if cancel.is_set() else "not ready before timeout"
            results[key] = self._result(workload, state, last.get(key), message)

        ordered = [results[w.key] for w in workloads]
        timed_out = [r.workload for r in ordered if r.state == HealthState.TIMED_OUT]
        if timed_out:
            raise VerificationTimeoutError(
                f"{len(timed_out)} workloads not ready before timeout",
                ", ".join(timed_out),
                results=ordered,
            )
        return ordered

    def _result(
        self,
        workload: WorkloadSpec,
        state: HealthState,
        status: WorkloadStatus | None,
        message: str = "",
    ) -> WorkloadHealth:
        return WorkloadHealth(
            workload=workload.key,
            state=state,
            ready=status.ready if status else 0,
            desired=workload.replicas,
            message=message,
        )
