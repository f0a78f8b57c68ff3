"""Reconciliation passes: observe, plan, execute tier by tier, verify."""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from kubeconverge.config import ReconcilerSettings
from kubeconverge.exceptions import (
    ConvergeError,
    FatalError,
    TransientError,
    VerificationTimeoutError,
)
from kubeconverge.executors.base import Executors
from kubeconverge.lease import LeaseManager, default_leases
from kubeconverge.logging_config import get_logger
from kubeconverge.manifest import TargetGraph
from kubeconverge.models.actions import (
    ActionKind,
    ActionOutcome,
    ActionRecord,
    HealthState,
    PassReport,
    PassStatus,
    Tier,
    WorkloadHealth,
)
from kubeconverge.models.state import ObservedState
from kubeconverge.planner import plan
from kubeconverge.verifier import HealthVerifier

logger = get_logger(__name__)


class PassCancelled(ConvergeError):
    """Raised inside a pass when its lease has been cancelled."""

    pass


def summarize_health(health: list[WorkloadHealth]) -> PassStatus:
    """Overall status from per-workload verification results."""
    states = {h.state for h in health}
    if HealthState.CANCELLED in states:
        return PassStatus.CANCELLED
    if HealthState.FAILED in states:
        return PassStatus.FAILED
    if HealthState.DEGRADED in states:
        return PassStatus.DEGRADED
    if HealthState.TIMED_OUT in states:
        return PassStatus.TIMED_OUT
    return PassStatus.CONVERGED


class Reconciler:
    """Drives executors to converge live state onto a target graph."""

    def __init__(
        self,
        executors: Executors,
        settings: ReconcilerSettings | None = None,
        leases: LeaseManager | None = None,
        verifier: HealthVerifier | None = None,
    ):
        self.executors = executors
        self.settings = settings or ReconcilerSettings()
        self.leases = leases or default_leases
        self.verifier = verifier or HealthVerifier(
            executors.cluster,
            poll_interval=self.settings.poll_interval,
            timeout=self.settings.verify_timeout,
            stable_polls=self.settings.stable_polls,
        )

    def run(self, graph: TargetGraph, dry_run: bool = False, verify: bool = True) -> PassReport:
        """Run one pass under the topology's lease.

        Raises:
            LeaseError: If the lease cannot be obtained within the configured timeout
        """
        with self.leases.acquire(
            graph.name, self.settings.lease_policy, self.settings.lease_timeout
        ) as lease:
            logger.info(f"Pass {lease.holder} started for '{graph.name}'")
            report = self.run_pass(graph, lease.cancel_event, dry_run=dry_run, verify=verify)
            logger.info(f"Pass {lease.holder} finished for '{graph.name}': {report.status.value}")
            return report

    def run_pass(
        self,
        graph: TargetGraph,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
        verify: bool = True,
    ) -> PassReport:
        """Run one pass without taking a lease."""
        cancel = cancel_event or threading.Event()

        try:
            observed = self.observe(graph, cancel)
        except PassCancelled:
            return PassReport(topology=graph.name, status=PassStatus.CANCELLED, dry_run=dry_run)
        except ConvergeError as e:
            logger.error(f"Observation failed: {e.message}")
            return PassReport(
                topology=graph.name, status=PassStatus.FAILED, error=e.format_message(), dry_run=dry_run
            )

        actions = plan(graph, observed)
        logger.info(f"Planned {len(actions)} actions for '{graph.name}'")

        if dry_run:
            return PassReport(
                topology=graph.name, status=PassStatus.PLANNED, actions=actions, dry_run=True
            )

        failure = self.execute(graph, actions, cancel)
        if cancel.is_set():
            return PassReport(topology=graph.name, status=PassStatus.CANCELLED, actions=actions)
        if failure is not None:
            return PassReport(
                topology=graph.name,
                status=PassStatus.FAILED,
                actions=actions,
                error=failure.format_message(),
            )

        if not verify or not graph.workloads:
            return PassReport(topology=graph.name, status=PassStatus.CONVERGED, actions=actions)

        error = None
        try:
            health = self.verifier.verify(graph.workloads, cancel_event=cancel)
        except VerificationTimeoutError as e:
            health = e.results
            error = e.format_message()
        except ConvergeError as e:
            logger.error(f"Verification failed: {e.message}")
            return PassReport(
                topology=graph.name,
                status=PassStatus.FAILED,
                actions=actions,
                error=e.format_message(),
            )

        return PassReport(
            topology=graph.name,
            status=summarize_health(health),
            actions=actions,
            health=health,
            error=error,
        )

    def observe(self, graph: TargetGraph, cancel: threading.Event) -> ObservedState:
        """Fetch live state for ``graph``, retrying transient failures."""
        observed = self._with_retry(
            "observe cluster", lambda: self.executors.cluster.observe(graph.workloads), cancel
        )
        for image in graph.images:
            observed.images[image.reference] = self._with_retry(
                f"observe image {image.reference}",
                lambda image=image: self.executors.images.observe(image),
                cancel,
            )
        return observed

    def execute(
        self, graph: TargetGraph, actions: list[ActionRecord], cancel: threading.Event
    ) -> ConvergeError | None:
        """Execute ``actions`` tier by tier; return the error that halted the pass, if any."""
        failure = None
        for tier in sorted({a.tier for a in actions}):
            tier_actions = [a for a in actions if a.tier == tier]

            if failure is not None or cancel.is_set():
                outcome = ActionOutcome.CANCELLED if cancel.is_set() else ActionOutcome.SKIPPED
                for action in tier_actions:
                    action.outcome = outcome
                continue

            failure = self._execute_tier(graph, tier, tier_actions, cancel)
        return failure

    def _execute_tier(
        self, graph: TargetGraph, tier: Tier, actions: list[ActionRecord], cancel: threading.Event
    ) -> ConvergeError | None:
        groups: dict[str, list[ActionRecord]] = {}
        for action in actions:
            groups.setdefault(action.subject, []).append(action)

        logger.info(f"Tier {tier.name}: {len(actions)} actions across {len(groups)} subjects")
        halt = threading.Event()
        failure = None
        workers = min(self.settings.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kubeconverge") as pool:
            futures: dict[Future, str] = {
                pool.submit(self._run_group, graph, group, halt, cancel): subject
                for subject, group in groups.items()
            }
            for future in as_completed(futures):
                error = future.result()
                if error is not None and failure is None:
                    failure = error
                    halt.set()
        return failure

    def _run_group(
        self,
        graph: TargetGraph,
        group: list[ActionRecord],
        halt: threading.Event,
        cancel: threading.Event,
    ) -> ConvergeError | None:
        """Run one subject's actions in order, stopping at the first failure."""
        for index, action in enumerate(group):
            if cancel.is_set():
                action.outcome = ActionOutcome.CANCELLED
                continue
            if halt.is_set():
                action.outcome = ActionOutcome.SKIPPED
                continue

            try:
                self._run_action(graph, action, cancel)
            except PassCancelled:
                action.outcome = ActionOutcome.CANCELLED
            except ConvergeError as e:
                action.outcome = ActionOutcome.FAILED
                action.error = e.message
                logger.error(f"Action {action.describe()} failed: {e.message}")
                halt.set()
                for rest in group[index + 1 :]:
                    rest.outcome = ActionOutcome.SKIPPED
                return e
        return None

    def _run_action(self, graph: TargetGraph, action: ActionRecord, cancel: threading.Event) -> None:
        action.started_at = datetime.now()

        def attempt() -> ActionOutcome:
            action.attempts += 1
            logger.debug(f"Attempt {action.attempts} of {action.describe()}")
            return self.perform(graph, action)

        try:
            action.outcome = self._with_retry(action.describe(), attempt, cancel)
        finally:
            action.finished_at = datetime.now()
        logger.info(f"Action {action.describe()}: {action.outcome.value}")

    def _with_retry(self, description: str, call: Callable, cancel: threading.Event):
        """Call ``call`` retrying TransientError with exponential backoff.

        Raises:
            FatalError: If transient errors persist past ``max_attempts``
            PassCancelled: If the pass is cancelled between attempts
        """

        def sleep(seconds: float) -> None:
            cancel.wait(seconds)

        def log_retry(retry_state) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                f"{description}: attempt {retry_state.attempt_number} failed ({error.message}); "
                f"retrying in {retry_state.next_action.sleep:.1f}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.backoff_initial, max=self.settings.backoff_max
            ),
            retry=retry_if_exception_type(TransientError),
            sleep=sleep,
            before_sleep=log_retry,
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    if cancel.is_set():
                        raise PassCancelled(f"{description}: pass cancelled")
                    result = call()
        except TransientError as e:
            raise FatalError(
                f"{description}: gave up after {self.settings.max_attempts} attempts",
                e.format_message(),
            ) from e
        return result

    def perform(self, graph: TargetGraph, action: ActionRecord) -> ActionOutcome:
        """Dispatch one action to its executor."""
        topology = graph.topology
        cluster = self.executors.cluster

        if action.kind == ActionKind.BOOTSTRAP:
            return self.executors.provision.bootstrap(topology)
        if action.kind == ActionKind.JOIN:
            return self.executors.provision.join(topology, topology.get_node(action.subject))
        if action.kind == ActionKind.LABEL:
            node = topology.get_node(action.subject)
            return cluster.label_node(action.subject, node.effective_labels)
        if action.kind == ActionKind.TAINT:
            return cluster.taint_node(action.subject, list(topology.get_node(action.subject).taints))

        if action.kind in (ActionKind.BUILD, ActionKind.PUSH):
            image = next(i for i in graph.images if i.reference == action.subject)
            if action.kind == ActionKind.BUILD:
                return self.executors.images.build(image)
            return self.executors.images.push(image)

        workload = graph.get_workload(action.subject)
        if action.kind in (ActionKind.APPLY, ActionKind.PATCH):
            return cluster.apply_workload(workload, graph.deployment_hash(workload))
        if action.kind == ActionKind.EXPOSE:
            return cluster.apply_service(workload)
        raise FatalError(f"Unknown action kind: {action.kind}")


class Controller:
    """Runs passes in the background so new triggers can supersede running ones."""

    def __init__(self, reconciler: Reconciler, max_pending: int = 2):
        self.reconciler = reconciler
        self._pool = ThreadPoolExecutor(
            max_workers=max_pending, thread_name_prefix="kubeconverge-pass"
        )

    def trigger(self, graph: TargetGraph) -> Future:
        """Schedule a pass; the lease policy decides whether it queues or cancels."""
        logger.info(f"Pass triggered for '{graph.name}'")
        return self._pool.submit(self.reconciler.run, graph)

    def shutdown(self, cancel_running: bool = True) -> None:
        if cancel_running:
            for key in self.reconciler.leases.held_keys():
                lease = self.reconciler.leases.holder(key)
                if lease is not None:
                    lease.cancel_event.set()
        self._pool.shutdown(wait=True, cancel_futures=True)
