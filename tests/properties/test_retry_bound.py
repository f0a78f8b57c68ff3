"""Property-based tests for the transient retry bound.

A pass that sees fewer transient failures than its attempt limit still
converges; one more and the action fails fatally with later tiers skipped.
"""

from fakes import make_executors
from hypothesis import given, settings
from hypothesis import strategies as st

from kubeconverge.config import ReconcilerSettings
from kubeconverge.exceptions import TransientError
from kubeconverge.lease import LeaseManager
from kubeconverge.manifest import TargetGraph
from kubeconverge.models.actions import ActionKind, ActionOutcome, PassStatus
from kubeconverge.models.topology import BootstrapRecord, ClusterTopology, NodeSpec
from kubeconverge.models.workload import Exposure, Placement, PortMapping, WorkloadSpec
from kubeconverge.reconciler import Reconciler

GRAPH = TargetGraph(
    topology=ClusterTopology(
        name="lab",
        nodes=[
            NodeSpec(name="master", role="control-plane"),
            NodeSpec(name="worker-1", labels={"app-tier": "web"}),
        ],
        bootstrap=BootstrapRecord(node="master", playbook="init.yml", join_playbook="join.yml"),
    ),
    workloads=(
        WorkloadSpec(
            name="web",
            image="nginx:1.25",
            placement=Placement(node_selector={"app-tier": "web"}),
            exposure=Exposure(type="NodePort", ports=[PortMapping(port=80, node_port=30080)]),
        ),
    ),
)


@settings(deadline=None)
@given(
    max_attempts=st.integers(min_value=1, max_value=5),
    failures=st.integers(min_value=0, max_value=6),
    method=st.sampled_from(["label_node", "apply_workload"]),
)
def test_transient_failures_respect_max_attempts(max_attempts, failures, method):
    executors, cluster, _ = make_executors()
    cluster.failures.fail(method, *[TransientError(f"{method}: 503")] * failures)
    settings_ = ReconcilerSettings(
        max_attempts=max_attempts,
        backoff_initial=0,
        backoff_max=0,
        poll_interval=0.01,
        stable_polls=1,
    )
    reconciler = Reconciler(executors, settings_, leases=LeaseManager())

    report = reconciler.run(GRAPH)

    kind = ActionKind.LABEL if method == "label_node" else ActionKind.APPLY
    action = next(a for a in report.actions if a.kind == kind)
    if failures < max_attempts:
        assert report.status == PassStatus.CONVERGED
        assert action.outcome == ActionOutcome.APPLIED
        assert action.attempts == failures + 1
    else:
        assert report.status == PassStatus.FAILED
        assert action.outcome == ActionOutcome.FAILED
        assert action.attempts == max_attempts
        assert f"gave up after {max_attempts} attempts" in action.error
        expose = next(a for a in report.actions if a.kind == ActionKind.EXPOSE)
        assert expose.outcome == ActionOutcome.SKIPPED
        assert cluster.log.calls("apply_service") == []
