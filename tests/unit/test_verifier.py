"""Unit tests for rollout health verification."""

import threading
import time

import pytest
from fakes import FakeCluster

from kubeconverge.exceptions import TransientError, VerificationTimeoutError
from kubeconverge.models.actions import HealthState
from kubeconverge.models.state import WorkloadStatus
from kubeconverge.models.workload import WorkloadSpec
from kubeconverge.verifier import HealthVerifier

WEB = WorkloadSpec(name="web", image="nginx:1.25", replicas=2)
API = WorkloadSpec(name="api", image="registry.example.com/api:3", replicas=1)


def status(workload, ready, fatal_reason=None):
    return WorkloadStatus(
        name=workload.name,
        desired=workload.replicas,
        ready=ready,
        updated=ready,
        available=ready,
        fatal_reason=fatal_reason,
    )


@pytest.fixture
def cluster():
    cluster = FakeCluster()
    cluster.deployments = {WEB.key: "rev", API.key: "rev"}
    return cluster


def make_verifier(cluster, **kwargs):
    params = {"poll_interval": 0.01, "timeout": 2.0, "stable_polls": 1}
    params.update(kwargs)
    return HealthVerifier(cluster, **params)


def test_all_ready_converges(cluster):
    results = make_verifier(cluster).verify([WEB, API])

    assert [(r.workload, r.state) for r in results] == [
        (WEB.key, HealthState.CONVERGED),
        (API.key, HealthState.CONVERGED),
    ]
    assert results[0].ready == 2
    assert results[0].desired == 2


def test_requires_consecutive_ready_polls(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 0), status(WEB, 2), status(WEB, 2)]

    results = make_verifier(cluster, stable_polls=2).verify([WEB])

    assert results[0].state == HealthState.CONVERGED
    assert cluster.status_calls == 3


def test_stale_generation_is_not_converged(cluster):
    stale = status(WEB, 2).model_copy(update={"generation": 5, "observed_generation": 4})
    cluster.status_script[WEB.key] = [stale, stale, status(WEB, 2)]

    results = make_verifier(cluster).verify([WEB])

    assert results[0].state == HealthState.CONVERGED
    assert cluster.status_calls == 3


def test_old_pods_during_surge_are_not_converged(cluster):
    surging = status(WEB, 2).model_copy(update={"total": 3})
    cluster.status_script[WEB.key] = [surging, status(WEB, 2).model_copy(update={"total": 2})]

    results = make_verifier(cluster).verify([WEB])

    assert results[0].state == HealthState.CONVERGED
    assert cluster.status_calls == 2


def test_stale_generation_times_out(cluster):
    stale = status(WEB, 2).model_copy(update={"generation": 2, "observed_generation": 1})
    cluster.status_script[WEB.key] = [stale]

    with pytest.raises(VerificationTimeoutError) as exc_info:
        make_verifier(cluster, timeout=0.05).verify([WEB])

    assert exc_info.value.results[0].state == HealthState.TIMED_OUT


def test_drop_after_ready_is_degraded(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 2), status(WEB, 1)]

    results = make_verifier(cluster, stable_polls=3).verify([WEB])

    assert results[0].state == HealthState.DEGRADED
    assert results[0].ready == 1
    assert "dropped to 1/2" in results[0].message


def test_fatal_container_state_fails_immediately(cluster):
    cluster.status_script[API.key] = [status(API, 0, fatal_reason="InvalidImageName: bad ref")]

    results = make_verifier(cluster).verify([WEB, API])

    assert results[1].state == HealthState.FAILED
    assert results[1].message == "InvalidImageName: bad ref"
    assert results[0].state == HealthState.CONVERGED


def test_timeout_raises_with_results(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 1)]

    with pytest.raises(VerificationTimeoutError) as exc_info:
        make_verifier(cluster, timeout=0.05).verify([WEB, API])

    results = exc_info.value.results
    assert [r.state for r in results] == [HealthState.TIMED_OUT, HealthState.CONVERGED]
    assert results[0].ready == 1
    assert exc_info.value.details == WEB.key


def test_per_call_timeout_overrides_default(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 0)]
    verifier = make_verifier(cluster, timeout=60)

    start = time.monotonic()
    with pytest.raises(VerificationTimeoutError):
        verifier.verify([WEB], timeout=0.05)

    assert time.monotonic() - start < 5


def test_transient_status_errors_are_tolerated(cluster):
    cluster.failures.fail("workload_status", TransientError("read deployment status: 503"))

    results = make_verifier(cluster).verify([WEB])

    assert results[0].state == HealthState.CONVERGED
    assert cluster.status_calls == 2


def test_deadline_uses_injected_clock(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 0)]
    ticks = iter(range(0, 1000, 10))
    verifier = make_verifier(cluster, timeout=25, clock=lambda: next(ticks))

    with pytest.raises(VerificationTimeoutError):
        verifier.verify([WEB])

    # Each poll advances the fake clock by 10s, so a 25s timeout allows only a few polls
    assert cluster.status_calls <= 3


def test_cancel_stops_within_one_poll_interval(cluster):
    cluster.status_script[WEB.key] = [status(WEB, 0)]
    poll_interval = 2.0
    verifier = make_verifier(cluster, poll_interval=poll_interval, timeout=60)
    cancel = threading.Event()
    results = []

    worker = threading.Thread(target=lambda: results.extend(verifier.verify([WEB], cancel)))
    worker.start()
    while cluster.status_calls == 0:
        time.sleep(0.01)

    cancelled_at = time.monotonic()
    cancel.set()
    worker.join(timeout=poll_interval * 2)

    assert not worker.is_alive()
    assert time.monotonic() - cancelled_at < poll_interval
    assert results[0].state == HealthState.CANCELLED
    assert results[0].message == "verification cancelled"


def test_already_cancelled_does_not_poll(cluster):
    cancel = threading.Event()
    cancel.set()

    results = make_verifier(cluster).verify([WEB], cancel)

    assert results[0].state == HealthState.CANCELLED
    assert cluster.status_calls == 0
