"""Unit tests for reconciliation leases."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from fakes import FakeCluster
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from kubeconverge.config import ReconcilerSettings
from kubeconverge.exceptions import LeaseError
from kubeconverge.lease import (
    FileLeaseStore,
    KubernetesLeaseStore,
    Lease,
    LeaseManager,
    build_leases,
)


def test_acquire_and_release():
    leases = LeaseManager()

    with leases.acquire("lab") as lease:
        assert leases.holder("lab") is lease
        assert leases.held_keys() == ["lab"]
        assert not lease.cancelled

    assert leases.holder("lab") is None
    assert leases.held_keys() == []


def test_leases_are_per_key():
    leases = LeaseManager()

    with leases.acquire("lab"), leases.acquire("prod", timeout=0.1) as prod:
        assert leases.holder("prod") is prod


def test_unknown_policy():
    with pytest.raises(LeaseError) as exc_info:
        LeaseManager().acquire_lease("lab", policy="steal")

    assert "Unknown lease policy" in exc_info.value.message


def test_queue_times_out_while_held():
    leases = LeaseManager()
    held = leases.acquire_lease("lab")

    with pytest.raises(LeaseError) as exc_info:
        leases.acquire_lease("lab", policy="queue", timeout=0.05)

    assert "Timed out" in exc_info.value.message
    assert held.holder in exc_info.value.details
    assert not held.cancelled


def test_queue_waits_for_release():
    leases = LeaseManager()
    first = leases.acquire_lease("lab")
    acquired = []

    waiter = threading.Thread(target=lambda: acquired.append(leases.acquire_lease("lab")))
    waiter.start()
    time.sleep(0.05)
    assert acquired == []

    leases.release(first)
    waiter.join(timeout=5)

    assert len(acquired) == 1
    assert leases.holder("lab") is acquired[0]
    assert not first.cancelled


def test_cancel_policy_signals_holder_and_takes_over():
    leases = LeaseManager()
    first = leases.acquire_lease("lab")
    acquired = []

    def holder_loop():
        # A running pass notices cancellation and releases its lease
        first.cancel_event.wait(timeout=5)
        leases.release(first)

    holder = threading.Thread(target=holder_loop)
    holder.start()

    acquired.append(leases.acquire_lease("lab", policy="cancel", timeout=5))
    holder.join(timeout=5)

    assert first.cancelled
    assert leases.holder("lab") is acquired[0]
    assert not acquired[0].cancelled


def test_release_of_stale_lease_keeps_current_holder():
    leases = LeaseManager()
    first = leases.acquire_lease("lab")
    leases.release(first)
    second = leases.acquire_lease("lab")

    leases.release(first)

    assert leases.holder("lab") is second


class TestFileLeaseStore:
    """Two managers on one lock directory stand in for two processes."""

    def test_other_process_queues_until_release(self, tmp_path):
        first = LeaseManager(FileLeaseStore(tmp_path))
        other = LeaseManager(FileLeaseStore(tmp_path), poll_interval=0.01)
        held = first.acquire_lease("lab")

        with pytest.raises(LeaseError) as exc_info:
            other.acquire_lease("lab", timeout=0.05)

        assert held.holder in exc_info.value.details
        assert other.holder("lab") is None

        first.release(held)
        with other.acquire("lab", timeout=1) as lease:
            assert other.holder("lab") is lease

    def test_waiter_takes_over_after_release(self, tmp_path):
        first = LeaseManager(FileLeaseStore(tmp_path))
        other = LeaseManager(FileLeaseStore(tmp_path), poll_interval=0.01)
        held = first.acquire_lease("lab")
        acquired = []

        waiter = threading.Thread(target=lambda: acquired.append(other.acquire_lease("lab")))
        waiter.start()
        time.sleep(0.05)
        assert acquired == []

        first.release(held)
        waiter.join(timeout=5)

        assert len(acquired) == 1
        assert not held.cancelled

    def test_cancel_policy_does_not_reach_other_process(self, tmp_path):
        first = LeaseManager(FileLeaseStore(tmp_path))
        other = LeaseManager(FileLeaseStore(tmp_path), poll_interval=0.01)
        held = first.acquire_lease("lab")

        with pytest.raises(LeaseError):
            other.acquire_lease("lab", policy="cancel", timeout=0.05)

        assert not held.cancelled
        assert first.holder("lab") is held

    def test_superseded_while_queued(self, tmp_path):
        first = LeaseManager(FileLeaseStore(tmp_path))
        other = LeaseManager(FileLeaseStore(tmp_path), poll_interval=0.01)
        first.acquire_lease("lab")
        errors = []

        def queued():
            try:
                other.acquire_lease("lab")
            except LeaseError as e:
                errors.append(e)

        waiter = threading.Thread(target=queued)
        waiter.start()
        deadline = time.monotonic() + 5
        while other.holder("lab") is None and time.monotonic() < deadline:
            time.sleep(0.01)
        other.holder("lab").cancel_event.set()
        waiter.join(timeout=5)

        assert len(errors) == 1
        assert "superseded" in errors[0].message
        assert other.holder("lab") is None

    def test_lock_file_names_the_holder(self, tmp_path):
        store = FileLeaseStore(tmp_path / "leases")
        leases = LeaseManager(store)

        with leases.acquire("Lab Cluster") as lease:
            path = store.path("Lab Cluster")
            assert path.name == "lab-cluster.lock"
            assert path.read_text().strip() == lease.identity

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        leases = LeaseManager(FileLeaseStore(blocker / "leases"))

        with pytest.raises(LeaseError) as exc_info:
            leases.acquire_lease("lab")

        assert "Cannot open lock file" in exc_info.value.message
        assert leases.holder("lab") is None


def cluster_lease(holder, renewed_ago=0, duration=60, transitions=None):
    renewed = datetime.now(timezone.utc) - timedelta(seconds=renewed_ago)
    return client.V1Lease(
        metadata=client.V1ObjectMeta(name="kubeconverge-lab", resource_version="7"),
        spec=client.V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=duration,
            renew_time=renewed,
            lease_transitions=transitions,
        ),
    )


def conflict():
    return ApiException(status=409, reason="Conflict")


class TestKubernetesLeaseStore:
    @pytest.fixture
    def api(self):
        return Mock()

    @pytest.fixture
    def store(self, tmp_path, api):
        return KubernetesLeaseStore(
            FileLeaseStore(tmp_path), lambda: api, namespace="kube-system", duration=30
        )

    def test_creates_and_deletes_cluster_lease(self, store, api):
        leases = LeaseManager(store)

        lease = leases.acquire_lease("lab")
        api.read_namespaced_lease.return_value = cluster_lease(lease.identity)

        namespace, body = api.create_namespaced_lease.call_args.args
        assert namespace == "kube-system"
        assert body.metadata.name == "kubeconverge-lab"
        assert body.spec.holder_identity == lease.identity
        assert body.spec.lease_duration_seconds == 30

        leases.release(lease)

        api.delete_namespaced_lease.assert_called_once_with("kubeconverge-lab", "kube-system")

    def test_live_lease_elsewhere_queues(self, store, api, tmp_path):
        api.create_namespaced_lease.side_effect = conflict()
        api.read_namespaced_lease.return_value = cluster_lease("1a2b3c4d@ci-runner:812")
        leases = LeaseManager(store, poll_interval=0.01)

        with pytest.raises(LeaseError) as exc_info:
            leases.acquire_lease("lab", timeout=0.05)

        assert "ci-runner" in exc_info.value.details
        api.replace_namespaced_lease.assert_not_called()
        # The local lock file is not kept while the cluster lease is busy
        assert FileLeaseStore(tmp_path).try_acquire(Lease(key="lab")) is None

    def test_expired_lease_is_taken_over(self, store, api):
        api.create_namespaced_lease.side_effect = conflict()
        api.read_namespaced_lease.return_value = cluster_lease(
            "1a2b3c4d@crashed-host:77", renewed_ago=120, transitions=2
        )
        leases = LeaseManager(store)

        lease = leases.acquire_lease("lab")

        name, namespace, body = api.replace_namespaced_lease.call_args.args
        assert (name, namespace) == ("kubeconverge-lab", "kube-system")
        assert body.spec.holder_identity == lease.identity
        assert body.spec.lease_transitions == 3
        assert body.metadata.resource_version == "7"

        api.read_namespaced_lease.return_value = cluster_lease(lease.identity)
        leases.release(lease)

    def test_no_cluster_yet_uses_lock_file_only(self, tmp_path):
        store = KubernetesLeaseStore(FileLeaseStore(tmp_path), lambda: None)
        leases = LeaseManager(store)

        with leases.acquire("lab") as lease:
            assert FileLeaseStore(tmp_path).try_acquire(Lease(key="lab")) == lease.identity

    def test_unreachable_cluster_uses_lock_file_only(self, store, api):
        api.create_namespaced_lease.side_effect = MaxRetryError(None, "/apis/coordination.k8s.io")
        leases = LeaseManager(store)

        with leases.acquire("lab") as lease:
            assert leases.holder("lab") is lease

        api.delete_namespaced_lease.assert_not_called()

    def test_forbidden_is_a_lease_error(self, store, api, tmp_path):
        api.create_namespaced_lease.side_effect = ApiException(status=403, reason="Forbidden")
        leases = LeaseManager(store)

        with pytest.raises(LeaseError) as exc_info:
            leases.acquire_lease("lab")

        assert "permission denied" in exc_info.value.message
        assert leases.holder("lab") is None
        assert FileLeaseStore(tmp_path).try_acquire(Lease(key="lab")) is None

    def test_lost_lease_cancels_the_pass(self, tmp_path, api):
        store = KubernetesLeaseStore(FileLeaseStore(tmp_path), lambda: api, duration=1)
        api.read_namespaced_lease.return_value = cluster_lease("1a2b3c4d@other-host:9")
        leases = LeaseManager(store)

        lease = leases.acquire_lease("lab")

        assert lease.cancel_event.wait(timeout=5)
        leases.release(lease)
        api.delete_namespaced_lease.assert_not_called()


class TestBuildLeases:
    def test_memory(self):
        assert build_leases(ReconcilerSettings(lease_store="memory")).store is None

    def test_file(self, tmp_path):
        settings = ReconcilerSettings(lease_store="file", lease_dir=str(tmp_path))

        store = build_leases(settings, FakeCluster()).store

        assert isinstance(store, FileLeaseStore)
        assert store.directory == tmp_path

    def test_kubernetes(self, tmp_path):
        settings = ReconcilerSettings(
            lease_dir=str(tmp_path), lease_namespace="kube-system", lease_duration="2m"
        )

        store = build_leases(settings, FakeCluster()).store

        assert isinstance(store, KubernetesLeaseStore)
        assert store.namespace == "kube-system"
        assert store.duration == 120
        assert store.api_factory() is None
