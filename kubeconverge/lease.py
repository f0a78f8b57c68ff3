"""Exclusive leases that keep reconciliation passes from overlapping.

Passes in one process coordinate through ``LeaseManager``'s condition
variable. A ``LeaseStore`` extends the exclusion to other processes: a
lock file on the local machine, and a ``coordination.k8s.io/v1`` Lease once
the cluster's API server is reachable.
"""

import fcntl
import os
import re
import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from kubeconverge.config import LEASE_POLICIES, ReconcilerSettings
from kubeconverge.exceptions import FatalError, LeaseError, TransientError
from kubeconverge.executors.base import ClusterExecutor
from kubeconverge.executors.kubernetes import classify_api_error
from kubeconverge.logging_config import get_logger

logger = get_logger(__name__)


def _safe_name(key: str) -> str:
    return re.sub(r"[^a-z0-9.-]+", "-", key.lower()).strip("-.") or "default"


@dataclass
class Lease:
    """The right to run a pass against one topology."""

    key: str
    holder: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    acquired_at: datetime = field(default_factory=datetime.now)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def identity(self) -> str:
        """Holder name as other processes see it."""
        return f"{self.holder}@{socket.gethostname()}:{os.getpid()}"


class LeaseStore(ABC):
    """Records lease ownership where other processes can see it."""

    @abstractmethod
    def try_acquire(self, lease: Lease) -> str | None:
        """Claim ``lease`` without blocking.

        Returns:
            None when claimed, otherwise the identity of the current holder

        Raises:
            TransientError: If the store is briefly unavailable
            LeaseError: If the store cannot be used at all
        """

    @abstractmethod
    def release(self, lease: Lease) -> None:
        """Give up a claim made by ``try_acquire``; unknown leases are ignored."""


class FileLeaseStore(LeaseStore):
    """Advisory ``flock`` lock files, one per topology, in a shared directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()
        self._lock = threading.Lock()
        self._files: dict[str, int] = {}

    def path(self, key: str) -> Path:
        return self.directory / f"{_safe_name(key)}.lock"

    def try_acquire(self, lease: Lease) -> str | None:
        path = self.path(lease.key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LeaseError(
                f"Cannot open lock file {path}", f"{e}\nSet lease_dir to a writable directory"
            )

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 256).decode(errors="replace").strip()
            os.close(fd)
            return holder or f"another process (see {path})"

        os.ftruncate(fd, 0)
        os.write(fd, f"{lease.identity}\n".encode())
        with self._lock:
            self._files[lease.holder] = fd
        logger.debug(f"Lock file {path} taken by {lease.identity}")
        return None

    def release(self, lease: Lease) -> None:
        with self._lock:
            fd = self._files.pop(lease.holder, None)
        if fd is None:
            return
        # Lock files are never unlinked; a waiter may already hold an open fd
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug(f"Lock file for '{lease.key}' released by {lease.identity}")


class _Conflict(Exception):
    """A create or replace lost to a concurrent writer."""


@dataclass
class _Claim:
    name: str
    identity: str
    stop: threading.Event = field(default_factory=threading.Event)
    renewer: threading.Thread | None = None


class KubernetesLeaseStore(LeaseStore):
    """A ``coordination.k8s.io/v1`` Lease per topology, backed by a local lock file.

    The lock file is always taken first, so passes on one machine exclude
    each other before the cluster exists. The cluster Lease is claimed
    whenever ``api_factory`` returns a client; an expired Lease left by a
    crashed holder is taken over. While held, the Lease is renewed every
    third of its duration. A pass whose Lease is taken over by someone else
    is cancelled.
    """

    def __init__(
        self,
        files: FileLeaseStore,
        api_factory: Callable[[], client.CoordinationV1Api | None],
        namespace: str = "default",
        duration: float = 60.0,
    ):
        self.files = files
        self.api_factory = api_factory
        self.namespace = namespace
        self.duration = max(1, int(duration))
        self._lock = threading.Lock()
        self._claims: dict[str, _Claim] = {}

    @staticmethod
    def lease_name(key: str) -> str:
        return f"kubeconverge-{_safe_name(key)}"[:63].rstrip("-.")

    def try_acquire(self, lease: Lease) -> str | None:
        holder = self.files.try_acquire(lease)
        if holder is not None:
            return holder

        try:
            holder = self._claim(lease)
        except TransientError as e:
            logger.warning(f"Cluster lease unavailable, relying on the lock file: {e.message}")
            return None
        except LeaseError:
            self.files.release(lease)
            raise
        if holder is not None:
            self.files.release(lease)
        return holder

    def _claim(self, lease: Lease) -> str | None:
        api = self.api_factory()
        if api is None:
            logger.debug(f"No cluster yet; '{lease.key}' is guarded by the lock file only")
            return None

        name = self.lease_name(lease.key)
        identity = lease.identity
        body = self._body(name, identity)
        try:
            with self._api_call(f"create lease {name}", conflict_ok=True):
                api.create_namespaced_lease(self.namespace, body)
        except _Conflict:
            with self._api_call(f"read lease {name}"):
                current = api.read_namespaced_lease(name, self.namespace)
            spec = current.spec
            holder = spec.holder_identity if spec else None
            if holder and holder != identity and not self._expired(spec):
                return holder
            if holder and holder != identity:
                logger.warning(f"Lease {name} held by {holder} has expired; taking it over")
            body.spec.lease_transitions = ((spec.lease_transitions if spec else None) or 0) + 1
            body.metadata.resource_version = current.metadata.resource_version
            try:
                with self._api_call(f"replace lease {name}", conflict_ok=True):
                    api.replace_namespaced_lease(name, self.namespace, body)
            except _Conflict:
                return holder or f"another pass (lease {self.namespace}/{name})"

        claim = _Claim(name=name, identity=identity)
        claim.renewer = threading.Thread(
            target=self._renew,
            args=(api, lease, claim),
            name=f"kubeconverge-lease-{lease.holder}",
            daemon=True,
        )
        with self._lock:
            self._claims[lease.holder] = claim
        claim.renewer.start()
        logger.info(f"Cluster lease {self.namespace}/{name} acquired by {identity}")
        return None

    def _body(self, name: str, identity: str) -> client.V1Lease:
        now = datetime.now(timezone.utc)
        return client.V1Lease(
            metadata=client.V1ObjectMeta(name=name, namespace=self.namespace),
            spec=client.V1LeaseSpec(
                holder_identity=identity,
                lease_duration_seconds=self.duration,
                acquire_time=now,
                renew_time=now,
            ),
        )

    @staticmethod
    def _expired(spec: client.V1LeaseSpec) -> bool:
        renewed = spec.renew_time or spec.acquire_time
        if renewed is None:
            return True
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=timezone.utc)
        duration = timedelta(seconds=spec.lease_duration_seconds or 0)
        return renewed + duration < datetime.now(timezone.utc)

    @contextmanager
    def _api_call(self, description: str, conflict_ok: bool = False):
        try:
            yield
        except ApiException as e:
            if conflict_ok and e.status == 409:
                raise _Conflict() from e
            error = classify_api_error(e, description)
            if isinstance(error, FatalError):
                raise LeaseError(error.message, error.details) from e
            raise error from e
        except (HTTPError, ConnectionError) as e:
            raise TransientError(f"{description}: connection failed", str(e)) from e

    def _renew(self, api: client.CoordinationV1Api, lease: Lease, claim: _Claim) -> None:
        while not claim.stop.wait(self.duration / 3):
            try:
                with self._api_call(f"renew lease {claim.name}"):
                    current = api.read_namespaced_lease(claim.name, self.namespace)
                    holder = current.spec.holder_identity if current.spec else None
                    if holder != claim.identity:
                        logger.error(f"Lease {claim.name} was taken over by {holder}; cancelling")
                        lease.cancel_event.set()
                        return
                    current.spec.renew_time = datetime.now(timezone.utc)
                    api.replace_namespaced_lease(claim.name, self.namespace, current)
            except (TransientError, LeaseError) as e:
                logger.warning(f"Could not renew lease {claim.name}: {e.message}")

    def release(self, lease: Lease) -> None:
        with self._lock:
            claim = self._claims.pop(lease.holder, None)
        try:
            if claim is not None:
                self._release_claim(claim)
        finally:
            self.files.release(lease)

    def _release_claim(self, claim: _Claim) -> None:
        claim.stop.set()
        if claim.renewer is not None:
            claim.renewer.join()
        api = self.api_factory()
        if api is None:
            return
        try:
            with self._api_call(f"release lease {claim.name}"):
                current = api.read_namespaced_lease(claim.name, self.namespace)
                if current.spec and current.spec.holder_identity == claim.identity:
                    api.delete_namespaced_lease(claim.name, self.namespace)
                    logger.debug(f"Cluster lease {claim.name} released by {claim.identity}")
        except (TransientError, LeaseError) as e:
            # Left to expire after its duration
            logger.warning(f"Could not release lease {claim.name}: {e.message}")


class LeaseManager:
    """Lease table keyed by topology name.

    A trigger that finds the lease held in this process either queues until
    it is released (``queue``) or asks the holder to cancel and then takes
    it over (``cancel``). With a ``store``, a lease held by another process
    is always queued for, polling every ``poll_interval`` seconds.
    """

    def __init__(self, store: LeaseStore | None = None, poll_interval: float = 1.0):
        self.store = store
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._held: dict[str, Lease] = {}

    def holder(self, key: str) -> Lease | None:
        with self._cond:
            return self._held.get(key)

    def held_keys(self) -> list[str]:
        with self._cond:
            return list(self._held)

    def acquire_lease(self, key: str, policy: str = "queue", timeout: float | None = None) -> Lease:
        """Block until the lease for ``key`` is obtained.

        Raises:
            LeaseError: If the policy is unknown, the wait exceeds ``timeout``,
                or the pass is superseded while waiting on another process
        """
        if policy not in LEASE_POLICIES:
            raise LeaseError(f"Unknown lease policy '{policy}'", f"Use one of {LEASE_POLICIES}")

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            current = self._held.get(key)
            if current is not None:
                if policy == "cancel":
                    logger.warning(f"Cancelling running pass {current.holder} for '{key}'")
                    current.cancel_event.set()
                else:
                    logger.info(f"Pass {current.holder} holds '{key}'; queueing")

            while key in self._held:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise LeaseError(
                        f"Timed out waiting for the lease on '{key}'",
                        f"Held by pass {self._held[key].holder} since {self._held[key].acquired_at}",
                    )
                self._cond.wait(remaining)

            lease = Lease(key=key)
            self._held[key] = lease

        if self.store is not None:
            try:
                self._acquire_shared(lease, deadline)
            except BaseException:
                self._release_local(lease)
                raise
        logger.debug(f"Lease on '{key}' acquired by {lease.holder}")
        return lease

    def _acquire_shared(self, lease: Lease, deadline: float | None) -> None:
        reported = None
        while True:
            try:
                holder = self.store.try_acquire(lease)
            except TransientError as e:
                holder = None
                logger.warning(f"Lease store unavailable for '{lease.key}': {e.message}")
            else:
                if holder is None:
                    return
                if holder != reported:
                    logger.info(f"{holder} holds '{lease.key}' in another process; queueing")
                    reported = holder

            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise LeaseError(
                    f"Timed out waiting for the lease on '{lease.key}'",
                    f"Held by {reported or 'an unreachable lease store'}",
                )
            wait = self.poll_interval if remaining is None else min(self.poll_interval, remaining)
            if lease.cancel_event.wait(wait):
                raise LeaseError(
                    f"Pass {lease.holder} for '{lease.key}' was superseded while queued"
                )

    def _release_local(self, lease: Lease) -> None:
        with self._cond:
            if self._held.get(lease.key) is lease:
                del self._held[lease.key]
                logger.debug(f"Lease on '{lease.key}' released by {lease.holder}")
            self._cond.notify_all()

    def release(self, lease: Lease) -> None:
        try:
            if self.store is not None and self.holder(lease.key) is lease:
                self.store.release(lease)
        finally:
            self._release_local(lease)

    @contextmanager
    def acquire(self, key: str, policy: str = "queue", timeout: float | None = None):
        lease = self.acquire_lease(key, policy, timeout)
        try:
            yield lease
        finally:
            self.release(lease)


def build_leases(
    settings: ReconcilerSettings, cluster: ClusterExecutor | None = None
) -> LeaseManager:
    """Create the lease manager selected by ``settings.lease_store``."""
    if settings.lease_store == "memory":
        return LeaseManager()

    files = FileLeaseStore(settings.lease_dir)
    if settings.lease_store == "file" or cluster is None:
        return LeaseManager(files)
    return LeaseManager(
        KubernetesLeaseStore(
            files,
            api_factory=cluster.lease_api,
            namespace=settings.lease_namespace,
            duration=settings.lease_duration,
        )
    )


default_leases = LeaseManager()
