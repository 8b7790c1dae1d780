"""In-memory store implementations for development and tests."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import (Callable, Dict, FrozenSet, Iterable, Optional)

from buildgate.errors import LeaseLost
from buildgate.models.identity import PackageIdentity
from buildgate.models.lease import (AcquireResult, BuildLease, LeaseStatus,
                                    LeaseToken)

from .base import BuildRegistry, GraphStore
from .errors import CyclicDependency
from .graph import find_cycle

_LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


class InMemoryGraphStore(GraphStore):
    """Dictionary-backed edge store with a maintained consumer index."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._edges: Dict[PackageIdentity, FrozenSet[PackageIdentity]] = {}
        self._consumers: Dict[PackageIdentity, set[PackageIdentity]] = {}
        self._projects: Dict[PackageIdentity, str] = {}

    def upsert_edges(
        self, owner: PackageIdentity, dependencies: Iterable[PackageIdentity]
    ) -> bool:
        new_edges = frozenset(dependencies)
        with self._lock:
            previous = self._edges.get(owner)
            if previous == new_edges:
                return False
            cycle = find_cycle(owner, new_edges, self.dependencies_of)
            if cycle is not None:
                _LOGGER.error(
                    "Rejecting edges for %s: %s",
                    owner,
                    " -> ".join(identity.key for identity in cycle),
                )
                raise CyclicDependency(cycle)
            previous = previous or frozenset()
            for removed in previous - new_edges:
                self._consumers.get(removed, set()).discard(owner)
            for added in new_edges - previous:
                self._consumers.setdefault(added, set()).add(owner)
            self._edges[owner] = new_edges
            return True

    def consumers_of(self, package: PackageIdentity) -> FrozenSet[PackageIdentity]:
        with self._lock:
            return frozenset(self._consumers.get(package, ()))

    def dependencies_of(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        with self._lock:
            return self._edges.get(package, frozenset())

    def register_project(
        self, package: PackageIdentity, project_name: str
    ) -> None:
        with self._lock:
            self._projects[package] = project_name

    def build_project(self, package: PackageIdentity) -> Optional[str]:
        with self._lock:
            return self._projects.get(package)

    def snapshot(self) -> Dict[str, list[str]]:
        """Return the edge table keyed by package key, for debugging."""
        with self._lock:
            return {
                owner.key: sorted(dep.key for dep in deps)
                for owner, deps in sorted(self._edges.items())
            }


class InMemoryBuildRegistry(BuildRegistry):
    """Lease table guarded by a process-wide lock."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._leases: Dict[PackageIdentity, BuildLease] = {}
        self._waiters: Dict[PackageIdentity, set[PackageIdentity]] = {}

    def try_acquire(
        self,
        package: PackageIdentity,
        job_id: str,
        duration_seconds: float,
    ) -> AcquireResult:
        with self._lock:
            now = self._clock()
            current = self._leases.get(package)
            reclaimed: Optional[BuildLease] = None
            if current is not None and current.is_active(now):
                if current.job_id != job_id:
                    return AcquireResult(holder=current)
            elif (
                current is not None
                and current.effective_status(now) is LeaseStatus.EXPIRED
            ):
                reclaimed = current
                _LOGGER.warning(
                    "Reclaiming expired lease on %s held by job %s",
                    package,
                    current.job_id,
                )
            token = LeaseToken.issue(package, job_id)
            lease = BuildLease(
                package=package,
                job_id=job_id,
                token=token.encode(),
                acquired_at=now,
                expires_at=now + duration_seconds,
            )
            self._leases[package] = lease
            return AcquireResult(lease=lease, token=token, reclaimed=reclaimed)

    def renew(self, token: LeaseToken, duration_seconds: float) -> BuildLease:
        with self._lock:
            current = self._held(token)
            renewed = replace(
                current, expires_at=self._clock() + duration_seconds
            )
            self._leases[token.package] = renewed
            return renewed

    def release(self, token: LeaseToken) -> BuildLease:
        with self._lock:
            current = self._held(token)
            released = replace(current, status=LeaseStatus.RELEASED)
            self._leases[token.package] = released
            return released

    def get(self, package: PackageIdentity) -> Optional[BuildLease]:
        with self._lock:
            lease = self._leases.get(package)
            if lease is None:
                return None
            return replace(
                lease, waiters=frozenset(self._waiters.get(package, ()))
            )

    def add_waiter(
        self, blocking: PackageIdentity, waiting: PackageIdentity
    ) -> None:
        with self._lock:
            self._waiters.setdefault(blocking, set()).add(waiting)

    def drain_waiters(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        with self._lock:
            return frozenset(self._waiters.pop(package, ()))

    def _held(self, token: LeaseToken) -> BuildLease:
        current = self._leases.get(token.package)
        if (
            current is None
            or not current.held_by(token)
            or current.status is not LeaseStatus.ACTIVE
        ):
            raise LeaseLost(f"Lease on {token.package} is no longer held")
        return current
