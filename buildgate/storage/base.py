"""Abstract store interfaces shared by every build job."""

from __future__ import annotations

from typing import FrozenSet, Iterable, Optional, Protocol

from buildgate.models.identity import PackageIdentity
from buildgate.models.lease import AcquireResult, BuildLease, LeaseToken


class GraphStore(Protocol):
    """Persisted ``owner -> dependencies`` edges and their inversion."""

    def upsert_edges(
        self, owner: PackageIdentity, dependencies: Iterable[PackageIdentity]
    ) -> bool:
        """
        Replace every outgoing edge of ``owner`` atomically.

        Returns True when the stored edge set changed. Raises
        CyclicDependency (prior state untouched) when ``owner`` would become
        reachable from itself, StoreUnavailable when the backend is down.
        """

    def consumers_of(self, package: PackageIdentity) -> FrozenSet[PackageIdentity]:
        """Return the packages declaring a direct dependency on ``package``."""

    def dependencies_of(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        """Return the stored direct dependencies of ``package``."""

    def register_project(
        self, package: PackageIdentity, project_name: str
    ) -> None:
        """Remember which CI project builds ``package``."""

    def build_project(self, package: PackageIdentity) -> Optional[str]:
        """Return the CI project recorded for ``package``, if any."""


class BuildRegistry(Protocol):
    """Persisted build leases with conditional acquisition."""

    def try_acquire(
        self,
        package: PackageIdentity,
        job_id: str,
        duration_seconds: float,
    ) -> AcquireResult:
        """
        Grant a lease unless another job holds an active, unexpired one.

        Must be a single atomic conditional write per package.
        """

    def renew(self, token: LeaseToken, duration_seconds: float) -> BuildLease:
        """Extend the lease held by ``token`` or raise LeaseLost."""

    def release(self, token: LeaseToken) -> BuildLease:
        """Mark the lease held by ``token`` released or raise LeaseLost."""

    def get(self, package: PackageIdentity) -> Optional[BuildLease]:
        """Return the latest lease row for ``package``, if any."""

    def add_waiter(
        self, blocking: PackageIdentity, waiting: PackageIdentity
    ) -> None:
        """Record that ``waiting`` deferred until ``blocking`` finishes."""

    def drain_waiters(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        """Atomically remove and return the packages waiting on ``package``."""
