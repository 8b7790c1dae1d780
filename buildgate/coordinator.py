"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Gating coordinator run inside every build job.

Each job is its own short-lived coordinator: all coordination happens through
the graph store and the build registry, never through a long-running service.
A package may start building only when none of its consumers holds an active
lease and it can take the package's own lease. When it finishes, it releases
the lease and asks the CI platform to rebuild its consumers and any builds
that deferred while it was running.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import (Callable, Dict, FrozenSet, Iterable, List, Optional,
                    TypeVar, Union)

from tenacity import RetryCallState, retry_if_result

from buildgate.analyzers.base import Analyzer, TrackedPackagePolicy
from buildgate.analyzers.registry import detect_analyzer
from buildgate.clients.base_client import CIPlatformClient
from buildgate.config import DEFAULT_LEASE_SECONDS, GateSettings
from buildgate.errors import BuildGateError, LeaseLost, TriggerError
from buildgate.models.identity import PackageIdentity
from buildgate.models.lease import BuildLease, LeaseToken, validate_job_id
from buildgate.models.outcomes import (Blocked, BlockReason, CompletionReport,
                                       Deferred, DeferReason, GateOutcome,
                                       Proceed)
from buildgate.net.backoff import Backoff, retry_call
from buildgate.storage.base import BuildRegistry, GraphStore
from buildgate.storage.errors import StoreError, StoreUnavailable

T = TypeVar("T")

_LOGGER = logging.getLogger(__name__)


def _require_valid_job_id(job_id: str) -> None:
    try:
        validate_job_id(job_id)
    except ValueError as exc:
        raise BuildGateError(str(exc)) from exc


DEFAULT_MAX_WAIT_DELAY = 300.0


class GatingCoordinator:
    """Decide whether the current job may build its package."""

    def __init__(
        self,
        graph: GraphStore,
        registry: BuildRegistry,
        platform: Optional[CIPlatformClient] = None,
        *,
        analyzer: Optional[Analyzer] = None,
        policy: Optional[TrackedPackagePolicy] = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        store_backoff: Optional[Backoff] = None,
        resume_waiters: bool = True,
        max_wait_delay: float = DEFAULT_MAX_WAIT_DELAY,
        clock: Optional[Callable[[], float]] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._graph = graph
        self._registry = registry
        self._platform = platform
        self._analyzer = analyzer
        self._policy = policy or TrackedPackagePolicy()
        self._lease_seconds = float(lease_seconds)
        self._sleep_fn = sleep_fn or time.sleep
        self._store_backoff = store_backoff or Backoff(
            max_attempts=4, base_delay=0.5, max_delay=8.0, sleep_fn=self._sleep_fn
        )
        self._resume_waiters = resume_waiters
        self._max_wait_delay = max_wait_delay
        self._clock = clock or time.time

    @classmethod
    def from_settings(
        cls,
        settings: GateSettings,
        graph: GraphStore,
        registry: BuildRegistry,
        platform: Optional[CIPlatformClient] = None,
        **kwargs,
    ) -> "GatingCoordinator":
        policy = TrackedPackagePolicy.from_lists(
            settings.private_registries, settings.private_prefixes
        )
        sleep_fn = kwargs.get("sleep_fn")
        store_backoff = Backoff(
            max_attempts=settings.store_retries,
            base_delay=settings.store_base_delay,
            max_delay=max(8.0, settings.store_base_delay),
            sleep_fn=sleep_fn,
        )
        return cls(
            graph,
            registry,
            platform,
            policy=policy,
            lease_seconds=settings.lease_seconds,
            store_backoff=store_backoff,
            resume_waiters=settings.resume_waiters,
            **kwargs,
        )

    @property
    def graph(self) -> GraphStore:
        return self._graph

    @property
    def registry(self) -> BuildRegistry:
        return self._registry

    @property
    def lease_seconds(self) -> float:
        return self._lease_seconds

    # -- gating ---------------------------------------------------------------

    def try_acquire(
        self,
        package: PackageIdentity,
        job_id: str,
        lease_duration: Optional[float] = None,
    ) -> Union[Proceed, Blocked]:
        """Single gating attempt; never waits on other builds."""

        _require_valid_job_id(job_id)
        duration = lease_duration or self._lease_seconds
        blocked = self._active_consumer(package)
        if blocked is not None:
            _LOGGER.info("Blocking %s: %s", package, blocked.detail)
            return blocked

        result = self._store(
            lambda: self._registry.try_acquire(package, job_id, duration),
            "registry.try_acquire",
        )
        if not result.granted:
            holder = result.holder
            outcome = Blocked(
                package=package,
                reason=BlockReason.ALREADY_BUILDING,
                blocking=package,
                held_by=holder.job_id if holder else "unknown",
                since=holder.acquired_at if holder else self._clock(),
            )
            _LOGGER.info("Blocking %s: %s", package, outcome.detail)
            return outcome

        # a consumer may have taken its lease between the check and the grant
        blocked = self._active_consumer(package)
        if blocked is not None:
            _LOGGER.info(
                "Consumer of %s started while acquiring; giving the lease back",
                package,
            )
            try:
                self._store(
                    lambda: self._registry.release(result.token),
                    "registry.release",
                )
            except (LeaseLost, StoreError) as exc:
                _LOGGER.warning(
                    "Could not give back the lease on %s: %s", package, exc
                )
            return blocked

        _LOGGER.info(
            "Granted lease on %s to job %s until %.0f",
            package,
            job_id,
            result.lease.expires_at,
        )
        return Proceed(package=package, token=result.token, lease=result.lease)

    def acquire_with_backoff(
        self,
        package: PackageIdentity,
        job_id: str,
        max_attempts: int,
        base_delay: float,
        lease_duration: Optional[float] = None,
    ) -> Union[Proceed, Blocked]:
        """Retry ``try_acquire`` with capped exponential delays.

        Returns the first ``Proceed`` or the last ``Blocked`` after
        ``max_attempts`` attempts; the total wait is bounded.
        """

        backoff = Backoff(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=self._max_wait_delay,
            sleep_fn=self._sleep_fn,
        )

        def _log_blocked(state: RetryCallState) -> None:
            _LOGGER.debug(
                "Attempt %d/%d for %s blocked; waiting %.1fs",
                state.attempt_number,
                backoff.max_attempts,
                package,
                state.next_action.sleep if state.next_action else 0.0,
            )

        retrying = backoff.retrying(
            retry_if_result(lambda outcome: not isinstance(outcome, Proceed)),
            before_sleep=_log_blocked,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return retrying(self.try_acquire, package, job_id, lease_duration)

    def renew(
        self, token: LeaseToken, lease_duration: Optional[float] = None
    ) -> BuildLease:
        duration = lease_duration or self._lease_seconds
        return self._store(
            lambda: self._registry.renew(token, duration), "registry.renew"
        )

    def release(self, token: LeaseToken) -> BuildLease:
        released = self._store(
            lambda: self._registry.release(token), "registry.release"
        )
        _LOGGER.info("Released lease on %s", token.package)
        return released

    # -- graph ----------------------------------------------------------------

    def record_dependencies(
        self,
        identity: PackageIdentity,
        dependencies: Iterable[PackageIdentity],
        project_name: Optional[str] = None,
    ) -> bool:
        """Store ``identity``'s direct edges; True when they changed."""

        deps = frozenset(dependencies)
        changed = self._store(
            lambda: self._graph.upsert_edges(identity, deps),
            "graph.upsert_edges",
        )
        if project_name:
            current = self._store(
                lambda: self._graph.build_project(identity), "graph.build_project"
            )
            if current != project_name:
                self._store(
                    lambda: self._graph.register_project(identity, project_name),
                    "graph.register_project",
                )
        return changed

    def consumers_of(self, package: PackageIdentity) -> FrozenSet[PackageIdentity]:
        return self._store(
            lambda: self._graph.consumers_of(package), "graph.consumers_of"
        )

    # -- job entry points -----------------------------------------------------

    def evaluate(
        self,
        source_root: Union[str, Path],
        job_id: Optional[str] = None,
        *,
        project_name: Optional[str] = None,
        wait_attempts: int = 1,
        wait_base_delay: float = 5.0,
        lease_duration: Optional[float] = None,
    ) -> GateOutcome:
        """Analyse the checkout, record its edges and gate the build.

        Analyzer failures and cyclic dependencies propagate. Exhausted store
        retries come back as ``Deferred(StoreUnavailable)``.
        """

        analyzer = self._analyzer or detect_analyzer(source_root, self._policy)
        identity = analyzer.identify(source_root)
        dependencies = analyzer.declared_dependencies(source_root)
        if job_id is None:
            job_id = self._require_platform().current_job_id()
        _require_valid_job_id(job_id)
        _LOGGER.info(
            "Evaluating %s for job %s (%d tracked dependencies)",
            identity,
            job_id,
            len(dependencies),
        )

        try:
            self.record_dependencies(identity, dependencies, project_name)
            if wait_attempts > 1:
                outcome = self.acquire_with_backoff(
                    identity, job_id, wait_attempts, wait_base_delay,
                    lease_duration,
                )
            else:
                outcome = self.try_acquire(identity, job_id, lease_duration)
        except StoreUnavailable as exc:
            _LOGGER.warning("Deferring %s: %s", identity, exc)
            return Deferred(
                package=identity,
                reason=DeferReason.STORE_UNAVAILABLE,
                detail=str(exc),
            )

        if isinstance(outcome, Proceed):
            return outcome

        self._register_waiter(outcome)
        if wait_attempts > 1:
            return Deferred(
                package=identity,
                reason=DeferReason.BLOCKED,
                detail=outcome.detail,
                blocked=outcome,
            )
        return outcome

    def complete(
        self,
        token: LeaseToken,
        trigger_consumers: bool = True,
        resume_waiters: Optional[bool] = None,
    ) -> CompletionReport:
        """Release the lease, then start consumer and waiter builds.

        ``resume_waiters`` overrides the configured waiter policy for this
        call. Release failures propagate. Trigger failures are collected as
        warnings and never fail the finished build.
        """

        released = self.release(token)
        package = token.package
        warnings: List[str] = []

        waiters: FrozenSet[PackageIdentity] = frozenset()
        if resume_waiters is None:
            resume_waiters = self._resume_waiters
        if resume_waiters:
            try:
                waiters = self._store(
                    lambda: self._registry.drain_waiters(package),
                    "registry.drain_waiters",
                )
            except StoreError as exc:
                warnings.append(f"could not read waiters of {package}: {exc}")

        consumers: FrozenSet[PackageIdentity] = frozenset()
        if trigger_consumers:
            try:
                consumers = self.consumers_of(package)
            except StoreError as exc:
                warnings.append(f"could not read consumers of {package}: {exc}")

        if (consumers or waiters) and self._platform is None:
            warnings.append("no CI platform configured; nothing was triggered")
            consumers = waiters = frozenset()

        triggered: Dict[PackageIdentity, str] = {}
        skipped: List[PackageIdentity] = []
        now = self._clock()
        for consumer in sorted(consumers):
            if self._is_building(consumer, now, warnings):
                skipped.append(consumer)
                continue
            job = self._start(consumer, warnings)
            if job is not None:
                triggered[consumer] = job

        resumed: Dict[PackageIdentity, str] = {}
        for waiter in sorted(waiters):
            if waiter in triggered or waiter in skipped:
                continue
            if self._is_building(waiter, now, warnings):
                continue
            job = self._start(waiter, warnings)
            if job is not None:
                resumed[waiter] = job

        for warning in warnings:
            _LOGGER.warning("Completing %s: %s", package, warning)
        return CompletionReport(
            package=package,
            released=released,
            triggered=triggered,
            skipped_active=tuple(skipped),
            resumed=resumed,
            warnings=tuple(warnings),
        )

    # -- helpers --------------------------------------------------------------

    def _active_consumer(self, package: PackageIdentity) -> Optional[Blocked]:
        consumers = self.consumers_of(package)
        if not consumers:
            return None
        now = self._clock()
        for consumer in sorted(consumers):
            lease = self._store(
                lambda: self._registry.get(consumer), "registry.get"
            )
            if lease is not None and lease.is_active(now):
                return Blocked(
                    package=package,
                    reason=BlockReason.CONSUMER_BUILDING,
                    blocking=consumer,
                    held_by=lease.job_id,
                    since=lease.acquired_at,
                )
        return None

    def _is_building(
        self, package: PackageIdentity, now: float, warnings: List[str]
    ) -> bool:
        try:
            lease = self._store(
                lambda: self._registry.get(package), "registry.get"
            )
        except StoreError as exc:
            warnings.append(f"could not read lease of {package}: {exc}")
            return False
        return lease is not None and lease.is_active(now)

    def _start(
        self, package: PackageIdentity, warnings: List[str]
    ) -> Optional[str]:
        try:
            job_id = self._require_platform().start_job(package)
        except (TriggerError, StoreError) as exc:
            warnings.append(f"failed to start a build of {package}: {exc}")
            return None
        _LOGGER.info("Triggered build of %s (job %s)", package, job_id)
        return job_id

    def _register_waiter(self, blocked: Blocked) -> None:
        try:
            self._store(
                lambda: self._registry.add_waiter(
                    blocked.blocking, blocked.package
                ),
                "registry.add_waiter",
            )
        except StoreError as exc:
            _LOGGER.warning(
                "Could not register %s as waiting on %s: %s",
                blocked.package,
                blocked.blocking,
                exc,
            )

    def _require_platform(self) -> CIPlatformClient:
        if self._platform is None:
            raise BuildGateError("No CI platform client configured")
        return self._platform

    def _store(self, operation: Callable[[], T], name: str) -> T:
        return retry_call(
            operation,
            backoff=self._store_backoff,
            retry_on=(StoreUnavailable,),
            name=name,
            logger=_LOGGER,
        )
