"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Gating and triggering scenarios for the coordinator.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List

import pytest

from buildgate.analyzers import ManifestNotFound
from buildgate.clients import LocalCIPlatform
from buildgate.coordinator import GatingCoordinator
from buildgate.errors import BuildGateError, LeaseLost
from buildgate.models import (Blocked, BlockReason, Deferred, DeferReason,
                              LeaseStatus, LeaseToken, PackageIdentity,
                              Proceed)
from buildgate.net.backoff import Backoff
from buildgate.storage import (CyclicDependency, InMemoryBuildRegistry,
                               InMemoryGraphStore, StoreUnavailable)

CORE = PackageIdentity.of("rust", "core")
WEB = PackageIdentity.of("rust", "web")
WORKER = PackageIdentity.of("rust", "worker")


class _FlakyGraph(InMemoryGraphStore):
    """
    _FlakyGraph: Graph store whose calls fail while ``down`` is set.
    """

    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailable("graph table unreachable")

    def upsert_edges(self, owner, dependencies):
        self._check()
        return super().upsert_edges(owner, dependencies)

    def consumers_of(self, package):
        self._check()
        return super().consumers_of(package)


class _FlakyRegistry(InMemoryBuildRegistry):
    """
    _FlakyRegistry: Registry whose release fails while ``down`` is set.
    """

    down = False

    def release(self, token):
        if self.down:
            raise StoreUnavailable("lease table unreachable")
        return super().release(token)


@pytest.fixture
def graph() -> _FlakyGraph:
    return _FlakyGraph()


@pytest.fixture
def registry(clock) -> _FlakyRegistry:
    return _FlakyRegistry(clock=clock.time)


@pytest.fixture
def platform() -> LocalCIPlatform:
    return LocalCIPlatform(job_id="local-job")


@pytest.fixture
def coordinator(graph, registry, platform, clock) -> GatingCoordinator:
    return GatingCoordinator(
        graph,
        registry,
        platform,
        lease_seconds=600,
        store_backoff=Backoff(3, 0.5, sleep_fn=clock.sleep),
        clock=clock.time,
        sleep_fn=clock.sleep,
    )


@pytest.fixture
def crates(make_crate: Callable[..., Path]):
    """
    crates: Function description.
    :param make_crate:
    :returns:
    """

    return {
        "core": make_crate("core"),
        "web": make_crate("web", "core"),
        "worker": make_crate("worker", "core"),
    }


def test_evaluate_records_edges_and_proceeds(
    coordinator: GatingCoordinator, graph, crates
) -> None:
    """
    test_evaluate_records_edges_and_proceeds: Function description.
    :param coordinator:
    :param graph:
    :param crates:
    :returns:
    """

    outcome = coordinator.evaluate(crates["web"], "web-job-1")

    assert isinstance(outcome, Proceed)
    assert outcome.package == WEB
    assert outcome.lease.job_id == "web-job-1"
    assert graph.consumers_of(CORE) == frozenset({WEB})


def test_dependency_blocked_while_consumer_builds(
    coordinator: GatingCoordinator, registry, crates
) -> None:
    """
    test_dependency_blocked_while_consumer_builds: Function description.
    :param coordinator:
    :param registry:
    :param crates:
    :returns:
    """

    coordinator.evaluate(crates["worker"], "worker-job")
    web = coordinator.evaluate(crates["web"], "web-job")
    assert isinstance(web, Proceed)

    core = coordinator.evaluate(crates["core"], "core-job")

    assert isinstance(core, Blocked)
    assert core.reason is BlockReason.CONSUMER_BUILDING
    assert core.consumer in {WEB, WORKER}
    assert registry.get(CORE) is None
    # the blocked build waits on the consumer that blocked it
    assert CORE in registry.get(core.blocking).waiters

    coordinator.complete(web.token, trigger_consumers=False)
    worker_lease = registry.get(WORKER)
    coordinator.release(LeaseToken.decode(worker_lease.token))

    assert isinstance(coordinator.evaluate(crates["core"], "core-job"), Proceed)


def test_already_building_blocks_second_job(
    coordinator: GatingCoordinator, crates
) -> None:
    first = coordinator.evaluate(crates["core"], "core-job-1")
    second = coordinator.evaluate(crates["core"], "core-job-2")

    assert isinstance(first, Proceed)
    assert isinstance(second, Blocked)
    assert second.reason is BlockReason.ALREADY_BUILDING
    assert second.held_by == "core-job-1"
    assert second.since == first.lease.acquired_at


def test_completion_triggers_each_idle_consumer_once(
    coordinator: GatingCoordinator, platform: LocalCIPlatform, crates
) -> None:
    """
    test_completion_triggers_each_idle_consumer_once: Function description.
    :param coordinator:
    :param platform:
    :param crates:
    :returns:
    """

    for name in ("web", "worker"):
        outcome = coordinator.evaluate(crates[name], f"{name}-job")
        coordinator.complete(outcome.token, trigger_consumers=False)

    core = coordinator.evaluate(crates["core"], "core-job")
    assert isinstance(core, Proceed)
    report = coordinator.complete(core.token)

    assert sorted(platform.started) == [WEB, WORKER]
    assert set(report.triggered) == {WEB, WORKER}
    assert report.skipped_active == ()
    assert report.warnings == ()
    assert report.released.status is LeaseStatus.RELEASED


def test_completion_skips_consumers_that_are_building(
    coordinator: GatingCoordinator, platform: LocalCIPlatform, crates, registry
) -> None:
    web = coordinator.evaluate(crates["web"], "web-job")
    coordinator.complete(web.token, trigger_consumers=False)
    coordinator.evaluate(crates["worker"], "worker-job")
    worker_token = registry.get(WORKER).token

    # core acquires directly; the worker lease is taken afterwards
    coordinator.release(LeaseToken.decode(worker_token))
    core = coordinator.try_acquire(CORE, "core-job")
    assert isinstance(core, Proceed)
    assert registry.try_acquire(WORKER, "worker-job-2", 600).granted

    report = coordinator.complete(core.token)

    assert platform.started == [WEB]
    assert report.skipped_active == (WORKER,)


def test_trigger_failures_become_warnings(
    graph, registry, clock, crates
) -> None:
    """
    test_trigger_failures_become_warnings: Function description.
    :param graph:
    :param registry:
    :param clock:
    :param crates:
    :returns:
    """

    platform = LocalCIPlatform(failing={WEB})
    coordinator = GatingCoordinator(
        graph, registry, platform, clock=clock.time, sleep_fn=clock.sleep
    )
    for name in ("web", "worker"):
        outcome = coordinator.evaluate(crates[name], f"{name}-job")
        coordinator.complete(outcome.token, trigger_consumers=False)

    core = coordinator.evaluate(crates["core"], "core-job")
    report = coordinator.complete(core.token)

    assert set(report.triggered) == {WORKER}
    assert len(report.warnings) == 1
    assert "rust/web" in report.warnings[0]


def test_blocked_build_is_resumed_when_blocker_completes(
    coordinator: GatingCoordinator, platform: LocalCIPlatform, crates
) -> None:
    """
    test_blocked_build_is_resumed_when_blocker_completes: Function description.
    :param coordinator:
    :param platform:
    :param crates:
    :returns:
    """

    web = coordinator.evaluate(crates["web"], "web-job")
    blocked = coordinator.evaluate(crates["core"], "core-job")
    assert isinstance(blocked, Blocked)

    report = coordinator.complete(web.token)

    assert list(report.resumed) == [CORE]
    assert platform.started == [CORE]
    assert report.triggered == {}


def test_wait_policy_defers_after_bounded_backoff(
    coordinator: GatingCoordinator, crates, clock
) -> None:
    coordinator.evaluate(crates["web"], "web-job")

    outcome = coordinator.evaluate(
        crates["core"], "core-job", wait_attempts=4, wait_base_delay=5.0
    )

    assert isinstance(outcome, Deferred)
    assert outcome.reason is DeferReason.BLOCKED
    assert outcome.blocked.consumer == WEB
    assert clock.sleeps == [5.0, 10.0, 20.0]


def test_acquire_with_backoff_returns_once_consumer_finishes(
    coordinator: GatingCoordinator, registry, clock
) -> None:
    """
    test_acquire_with_backoff_returns_once_consumer_finishes: Function description.
    :param coordinator:
    :param registry:
    :param clock:
    :returns:
    """

    coordinator.record_dependencies(WEB, [CORE])
    web = coordinator.try_acquire(WEB, "web-job", lease_duration=10)
    assert isinstance(web, Proceed)

    # the web lease expires during the second wait
    outcome = coordinator.acquire_with_backoff(
        CORE, "core-job", max_attempts=5, base_delay=4.0
    )

    assert isinstance(outcome, Proceed)
    assert clock.sleeps == [4.0, 8.0]


def test_store_outage_defers_evaluate(
    coordinator: GatingCoordinator, graph, registry, crates, clock
) -> None:
    graph.down = True

    outcome = coordinator.evaluate(crates["core"], "core-job")

    assert isinstance(outcome, Deferred)
    assert outcome.reason is DeferReason.STORE_UNAVAILABLE
    assert clock.sleeps == [0.5, 1.0]
    assert registry.get(CORE) is None


def test_store_outage_on_complete_is_a_hard_error(
    coordinator: GatingCoordinator, registry, crates
) -> None:
    core = coordinator.evaluate(crates["core"], "core-job")
    registry.down = True

    with pytest.raises(StoreUnavailable):
        coordinator.complete(core.token)


def test_missing_manifest_writes_nothing(
    coordinator: GatingCoordinator, graph, registry, tmp_path: Path
) -> None:
    """
    test_missing_manifest_writes_nothing: Function description.
    :param coordinator:
    :param graph:
    :param registry:
    :param tmp_path:
    :returns:
    """

    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(ManifestNotFound):
        coordinator.evaluate(empty, "job-1")

    assert graph.snapshot() == {}
    assert registry.get(CORE) is None


def test_cycle_through_evaluate_leaves_graph_unchanged(
    coordinator: GatingCoordinator, graph, registry, make_crate
) -> None:
    """
    test_cycle_through_evaluate_leaves_graph_unchanged: Function description.
    :param coordinator:
    :param graph:
    :param registry:
    :param make_crate:
    :returns:
    """

    coordinator.record_dependencies(PackageIdentity.of("rust", "a"), [
        PackageIdentity.of("rust", "b")
    ])
    coordinator.record_dependencies(PackageIdentity.of("rust", "b"), [
        PackageIdentity.of("rust", "c")
    ])
    before = graph.snapshot()

    with pytest.raises(CyclicDependency):
        coordinator.evaluate(make_crate("c", "a"), "c-job")

    assert graph.snapshot() == before
    assert registry.get(PackageIdentity.of("rust", "c")) is None


def test_expired_lease_reclaimed_by_next_job(
    coordinator: GatingCoordinator, crates, clock
) -> None:
    stale = coordinator.evaluate(crates["core"], "crashed-job")
    clock.advance(601)

    fresh = coordinator.evaluate(crates["core"], "core-job-2")

    assert isinstance(fresh, Proceed)
    with pytest.raises(LeaseLost):
        coordinator.renew(stale.token)
    with pytest.raises(LeaseLost):
        coordinator.complete(stale.token)


def test_consumer_that_starts_during_grant_wins(
    graph, clock, platform
) -> None:
    """
    test_consumer_that_starts_during_grant_wins: Function description.
    :param graph:
    :param clock:
    :param platform:
    :returns:
    """

    class _RacingRegistry(InMemoryBuildRegistry):
        def try_acquire(self, package, job_id, duration_seconds):
            result = super().try_acquire(package, job_id, duration_seconds)
            if package == CORE:
                super().try_acquire(WEB, "web-job", duration_seconds)
            return result

    registry = _RacingRegistry(clock=clock.time)
    coordinator = GatingCoordinator(graph, registry, platform, clock=clock.time)
    coordinator.record_dependencies(WEB, [CORE])

    outcome = coordinator.try_acquire(CORE, "core-job")

    assert isinstance(outcome, Blocked)
    assert outcome.reason is BlockReason.CONSUMER_BUILDING
    assert registry.get(CORE).status is LeaseStatus.RELEASED


def test_concurrent_jobs_get_a_single_lease(
    coordinator: GatingCoordinator,
) -> None:
    start = threading.Barrier(6)
    outcomes: List[object] = []
    lock = threading.Lock()

    def _job(job_id: str) -> None:
        start.wait()
        outcome = coordinator.try_acquire(CORE, job_id)
        with lock:
            outcomes.append(outcome)

    threads = [
        threading.Thread(target=_job, args=(f"job-{index}",))
        for index in range(6)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    proceeds = [o for o in outcomes if isinstance(o, Proceed)]
    assert len(proceeds) == 1
    assert all(
        o.reason is BlockReason.ALREADY_BUILDING
        for o in outcomes
        if isinstance(o, Blocked)
    )


def test_failed_hand_back_still_reports_consumer_block(
    graph, clock, platform
) -> None:
    """
    test_failed_hand_back_still_reports_consumer_block: Function description.
    :param graph:
    :param clock:
    :param platform:
    :returns:
    """

    class _RacingRegistry(InMemoryBuildRegistry):
        def try_acquire(self, package, job_id, duration_seconds):
            result = super().try_acquire(package, job_id, duration_seconds)
            if package == CORE:
                super().try_acquire(WEB, "web-job", duration_seconds)
            return result

        def release(self, token):
            raise StoreUnavailable("lease table unreachable")

    registry = _RacingRegistry(clock=clock.time)
    coordinator = GatingCoordinator(
        graph,
        registry,
        platform,
        store_backoff=Backoff(2, 0.5, sleep_fn=clock.sleep),
        clock=clock.time,
        sleep_fn=clock.sleep,
    )
    coordinator.record_dependencies(WEB, [CORE])

    outcome = coordinator.try_acquire(CORE, "core-job")

    assert isinstance(outcome, Blocked)
    assert outcome.reason is BlockReason.CONSUMER_BUILDING
    assert clock.sleeps == [0.5]
    # the orphaned lease expires on its own
    assert registry.get(CORE).status is LeaseStatus.ACTIVE


def test_complete_can_leave_waiters_queued(
    coordinator: GatingCoordinator, registry, platform: LocalCIPlatform, crates
) -> None:
    web = coordinator.evaluate(crates["web"], "web-job")
    coordinator.evaluate(crates["core"], "core-job")

    report = coordinator.complete(web.token, resume_waiters=False)

    assert report.resumed == {}
    assert platform.started == []
    assert registry.get(WEB).waiters == frozenset({CORE})


def test_job_id_with_token_separator_is_rejected(
    coordinator: GatingCoordinator, graph, registry, crates
) -> None:
    with pytest.raises(BuildGateError, match="cannot contain"):
        coordinator.try_acquire(CORE, "core|job")
    with pytest.raises(BuildGateError):
        coordinator.evaluate(crates["web"], "")

    assert registry.get(CORE) is None
    assert graph.dependencies_of(WEB) == frozenset()
