"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Tests for background lease renewal.
"""

from __future__ import annotations

import threading
from typing import List

import pytest

from buildgate.coordinator import GatingCoordinator
from buildgate.errors import LeaseLost
from buildgate.models import PackageIdentity
from buildgate.net.backoff import Backoff
from buildgate.renewal import LeaseKeeper
from buildgate.storage import (InMemoryBuildRegistry, InMemoryGraphStore,
                               StoreUnavailable)

CORE = PackageIdentity.of("rust", "core")


class _OutageRegistry(InMemoryBuildRegistry):
    """
    _OutageRegistry: Registry whose renewals fail while ``down`` is set.
    """

    down = False

    def renew(self, token, duration_seconds):
        if self.down:
            raise StoreUnavailable("lease table unreachable")
        return super().renew(token, duration_seconds)


@pytest.fixture
def registry(clock) -> _OutageRegistry:
    return _OutageRegistry(clock=clock.time)


@pytest.fixture
def coordinator(registry, clock) -> GatingCoordinator:
    return GatingCoordinator(
        InMemoryGraphStore(),
        registry,
        lease_seconds=90,
        store_backoff=Backoff(1, 0.0, sleep_fn=clock.sleep),
        clock=clock.time,
    )


def test_renew_once_extends_the_lease(coordinator, registry, clock) -> None:
    """
    test_renew_once_extends_the_lease: Function description.
    :param coordinator:
    :param registry:
    :param clock:
    :returns:
    """

    granted = coordinator.try_acquire(CORE, "job-1")
    keeper = LeaseKeeper(coordinator, granted.token, interval=30)
    clock.advance(30)

    assert keeper.renew_once() is True
    assert keeper.renewals == 1
    assert registry.get(CORE).expires_at == clock.time() + 90
    keeper.check()


def test_lease_lost_is_immediate(coordinator, clock) -> None:
    """
    test_lease_lost_is_immediate: Function description.
    :param coordinator:
    :param clock:
    :returns:
    """

    granted = coordinator.try_acquire(CORE, "job-1")
    lost: List[LeaseLost] = []
    keeper = LeaseKeeper(
        coordinator, granted.token, interval=30, on_lost=lost.append
    )
    coordinator.release(granted.token)

    assert keeper.renew_once() is False
    assert keeper.lost
    assert len(lost) == 1
    with pytest.raises(LeaseLost):
        keeper.check()


def test_consecutive_store_failures_mark_lease_lost(
    coordinator, registry
) -> None:
    granted = coordinator.try_acquire(CORE, "job-1")
    keeper = LeaseKeeper(coordinator, granted.token, interval=30, max_failures=3)
    registry.down = True

    assert keeper.renew_once() is True
    assert keeper.renew_once() is True
    registry.down = False
    assert keeper.renew_once() is True
    registry.down = True
    assert keeper.renew_once() is True
    assert keeper.renew_once() is True
    assert not keeper.lost
    assert keeper.renew_once() is False
    assert keeper.lost


def test_background_thread_renews_until_stopped(coordinator, registry) -> None:
    """
    test_background_thread_renews_until_stopped: Function description.
    :param coordinator:
    :param registry:
    :returns:
    """

    granted = coordinator.try_acquire(CORE, "job-1")
    renewed = threading.Event()

    class _Spy:
        def renew(self, token, lease_duration=None):
            lease = coordinator.renew(token, lease_duration)
            renewed.set()
            return lease

    with LeaseKeeper(_Spy(), granted.token, interval=0.01) as keeper:
        assert renewed.wait(timeout=5)
    assert keeper.renewals >= 1
    assert not keeper.lost


@pytest.mark.parametrize("kwargs", [{"interval": 0}, {"interval": 1, "max_failures": 0}])
def test_invalid_arguments(coordinator, kwargs) -> None:
    granted = coordinator.try_acquire(CORE, "job-1")
    with pytest.raises(ValueError):
        LeaseKeeper(coordinator, granted.token, **kwargs)
