"""Background lease renewal for long-running builds."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from buildgate.errors import LeaseLost
from buildgate.models.lease import BuildLease, LeaseToken
from buildgate.storage.errors import StoreError

_LOGGER = logging.getLogger(__name__)


class LeaseKeeper:
    """Renew a lease on a daemon thread until stopped or lost.

    A ``LeaseLost`` from the registry marks the lease lost at once. Other
    store failures count against ``max_failures`` consecutive attempts. Once
    lost, ``on_lost`` is invoked (from the renewal thread) and :meth:`check`
    raises ``LeaseLost``.
    """

    def __init__(
        self,
        coordinator,
        token: LeaseToken,
        *,
        interval: float,
        max_failures: int = 3,
        lease_duration: Optional[float] = None,
        on_lost: Optional[Callable[[LeaseLost], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        self._coordinator = coordinator
        self._token = token
        self._interval = float(interval)
        self._max_failures = int(max_failures)
        self._lease_duration = lease_duration
        self._on_lost = on_lost
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._failures = 0
        self._lost: Optional[LeaseLost] = None
        self.renewals = 0
        self.last_lease: Optional[BuildLease] = None

    @property
    def lost(self) -> bool:
        return self._lost is not None

    def start(self) -> "LeaseKeeper":
        if self._thread is not None:
            raise RuntimeError("LeaseKeeper already started")
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-keeper-{self._token.package}",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def check(self) -> None:
        """Raise ``LeaseLost`` when renewal has given up on the lease."""
        if self._lost is not None:
            raise self._lost

    def renew_once(self) -> bool:
        """Attempt one renewal; return False once the lease is lost."""
        if self._lost is not None:
            return False
        try:
            self.last_lease = self._coordinator.renew(
                self._token, self._lease_duration
            )
        except LeaseLost as exc:
            self._mark_lost(exc)
            return False
        except StoreError as exc:
            self._failures += 1
            _LOGGER.warning(
                "Renewal of %s failed (%d/%d): %s",
                self._token.package,
                self._failures,
                self._max_failures,
                exc,
            )
            if self._failures >= self._max_failures:
                self._mark_lost(
                    LeaseLost(
                        f"Lease on {self._token.package} could not be renewed "
                        f"{self._failures} times in a row"
                    )
                )
                return False
            return True
        self._failures = 0
        self.renewals += 1
        _LOGGER.debug(
            "Renewed lease on %s until %.0f",
            self._token.package,
            self.last_lease.expires_at,
        )
        return True

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            if not self.renew_once():
                return

    def _mark_lost(self, exc: LeaseLost) -> None:
        self._lost = exc
        _LOGGER.error("Lost lease on %s: %s", self._token.package, exc)
        if self._on_lost is not None:
            self._on_lost(exc)

    def __enter__(self) -> "LeaseKeeper":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
