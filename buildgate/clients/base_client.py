"""CI platform client interface and the shared retrying base class."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import (Callable, Generic, Optional, Protocol, Tuple, Type,
                    TypeVar)

from buildgate.models.identity import PackageIdentity
from buildgate.net.backoff import Backoff, retry_call

T = TypeVar("T")


class CIPlatformClient(Protocol):
    """The narrow slice of a CI platform the gate depends on."""

    def start_job(self, package: PackageIdentity) -> str:
        """Start a build of ``package`` and return the new job id."""

    def current_job_id(self) -> str:
        """Return the id of the job this process runs in."""

    def source_root(self) -> Path:
        """Return the checked-out source directory of the current job."""

    def job_status(self, job_id: str) -> Optional[str]:
        """Return the platform's status string for ``job_id``, if known."""

    def stop_job(self, job_id: str) -> None:
        """Ask the platform to stop ``job_id``."""


class BaseClient(Generic[T]):
    """Provide retried, timed execution of outbound platform calls."""

    retryable: Tuple[Type[BaseException], ...] = ()

    def __init__(
        self,
        backoff: Optional[Backoff] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backoff = backoff or Backoff(max_attempts=3, base_delay=1.0)
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def _execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        name: Optional[str] = None,
    ) -> T:
        """Run ``operation``, retrying ``retryable`` failures with backoff."""
        label = name or getattr(operation, "__name__", "<anonymous>")

        started_at = time.perf_counter()
        try:
            return retry_call(
                operation,
                backoff=self._backoff,
                retry_on=self.retryable,
                name=label,
                logger=self._logger,
            )
        finally:
            elapsed_ms = (time.perf_counter() - started_at) * 1000.0
            if self._logger.isEnabledFor(logging.DEBUG):
                self._logger.debug(
                    "Operation %s completed in %.2f ms",
                    label,
                    elapsed_ms,
                )
