"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Bounded exponential backoff for store calls and gate retries, built on
tenacity's ``Retrying``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Optional, Tuple, Type, TypeVar

from tenacity import (RetryCallState, Retrying, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)
from tenacity.retry import retry_base

T = TypeVar("T")

_LOGGER = logging.getLogger(__name__)


class Backoff:
    """Exponential delay schedule with a hard attempt limit.

    Attempt ``n`` (1-based) that fails waits ``base_delay * multiplier**(n-1)``
    seconds, capped at ``max_delay``, before attempt ``n + 1``. No wait
    follows the final attempt.
    """

    def __init__(
        self,
        max_attempts: int,
        base_delay: float,
        *,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        sleep_fn: Optional[Callable[[float], None]] = None,
    ) -> None:
        """
        __init__: Function description.
        :param max_attempts:
        :param base_delay:
        :param multiplier:
        :param max_delay:
        :param sleep_fn:
        :returns:
        """

        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive.")
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative.")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.")

        self.max_attempts = int(max_attempts)
        self._base_delay = float(base_delay)
        self._multiplier = float(multiplier)
        self._max_delay = max(float(max_delay), self._base_delay)
        self._sleep_fn = sleep_fn or time.sleep

    def retrying(
        self,
        retry: retry_base,
        *,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
        retry_error_callback: Optional[Callable[[RetryCallState], Any]] = None,
    ) -> Retrying:
        """Return a fresh ``Retrying`` that follows this schedule.

        The final exception is re-raised unless ``retry_error_callback``
        supplies a value once the attempts run out.
        """
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self._base_delay,
                exp_base=self._multiplier,
                max=self._max_delay,
            ),
            retry=retry,
            sleep=self._sleep_fn,
            before_sleep=before_sleep,
            retry_error_callback=retry_error_callback,
            reraise=True,
        )


def retry_call(
    operation: Callable[[], T],
    *,
    backoff: Backoff,
    retry_on: Tuple[Type[BaseException], ...],
    name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> T:
    """Run ``operation`` until it succeeds or ``backoff`` is exhausted.

    Only exceptions in ``retry_on`` are retried; the last one propagates once
    the attempts run out. Anything else propagates immediately.
    """

    log = logger or _LOGGER
    label = name or getattr(operation, "__name__", "<anonymous>")

    def _log_retry(state: RetryCallState) -> None:
        log.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.2fs",
            label,
            state.attempt_number,
            backoff.max_attempts,
            state.outcome.exception() if state.outcome else None,
            state.next_action.sleep if state.next_action else 0.0,
        )

    retrying = backoff.retrying(
        retry_if_exception_type(retry_on), before_sleep=_log_retry
    )
    try:
        return retrying(operation)
    except retry_on as exc:
        log.error(
            "%s failed after %d attempt(s): %s",
            label,
            retrying.statistics.get("attempt_number", backoff.max_attempts),
            exc,
        )
        raise
