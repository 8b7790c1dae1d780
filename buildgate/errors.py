"""Error types shared by the coordinator, stores, and CI clients."""

from __future__ import annotations


class BuildGateError(RuntimeError):
    """Base class for every failure raised by buildgate."""


class LeaseLost(BuildGateError):
    """Raised when a job can no longer prove it holds its build lease.

    Work running under the lease must stop before publishing anything.
    """


class TriggerError(BuildGateError):
    """Raised when the CI platform refuses to start or inspect a job."""
