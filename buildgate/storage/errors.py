"""Common store errors used across graph and lease adapters."""

from __future__ import annotations

from typing import Sequence

from buildgate.errors import BuildGateError
from buildgate.models.identity import PackageIdentity


class StoreError(BuildGateError):
    """Base class for storage layer failures."""


class StoreUnavailable(StoreError):
    """Raised when a store is temporarily unreachable; safe to retry."""


class CyclicDependency(StoreError):
    """Raised when an edge write would make a package reachable from itself."""

    def __init__(self, cycle: Sequence[PackageIdentity]) -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(identity.key for identity in self.cycle)
        super().__init__(f"Cyclic dependency detected: {path}")


class RevisionConflict(StoreError):
    """Raised when a concurrent writer changed a row between read and write."""


def looks_like_transient_cloud_failure(exc: BaseException) -> bool:
    """Classify botocore/network errors that are worth retrying."""

    code = None
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error")
        if isinstance(error, dict):
            code = error.get("Code")
    if isinstance(code, str) and code:
        if code in {
            "ProvisionedThroughputExceededException",
            "RequestLimitExceeded",
            "Throttling",
            "ThrottlingException",
            "RequestTimeout",
            "RequestTimeoutException",
            "ServiceUnavailable",
            "InternalServerError",
            "InternalError",
            "TransactionInProgressException",
            "503",
        }:
            return True
    name = exc.__class__.__name__
    if name in {
        "EndpointConnectionError",
        "ConnectTimeoutError",
        "ReadTimeoutError",
        "ConnectionClosedError",
    }:
        return True
    message = str(exc).lower()
    return any(
        token in message
        for token in (
            "timed out",
            "timeout",
            "temporarily unavailable",
            "service unavailable",
            "connection reset",
            "connection aborted",
            "connection refused",
            "endpoint connection error",
        )
    )


def error_code(exc: BaseException) -> str | None:
    """Return the botocore ``Error.Code`` of ``exc`` if it carries one."""

    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    error = response.get("Error")
    if not isinstance(error, dict):
        return None
    code = error.get("Code")
    return code if isinstance(code, str) else None
