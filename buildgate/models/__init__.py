"""Domain model package exports."""

from .identity import (DependencyEdge, Ecosystem, PackageIdentity,
                       canonical_name, validate_package_name)
from .lease import AcquireResult, BuildLease, LeaseStatus, LeaseToken
from .outcomes import (Blocked, BlockReason, CompletionReport, Deferred,
                       DeferReason, GateOutcome, Proceed)

__all__ = [
    "AcquireResult",
    "Blocked",
    "BlockReason",
    "BuildLease",
    "CompletionReport",
    "Deferred",
    "DeferReason",
    "DependencyEdge",
    "Ecosystem",
    "GateOutcome",
    "LeaseStatus",
    "LeaseToken",
    "PackageIdentity",
    "Proceed",
    "canonical_name",
    "validate_package_name",
]
