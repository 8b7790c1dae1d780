"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Gating outcomes returned to build jobs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .identity import PackageIdentity
from .lease import BuildLease, LeaseToken


class BlockReason(str, Enum):
    """Why a build of a package may not start right now."""

    CONSUMER_BUILDING = "ConsumerBuilding"
    ALREADY_BUILDING = "AlreadyBuilding"


class DeferReason(str, Enum):
    """Why a build declined to proceed and expects re-invocation."""

    BLOCKED = "Blocked"
    STORE_UNAVAILABLE = "StoreUnavailable"


@dataclass(frozen=True)
class Proceed:
    """The lease was granted; the build may run."""

    package: PackageIdentity
    token: LeaseToken
    lease: BuildLease

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": "proceed",
            "package": self.package.key,
            "token": self.token.encode(),
            "expires_at": self.lease.expires_at,
        }


@dataclass(frozen=True)
class Blocked:
    """Coordination refused the start.

    ``blocking`` is the package whose active lease caused the block: the
    package itself for ``ALREADY_BUILDING`` and the consumer for
    ``CONSUMER_BUILDING``.
    """

    package: PackageIdentity
    reason: BlockReason
    blocking: PackageIdentity
    held_by: str
    since: float

    @property
    def consumer(self) -> Optional[PackageIdentity]:
        if self.reason is BlockReason.CONSUMER_BUILDING:
            return self.blocking
        return None

    @property
    def detail(self) -> str:
        if self.reason is BlockReason.CONSUMER_BUILDING:
            return (
                f"consumer {self.blocking} is being built by job "
                f"{self.held_by}"
            )
        return f"{self.package} is already being built by job {self.held_by}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": "blocked",
            "package": self.package.key,
            "reason": self.reason.value,
            "blocking": self.blocking.key,
            "held_by": self.held_by,
            "since": self.since,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class Deferred:
    """The job should exit and wait for an external re-invocation."""

    package: PackageIdentity
    reason: DeferReason
    detail: str
    blocked: Optional[Blocked] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "outcome": "deferred",
            "package": self.package.key,
            "reason": self.reason.value,
            "detail": self.detail,
        }
        if self.blocked is not None:
            payload["blocked"] = self.blocked.as_dict()
        return payload


GateOutcome = Union[Proceed, Blocked, Deferred]


@dataclass(frozen=True)
class CompletionReport:
    """What happened when a finished build released its lease."""

    package: PackageIdentity
    released: BuildLease
    triggered: Mapping[PackageIdentity, str] = field(default_factory=dict)
    skipped_active: Tuple[PackageIdentity, ...] = ()
    resumed: Mapping[PackageIdentity, str] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": "completed",
            "package": self.package.key,
            "triggered": {
                identity.key: job_id
                for identity, job_id in sorted(self.triggered.items())
            },
            "skipped_active": [identity.key for identity in self.skipped_active],
            "resumed": {
                identity.key: job_id
                for identity, job_id in sorted(self.resumed.items())
            },
            "warnings": list(self.warnings),
        }
