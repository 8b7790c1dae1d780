"""Build lease domain models."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional

from .identity import PackageIdentity

_TOKEN_SEPARATOR = "|"


class LeaseStatus(str, Enum):
    """Lifecycle of a build lease.

    Only ``ACTIVE`` and ``RELEASED`` are ever persisted; ``EXPIRED`` is what an
    observer reports for an active lease whose expiry has passed.
    """

    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"


def validate_job_id(job_id: str) -> str:
    """Reject job ids that cannot be carried inside an encoded token."""
    if not job_id:
        raise ValueError("Lease token requires a job id")
    if _TOKEN_SEPARATOR in job_id:
        raise ValueError(
            f"Job id '{job_id}' cannot contain '{_TOKEN_SEPARATOR}'"
        )
    return job_id


@dataclass(frozen=True)
class LeaseToken:
    """Opaque proof of lease ownership handed back to the build job."""

    package: PackageIdentity
    job_id: str
    nonce: str

    def __post_init__(self) -> None:
        validate_job_id(self.job_id)
        if not self.nonce:
            raise ValueError("Lease token requires a nonce")
        if _TOKEN_SEPARATOR in self.nonce:
            raise ValueError(
                f"Lease token parts cannot contain '{_TOKEN_SEPARATOR}'"
            )

    @classmethod
    def issue(cls, package: PackageIdentity, job_id: str) -> "LeaseToken":
        return cls(package=package, job_id=job_id, nonce=secrets.token_hex(8))

    def encode(self) -> str:
        return _TOKEN_SEPARATOR.join((self.package.key, self.job_id, self.nonce))

    @classmethod
    def decode(cls, raw: str) -> "LeaseToken":
        parts = raw.strip().split(_TOKEN_SEPARATOR)
        if len(parts) != 3:
            raise ValueError(f"Malformed lease token '{raw}'")
        package_key, job_id, nonce = parts
        return cls(
            package=PackageIdentity.parse(package_key),
            job_id=job_id,
            nonce=nonce,
        )

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True)
class BuildLease:
    """One in-flight (or finished) build attempt for a package."""

    package: PackageIdentity
    job_id: str
    token: str
    acquired_at: float
    expires_at: float
    status: LeaseStatus = LeaseStatus.ACTIVE
    waiters: FrozenSet[PackageIdentity] = field(default_factory=frozenset)

    def effective_status(self, now: float) -> LeaseStatus:
        if self.status is LeaseStatus.ACTIVE and now > self.expires_at:
            return LeaseStatus.EXPIRED
        return self.status

    def is_active(self, now: float) -> bool:
        return self.effective_status(now) is LeaseStatus.ACTIVE

    def held_by(self, token: LeaseToken) -> bool:
        return self.token == token.encode()


@dataclass(frozen=True)
class AcquireResult:
    """Outcome of a registry-level acquisition attempt.

    Exactly one of ``lease`` (granted) or ``holder`` (conflict) is set.
    ``reclaimed`` carries the expired lease that was overwritten, if any.
    """

    lease: Optional[BuildLease] = None
    token: Optional[LeaseToken] = None
    holder: Optional[BuildLease] = None
    reclaimed: Optional[BuildLease] = None

    @property
    def granted(self) -> bool:
        return self.lease is not None
