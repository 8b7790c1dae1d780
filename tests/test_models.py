"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Tests for package identity, lease token and outcome models.
"""

from __future__ import annotations

import pytest

from buildgate.models import (Blocked, BlockReason, BuildLease,
                              CompletionReport, Deferred, DeferReason,
                              DependencyEdge, Ecosystem, LeaseStatus,
                              LeaseToken, PackageIdentity, Proceed,
                              canonical_name)
from buildgate.models.lease import validate_job_id


def test_canonical_name_per_ecosystem() -> None:
    """
    test_canonical_name_per_ecosystem: Function description.
    :param:
    :returns:
    """

    assert canonical_name(Ecosystem.RUST, "Core_Utils") == "core-utils"
    assert canonical_name(Ecosystem.PYTHON, "Zope.Interface__x") == (
        "zope-interface-x"
    )
    assert canonical_name(Ecosystem.JAVASCRIPT, "@Acme/Web") == "@acme/web"
    with pytest.raises(ValueError):
        canonical_name(Ecosystem.RUST, "   ")


def test_identity_key_round_trips_and_ignores_version_spelling() -> None:
    """
    test_identity_key_round_trips_and_ignores_version_spelling: Function description.
    :param:
    :returns:
    """

    identity = PackageIdentity.of("rust", "core_utils")
    assert identity.key == "rust/core-utils"
    assert str(identity) == "rust/core-utils"
    assert PackageIdentity.parse(identity.key) == identity
    assert PackageIdentity.of(Ecosystem.RUST, "CORE-utils") == identity

    scoped = PackageIdentity.of("javascript", "@acme/web")
    assert PackageIdentity.parse(scoped.key) == scoped


@pytest.mark.parametrize(
    "key",
    ["core", "rust/", "cobol/core", "rust/Bad Name", "rust/../x y"],
)
def test_identity_parse_rejects_invalid_keys(key: str) -> None:
    with pytest.raises(ValueError):
        PackageIdentity.parse(key)


def test_dependency_edge_rejects_self_edges() -> None:
    core = PackageIdentity.of("rust", "core")
    web = PackageIdentity.of("rust", "web")

    edge = DependencyEdge(consumer=web, dependency=core)
    assert edge.dependency == core
    with pytest.raises(ValueError):
        DependencyEdge(consumer=core, dependency=core)


def test_lease_token_encode_decode() -> None:
    """
    test_lease_token_encode_decode: Function description.
    :param:
    :returns:
    """

    core = PackageIdentity.of("rust", "core")
    token = LeaseToken.issue(core, "core-build:1234")
    encoded = token.encode()

    assert encoded.startswith("rust/core|core-build:1234|")
    assert LeaseToken.decode(encoded + "\n") == token
    assert LeaseToken.issue(core, "core-build:1234") != token


@pytest.mark.parametrize(
    "raw", ["", "rust/core|job", "rust/core|job|nonce|extra", "nope|job|n"]
)
def test_lease_token_decode_rejects_malformed(raw: str) -> None:
    with pytest.raises(ValueError):
        LeaseToken.decode(raw)


def test_job_ids_cannot_carry_the_token_separator() -> None:
    core = PackageIdentity.of("rust", "core")

    assert validate_job_id("core-build:1234") == "core-build:1234"
    with pytest.raises(ValueError, match="cannot contain"):
        validate_job_id("core|1234")
    with pytest.raises(ValueError):
        LeaseToken.issue(core, "core|1234")
    with pytest.raises(ValueError, match="requires a job id"):
        LeaseToken.issue(core, "")


def test_lease_effective_status_derives_expiry() -> None:
    core = PackageIdentity.of("rust", "core")
    lease = BuildLease(
        package=core,
        job_id="job-1",
        token="t",
        acquired_at=100.0,
        expires_at=200.0,
    )

    assert lease.effective_status(150.0) is LeaseStatus.ACTIVE
    assert lease.effective_status(200.0) is LeaseStatus.ACTIVE
    assert lease.effective_status(200.5) is LeaseStatus.EXPIRED
    assert not lease.is_active(201.0)

    released = BuildLease(
        package=core,
        job_id="job-1",
        token="t",
        acquired_at=100.0,
        expires_at=200.0,
        status=LeaseStatus.RELEASED,
    )
    assert released.effective_status(300.0) is LeaseStatus.RELEASED


def test_outcome_payloads() -> None:
    """
    test_outcome_payloads: Function description.
    :param:
    :returns:
    """

    core = PackageIdentity.of("rust", "core")
    web = PackageIdentity.of("rust", "web")
    token = LeaseToken.issue(core, "job-1")
    lease = BuildLease(
        package=core,
        job_id="job-1",
        token=token.encode(),
        acquired_at=1.0,
        expires_at=2.0,
    )

    proceed = Proceed(package=core, token=token, lease=lease)
    assert proceed.as_dict()["token"] == token.encode()

    blocked = Blocked(
        package=core,
        reason=BlockReason.CONSUMER_BUILDING,
        blocking=web,
        held_by="web-job",
        since=5.0,
    )
    assert blocked.consumer == web
    assert blocked.as_dict()["reason"] == "ConsumerBuilding"
    assert "rust/web" in blocked.detail

    already = Blocked(
        package=core,
        reason=BlockReason.ALREADY_BUILDING,
        blocking=core,
        held_by="other",
        since=5.0,
    )
    assert already.consumer is None

    deferred = Deferred(
        package=core,
        reason=DeferReason.BLOCKED,
        detail=blocked.detail,
        blocked=blocked,
    )
    payload = deferred.as_dict()
    assert payload["outcome"] == "deferred"
    assert payload["blocked"]["blocking"] == "rust/web"

    report = CompletionReport(
        package=core,
        released=lease,
        triggered={web: "web-job-2"},
        warnings=("x",),
    )
    assert report.as_dict()["triggered"] == {"rust/web": "web-job-2"}
