"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

DynamoDB-backed build registry.

Lease attributes live on the package item (the table may be shared with the
graph store)::

    package      S   "<ecosystem>/<name>" (hash key)
    job_id       S   owning job
    token        S   encoded LeaseToken
    acquired_at  N   epoch seconds
    expires_at   N   epoch seconds
    status       S   "active" | "released"
    waiters      SS  packages that deferred on this one

Acquisition is a single conditional ``update_item``; the condition is the
whole mutual-exclusion guarantee.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Optional

from buildgate.errors import LeaseLost
from buildgate.models.identity import PackageIdentity
from buildgate.models.lease import (AcquireResult, BuildLease, LeaseStatus,
                                    LeaseToken)

from .base import BuildRegistry
from .errors import (StoreError, StoreUnavailable, error_code,
                     looks_like_transient_cloud_failure)

_LOGGER = logging.getLogger(__name__)

_CONDITION_FAILED = "ConditionalCheckFailedException"

_ACQUIRE_CONDITION = (
    "attribute_not_exists(job_id) "
    "OR #status <> :active "
    "OR expires_at < :now "
    "OR job_id = :job"
)
_HELD_CONDITION = "#token = :token AND #status = :active"


def _format_number(value: float) -> str:
    return repr(float(value))


def _item_to_lease(
    package: PackageIdentity, item: Optional[Dict[str, Any]]
) -> Optional[BuildLease]:
    if not item or "job_id" not in item or "token" not in item:
        return None
    waiters = item.get("waiters", {}).get("SS", [])
    return BuildLease(
        package=package,
        job_id=item["job_id"]["S"],
        token=item["token"]["S"],
        acquired_at=float(item["acquired_at"]["N"]),
        expires_at=float(item["expires_at"]["N"]),
        status=LeaseStatus(item["status"]["S"]),
        waiters=frozenset(PackageIdentity.parse(key) for key in waiters),
    )


class DynamoDBBuildRegistry(BuildRegistry):
    """Lease table with conditional writes for mutual exclusion."""

    def __init__(
        self,
        table_name: str,
        *,
        client: Any | None = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not table_name:
            raise ValueError("table_name must be provided")
        if client is None:
            from buildgate.aws import build_client

            client = build_client("dynamodb")
        self._table = table_name
        self._ddb = client
        self._clock = clock or time.time

    def try_acquire(
        self,
        package: PackageIdentity,
        job_id: str,
        duration_seconds: float,
    ) -> AcquireResult:
        # a holder that vanishes between the failed write and the re-read
        # is retried once against the fresh row
        for _ in range(2):
            now = self._clock()
            token = LeaseToken.issue(package, job_id)
            expires_at = now + duration_seconds
            try:
                response = self._ddb.update_item(
                    TableName=self._table,
                    Key={"package": {"S": package.key}},
                    UpdateExpression=(
                        "SET job_id = :job, #token = :token, "
                        "acquired_at = :now, expires_at = :exp, "
                        "#status = :active"
                    ),
                    ConditionExpression=_ACQUIRE_CONDITION,
                    ExpressionAttributeNames={
                        "#token": "token",
                        "#status": "status",
                    },
                    ExpressionAttributeValues={
                        ":job": {"S": job_id},
                        ":token": {"S": token.encode()},
                        ":now": {"N": _format_number(now)},
                        ":exp": {"N": _format_number(expires_at)},
                        ":active": {"S": LeaseStatus.ACTIVE.value},
                    },
                    ReturnValues="ALL_OLD",
                    ReturnValuesOnConditionCheckFailure="ALL_OLD",
                )
            except Exception as exc:  # noqa: BLE001
                if error_code(exc) != _CONDITION_FAILED:
                    raise _translate(exc, "update_item") from exc
                old_item = getattr(exc, "response", {}).get("Item")
                holder = _item_to_lease(package, old_item) or self.get(package)
                if holder is not None and holder.job_id != job_id:
                    return AcquireResult(holder=holder)
                continue

            previous = _item_to_lease(package, response.get("Attributes"))
            reclaimed = None
            if (
                previous is not None
                and previous.effective_status(now) is LeaseStatus.EXPIRED
            ):
                reclaimed = previous
                _LOGGER.warning(
                    "Reclaiming expired lease on %s held by job %s",
                    package,
                    previous.job_id,
                )
            lease = BuildLease(
                package=package,
                job_id=job_id,
                token=token.encode(),
                acquired_at=now,
                expires_at=expires_at,
            )
            return AcquireResult(lease=lease, token=token, reclaimed=reclaimed)
        raise StoreUnavailable(
            f"Lease row for {package} changed repeatedly during acquisition"
        )

    def renew(self, token: LeaseToken, duration_seconds: float) -> BuildLease:
        expires_at = self._clock() + duration_seconds
        response = self._conditional_update(
            token,
            "SET expires_at = :exp",
            {":exp": {"N": _format_number(expires_at)}},
        )
        return self._lease_from_response(token, response)

    def release(self, token: LeaseToken) -> BuildLease:
        response = self._conditional_update(
            token,
            "SET #status = :released",
            {":released": {"S": LeaseStatus.RELEASED.value}},
        )
        return self._lease_from_response(token, response)

    def get(self, package: PackageIdentity) -> Optional[BuildLease]:
        try:
            response = self._ddb.get_item(
                TableName=self._table,
                Key={"package": {"S": package.key}},
                ConsistentRead=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise _translate(exc, "get_item") from exc
        return _item_to_lease(package, response.get("Item"))

    def add_waiter(
        self, blocking: PackageIdentity, waiting: PackageIdentity
    ) -> None:
        try:
            self._ddb.update_item(
                TableName=self._table,
                Key={"package": {"S": blocking.key}},
                UpdateExpression="ADD waiters :waiting",
                ExpressionAttributeValues={":waiting": {"SS": [waiting.key]}},
            )
        except Exception as exc:  # noqa: BLE001
            raise _translate(exc, "update_item") from exc

    def drain_waiters(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        try:
            response = self._ddb.update_item(
                TableName=self._table,
                Key={"package": {"S": package.key}},
                UpdateExpression="REMOVE waiters",
                ConditionExpression="attribute_exists(waiters)",
                ReturnValues="UPDATED_OLD",
            )
        except Exception as exc:  # noqa: BLE001
            if error_code(exc) == _CONDITION_FAILED:
                return frozenset()
            raise _translate(exc, "update_item") from exc
        drained = response.get("Attributes", {}).get("waiters", {}).get("SS", [])
        return frozenset(PackageIdentity.parse(key) for key in drained)

    def _conditional_update(
        self,
        token: LeaseToken,
        expression: str,
        values: Dict[str, Any],
    ) -> Dict[str, Any]:
        values = dict(values)
        values[":token"] = {"S": token.encode()}
        values[":active"] = {"S": LeaseStatus.ACTIVE.value}
        try:
            return self._ddb.update_item(
                TableName=self._table,
                Key={"package": {"S": token.package.key}},
                UpdateExpression=expression,
                ConditionExpression=_HELD_CONDITION,
                ExpressionAttributeNames={
                    "#token": "token",
                    "#status": "status",
                },
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except Exception as exc:  # noqa: BLE001
            if error_code(exc) == _CONDITION_FAILED:
                raise LeaseLost(
                    f"Lease on {token.package} is no longer held"
                ) from exc
            raise _translate(exc, "update_item") from exc

    @staticmethod
    def _lease_from_response(
        token: LeaseToken, response: Dict[str, Any]
    ) -> BuildLease:
        lease = _item_to_lease(token.package, response.get("Attributes"))
        if lease is None:
            raise StoreError(
                f"DynamoDB returned no lease attributes for {token.package}"
            )
        return lease


def _translate(exc: Exception, operation: str) -> StoreError:
    if looks_like_transient_cloud_failure(exc):
        return StoreUnavailable(f"DynamoDB {operation} unavailable: {exc}")
    return StoreError(f"DynamoDB {operation} failed: {exc}")
