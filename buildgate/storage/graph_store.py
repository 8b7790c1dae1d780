"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

DynamoDB-backed dependency graph store.

One item per package::

    package        S   "<ecosystem>/<name>" (hash key)
    dependencies   SS  outgoing edges owned by this package
    consumers      SS  packages whose ``dependencies`` contain this one
    revision       N   bumped on every edge write by the owner
    build_project  S   CI project that builds the package

An edge write updates the owner (conditioned on the revision it read) and the
``consumers`` sets of every added or removed dependency in one transaction.
The same transaction re-checks the revision of every row the cycle check
walked, so two writers cannot close a cycle between them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from buildgate.models.identity import PackageIdentity

from .base import GraphStore
from .errors import (CyclicDependency, RevisionConflict, StoreError,
                     StoreUnavailable, error_code,
                     looks_like_transient_cloud_failure)
from .graph import find_cycle

_LOGGER = logging.getLogger(__name__)

# DynamoDB caps a transaction at 100 actions; one is the owner row
_MAX_TRANSACTION_ITEMS = 100


def _string_set(values: Iterable[str]) -> Dict[str, List[str]]:
    return {"SS": sorted(values)}


def _identities(attribute: Optional[Dict[str, Any]]) -> FrozenSet[PackageIdentity]:
    if not attribute:
        return frozenset()
    return frozenset(PackageIdentity.parse(key) for key in attribute.get("SS", []))


class DynamoDBGraphStore(GraphStore):
    """Edge store keyed by package identity."""

    def __init__(
        self,
        table_name: str,
        *,
        client: Any | None = None,
        max_revision_retries: int = 3,
    ) -> None:
        if not table_name:
            raise ValueError("table_name must be provided")
        if client is None:
            from buildgate.aws import build_client

            client = build_client("dynamodb")
        self._table = table_name
        self._ddb = client
        self._max_revision_retries = max(1, max_revision_retries)

    def upsert_edges(
        self, owner: PackageIdentity, dependencies: Iterable[PackageIdentity]
    ) -> bool:
        new_edges = frozenset(dependencies)
        for attempt in range(1, self._max_revision_retries + 1):
            try:
                return self._upsert_once(owner, new_edges)
            except RevisionConflict:
                _LOGGER.info(
                    "Concurrent edge write on %s (attempt %d/%d); re-reading",
                    owner,
                    attempt,
                    self._max_revision_retries,
                )
        raise StoreUnavailable(
            f"Edge write for {owner} kept losing to concurrent writers"
        )

    def _upsert_once(
        self, owner: PackageIdentity, new_edges: FrozenSet[PackageIdentity]
    ) -> bool:
        item = self._get_item(owner)
        previous = _identities(item.get("dependencies")) if item else frozenset()
        revision = _revision(item)
        if revision is not None and previous == new_edges:
            return False

        # revision of every row the cycle check read, re-verified at commit
        observed: Dict[PackageIdentity, Optional[int]] = {}

        def _lookup(package: PackageIdentity) -> FrozenSet[PackageIdentity]:
            row = self._get_item(package)
            observed[package] = _revision(row)
            return _identities(row.get("dependencies")) if row else frozenset()

        cycle = find_cycle(owner, new_edges, _lookup)
        if cycle is not None:
            _LOGGER.error(
                "Rejecting edges for %s: %s",
                owner,
                " -> ".join(identity.key for identity in cycle),
            )
            raise CyclicDependency(cycle)
        observed.pop(owner, None)

        owner_value = _string_set([owner.key])
        guarded = [self._owner_action(owner, new_edges, revision)]
        unguarded = []
        for added in sorted(new_edges - previous):
            action = self._consumer_action(added, "ADD #consumers :owner", owner_value)
            if added in observed:
                _guard(action["Update"], observed.pop(added))
                guarded.append(action)
            else:
                unguarded.append(action)
        for removed in sorted(previous - new_edges):
            action = self._consumer_action(
                removed, "DELETE #consumers :owner", owner_value
            )
            if removed in observed:
                _guard(action["Update"], observed.pop(removed))
                guarded.append(action)
            else:
                unguarded.append(action)
        for package, seen in sorted(observed.items()):
            check: Dict[str, Any] = {
                "TableName": self._table,
                "Key": {"package": {"S": package.key}},
            }
            _guard(check, seen)
            guarded.append({"ConditionCheck": check})

        if len(guarded) > _MAX_TRANSACTION_ITEMS:
            raise StoreError(
                f"Edge write for {owner} depends on {len(guarded)} rows; "
                f"more than one transaction can verify"
            )
        actions = guarded + unguarded
        self._transact(actions[:_MAX_TRANSACTION_ITEMS])
        # overflow consumer updates are idempotent set operations
        for action in actions[_MAX_TRANSACTION_ITEMS:]:
            update = action["Update"]
            self._call(
                "update_item",
                TableName=update["TableName"],
                Key=update["Key"],
                UpdateExpression=update["UpdateExpression"],
                ExpressionAttributeNames=update["ExpressionAttributeNames"],
                ExpressionAttributeValues=update["ExpressionAttributeValues"],
            )
        _LOGGER.info(
            "Recorded %d dependencies for %s (added %d, removed %d)",
            len(new_edges),
            owner,
            len(new_edges - previous),
            len(previous - new_edges),
        )
        return True

    def consumers_of(self, package: PackageIdentity) -> FrozenSet[PackageIdentity]:
        item = self._get_item(package)
        return _identities(item.get("consumers")) if item else frozenset()

    def dependencies_of(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        item = self._get_item(package)
        return _identities(item.get("dependencies")) if item else frozenset()

    def register_project(
        self, package: PackageIdentity, project_name: str
    ) -> None:
        self._call(
            "update_item",
            TableName=self._table,
            Key={"package": {"S": package.key}},
            UpdateExpression="SET #project = :project",
            ExpressionAttributeNames={"#project": "build_project"},
            ExpressionAttributeValues={":project": {"S": project_name}},
        )

    def build_project(self, package: PackageIdentity) -> Optional[str]:
        item = self._get_item(package)
        if not item or "build_project" not in item:
            return None
        return item["build_project"]["S"]

    def _owner_action(
        self,
        owner: PackageIdentity,
        new_edges: FrozenSet[PackageIdentity],
        revision: Optional[int],
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {":next": {"N": str((revision or 0) + 1)}}
        expression = "SET #rev = :next"
        if new_edges:
            expression += ", #deps = :deps"
            values[":deps"] = _string_set(dep.key for dep in new_edges)
        else:
            # string sets cannot be empty
            expression += " REMOVE #deps"
        update: Dict[str, Any] = {
            "TableName": self._table,
            "Key": {"package": {"S": owner.key}},
            "UpdateExpression": expression,
            "ExpressionAttributeNames": {
                "#rev": "revision",
                "#deps": "dependencies",
            },
            "ExpressionAttributeValues": values,
        }
        if revision is None:
            update["ConditionExpression"] = "attribute_not_exists(#rev)"
        else:
            update["ConditionExpression"] = "#rev = :rev"
            values[":rev"] = {"N": str(revision)}
        return {"Update": update}

    def _consumer_action(
        self,
        dependency: PackageIdentity,
        expression: str,
        owner_value: Dict[str, List[str]],
    ) -> Dict[str, Any]:
        return {
            "Update": {
                "TableName": self._table,
                "Key": {"package": {"S": dependency.key}},
                "UpdateExpression": expression,
                "ExpressionAttributeNames": {"#consumers": "consumers"},
                "ExpressionAttributeValues": {":owner": owner_value},
            }
        }

    def _transact(self, actions: List[Dict[str, Any]]) -> None:
        try:
            self._ddb.transact_write_items(TransactItems=actions)
        except Exception as exc:  # noqa: BLE001
            if _condition_failed(exc):
                raise RevisionConflict(str(exc)) from exc
            raise _translate(exc, "transact_write_items") from exc

    def _get_item(self, package: PackageIdentity) -> Dict[str, Any]:
        response = self._call(
            "get_item",
            TableName=self._table,
            Key={"package": {"S": package.key}},
            ConsistentRead=True,
        )
        return response.get("Item") or {}

    def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return getattr(self._ddb, operation)(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise _translate(exc, operation) from exc


def _revision(item: Dict[str, Any]) -> Optional[int]:
    if not item or "revision" not in item:
        return None
    return int(item["revision"]["N"])


def _condition_failed(exc: Exception) -> bool:
    if error_code(exc) != "TransactionCanceledException":
        return False
    reasons = getattr(exc, "response", {}).get("CancellationReasons") or []
    return any(
        reason.get("Code") == "ConditionalCheckFailed" for reason in reasons
    )


def _guard(request: Dict[str, Any], revision: Optional[int]) -> None:
    """Condition ``request`` on the row still carrying ``revision``."""
    names = request.setdefault("ExpressionAttributeNames", {})
    names["#rev"] = "revision"
    if revision is None:
        request["ConditionExpression"] = "attribute_not_exists(#rev)"
        return
    request["ConditionExpression"] = "#rev = :rev"
    request.setdefault("ExpressionAttributeValues", {})[":rev"] = {
        "N": str(revision)
    }


def _translate(exc: Exception, operation: str) -> StoreError:
    if looks_like_transient_cloud_failure(exc):
        return StoreUnavailable(f"DynamoDB {operation} unavailable: {exc}")
    return StoreError(f"DynamoDB {operation} failed: {exc}")
