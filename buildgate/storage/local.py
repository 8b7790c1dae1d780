"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

File-backed stores for local runs and single-host CI runners.

Every operation runs under an exclusive ``fcntl`` lock on a sibling
``.lock`` file, so the conditional lease write stays atomic across processes
sharing the state directory. State files are replaced atomically.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import (Any, Callable, Dict, FrozenSet, Iterable, Iterator,
                    Optional)

from buildgate.errors import LeaseLost
from buildgate.models.identity import PackageIdentity
from buildgate.models.lease import (AcquireResult, BuildLease, LeaseStatus,
                                    LeaseToken)

from .base import BuildRegistry, GraphStore
from .errors import CyclicDependency, StoreUnavailable
from .graph import find_cycle, invert

_LOGGER = logging.getLogger(__name__)

GRAPH_FILE = "edges.json"
LEASE_FILE = "leases.json"


class _LockRegistry:
    """In-process locks layered under the file lock."""

    def __init__(self) -> None:
        self._gate = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @contextlib.contextmanager
    def acquire(self, key: str) -> Iterator[None]:
        with self._gate:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
        with lock:
            yield


_LOCKS = _LockRegistry()


class JsonStateFile:
    """A JSON document mutated under an exclusive lock."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_suffix(self._path.suffix + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """Yield the document; changes are persisted when the block exits."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._lock_path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StoreUnavailable(
                f"State directory {self._path.parent} is not writable: {exc}"
            ) from exc
        with _LOCKS.acquire(str(self._path)):
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                document = self._read()
                before = json.dumps(document, sort_keys=True)
                yield document
                if json.dumps(document, sort_keys=True) != before:
                    self._write(document)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()

    def read(self) -> Dict[str, Any]:
        with self.transaction() as document:
            return json.loads(json.dumps(document))

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open(encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreUnavailable(
                f"State file {self._path} is unreadable: {exc}"
            ) from exc
        return payload if isinstance(payload, dict) else {}

    def _write(self, document: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=self._path.name, dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise StoreUnavailable(
                f"Failed to write state file {self._path}: {exc}"
            ) from exc


def _identities(keys: Iterable[str]) -> FrozenSet[PackageIdentity]:
    return frozenset(PackageIdentity.parse(key) for key in keys)


class LocalGraphStore(GraphStore):
    """Edge table persisted as ``edges.json`` in a state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._state = JsonStateFile(Path(state_dir) / GRAPH_FILE)

    def upsert_edges(
        self, owner: PackageIdentity, dependencies: Iterable[PackageIdentity]
    ) -> bool:
        new_edges = frozenset(dependencies)
        with self._state.transaction() as document:
            edges: Dict[str, list[str]] = document.setdefault("edges", {})
            previous = edges.get(owner.key)
            if previous is not None and _identities(previous) == new_edges:
                return False

            def lookup(package: PackageIdentity) -> FrozenSet[PackageIdentity]:
                return _identities(edges.get(package.key, ()))

            cycle = find_cycle(owner, new_edges, lookup)
            if cycle is not None:
                _LOGGER.error(
                    "Rejecting edges for %s: %s",
                    owner,
                    " -> ".join(identity.key for identity in cycle),
                )
                raise CyclicDependency(cycle)
            edges[owner.key] = sorted(dep.key for dep in new_edges)
            return True

    def consumers_of(self, package: PackageIdentity) -> FrozenSet[PackageIdentity]:
        edges = self._state.read().get("edges", {})
        consumers = invert(
            {
                PackageIdentity.parse(owner): _identities(deps)
                for owner, deps in edges.items()
            }
        )
        return consumers.get(package, frozenset())

    def dependencies_of(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        edges = self._state.read().get("edges", {})
        return _identities(edges.get(package.key, ()))

    def register_project(
        self, package: PackageIdentity, project_name: str
    ) -> None:
        with self._state.transaction() as document:
            document.setdefault("projects", {})[package.key] = project_name

    def build_project(self, package: PackageIdentity) -> Optional[str]:
        return self._state.read().get("projects", {}).get(package.key)


def _lease_to_payload(lease: BuildLease) -> Dict[str, Any]:
    return {
        "job_id": lease.job_id,
        "token": lease.token,
        "acquired_at": lease.acquired_at,
        "expires_at": lease.expires_at,
        "status": lease.status.value,
    }


def _payload_to_lease(
    package: PackageIdentity,
    payload: Dict[str, Any],
    waiters: Iterable[str] = (),
) -> BuildLease:
    return BuildLease(
        package=package,
        job_id=payload["job_id"],
        token=payload["token"],
        acquired_at=float(payload["acquired_at"]),
        expires_at=float(payload["expires_at"]),
        status=LeaseStatus(payload["status"]),
        waiters=_identities(waiters),
    )


class LocalBuildRegistry(BuildRegistry):
    """Lease table persisted as ``leases.json`` in a state directory."""

    def __init__(
        self,
        state_dir: Path,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._state = JsonStateFile(Path(state_dir) / LEASE_FILE)
        self._clock = clock or time.time

    def try_acquire(
        self,
        package: PackageIdentity,
        job_id: str,
        duration_seconds: float,
    ) -> AcquireResult:
        with self._state.transaction() as document:
            leases = document.setdefault("leases", {})
            now = self._clock()
            reclaimed: Optional[BuildLease] = None
            raw = leases.get(package.key)
            if raw is not None:
                current = _payload_to_lease(package, raw)
                if current.is_active(now) and current.job_id != job_id:
                    return AcquireResult(holder=current)
                if current.effective_status(now) is LeaseStatus.EXPIRED:
                    reclaimed = current
                    _LOGGER.warning(
                        "Reclaiming expired lease on %s held by job %s",
                        package,
                        current.job_id,
                    )
            token = LeaseToken.issue(package, job_id)
            lease = BuildLease(
                package=package,
                job_id=job_id,
                token=token.encode(),
                acquired_at=now,
                expires_at=now + duration_seconds,
            )
            leases[package.key] = _lease_to_payload(lease)
            return AcquireResult(lease=lease, token=token, reclaimed=reclaimed)

    def renew(self, token: LeaseToken, duration_seconds: float) -> BuildLease:
        with self._state.transaction() as document:
            raw = self._held(document, token)
            raw["expires_at"] = self._clock() + duration_seconds
            return _payload_to_lease(token.package, raw)

    def release(self, token: LeaseToken) -> BuildLease:
        with self._state.transaction() as document:
            raw = self._held(document, token)
            raw["status"] = LeaseStatus.RELEASED.value
            return _payload_to_lease(token.package, raw)

    def get(self, package: PackageIdentity) -> Optional[BuildLease]:
        document = self._state.read()
        raw = document.get("leases", {}).get(package.key)
        if raw is None:
            return None
        waiters = document.get("waiters", {}).get(package.key, ())
        return _payload_to_lease(package, raw, waiters)

    def add_waiter(
        self, blocking: PackageIdentity, waiting: PackageIdentity
    ) -> None:
        with self._state.transaction() as document:
            waiters = document.setdefault("waiters", {})
            current = set(waiters.get(blocking.key, ()))
            current.add(waiting.key)
            waiters[blocking.key] = sorted(current)

    def drain_waiters(
        self, package: PackageIdentity
    ) -> FrozenSet[PackageIdentity]:
        with self._state.transaction() as document:
            drained = document.setdefault("waiters", {}).pop(package.key, [])
            return _identities(drained)

    @staticmethod
    def _held(document: Dict[str, Any], token: LeaseToken) -> Dict[str, Any]:
        raw = document.get("leases", {}).get(token.package.key)
        if (
            raw is None
            or raw.get("token") != token.encode()
            or raw.get("status") != LeaseStatus.ACTIVE.value
        ):
            raise LeaseLost(f"Lease on {token.package} is no longer held")
        return raw
