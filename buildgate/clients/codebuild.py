"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

AWS CodeBuild implementation of the CI platform client.

A consumer build is started on the CodeBuild project recorded for it in the
graph store. The current build is identified through the variables CodeBuild
injects into every build container.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from buildgate.errors import BuildGateError, TriggerError
from buildgate.models.identity import PackageIdentity
from buildgate.net.backoff import Backoff
from buildgate.storage.base import GraphStore
from buildgate.storage.errors import looks_like_transient_cloud_failure

from .base_client import BaseClient

BUILD_ID_ENV = "CODEBUILD_BUILD_ID"
SOURCE_DIR_ENV = "CODEBUILD_SRC_DIR"
TRIGGERED_BY_ENV = "BUILDGATE_TRIGGERED_BY"


class _TransientPlatformError(TriggerError):
    """CodeBuild call failed in a way worth retrying."""


def project_from_build_id(build_id: str) -> str:
    """Return the project part of a ``<project>:<uuid>`` build id."""
    project, separator, _ = build_id.partition(":")
    if not separator or not project:
        raise BuildGateError(f"Malformed CodeBuild build id '{build_id}'")
    return project


class CodeBuildClient(BaseClient[Dict[str, Any]]):
    """Start, inspect and stop CodeBuild builds for tracked packages."""

    retryable = (_TransientPlatformError,)

    def __init__(
        self,
        graph: GraphStore,
        *,
        client: Any | None = None,
        environ: Optional[Mapping[str, str]] = None,
        backoff: Optional[Backoff] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(backoff, logger=logger)
        if client is None:
            from buildgate.aws import build_client

            client = build_client("codebuild")
        self._graph = graph
        self._codebuild = client
        self._environ = environ if environ is not None else os.environ

    def current_job_id(self) -> str:
        build_id = (self._environ.get(BUILD_ID_ENV) or "").strip()
        if not build_id:
            raise BuildGateError(
                f"{BUILD_ID_ENV} is not set; not running inside CodeBuild"
            )
        return build_id

    def current_project(self) -> str:
        return project_from_build_id(self.current_job_id())

    def source_root(self) -> Path:
        source_dir = (self._environ.get(SOURCE_DIR_ENV) or "").strip()
        return Path(source_dir) if source_dir else Path.cwd()

    def start_job(self, package: PackageIdentity) -> str:
        project = self._graph.build_project(package)
        if not project:
            raise TriggerError(f"No CodeBuild project recorded for {package}")
        request: Dict[str, Any] = {"projectName": project}
        triggered_by = (self._environ.get(BUILD_ID_ENV) or "").strip()
        if triggered_by:
            request["environmentVariablesOverride"] = [
                {
                    "name": TRIGGERED_BY_ENV,
                    "value": triggered_by,
                    "type": "PLAINTEXT",
                }
            ]

        response = self._call("start_build", **request)
        try:
            build_id = response["build"]["id"]
        except (KeyError, TypeError) as error:
            raise TriggerError(
                f"CodeBuild start_build for {project} returned no build id"
            ) from error
        self._logger.info(
            "Started CodeBuild build %s of %s for %s", build_id, project, package
        )
        return build_id

    def job_status(self, job_id: str) -> Optional[str]:
        response = self._call("batch_get_builds", ids=[job_id])
        builds = response.get("builds") or []
        if not builds:
            return None
        return builds[0].get("buildStatus")

    def stop_job(self, job_id: str) -> None:
        self._call("stop_build", id=job_id)
        self._logger.info("Requested stop of CodeBuild build %s", job_id)

    def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        def _operation() -> Dict[str, Any]:
            try:
                return getattr(self._codebuild, operation)(**kwargs)
            except Exception as exc:  # noqa: BLE001
                if looks_like_transient_cloud_failure(exc):
                    raise _TransientPlatformError(
                        f"CodeBuild {operation} unavailable: {exc}"
                    ) from exc
                raise TriggerError(f"CodeBuild {operation} failed: {exc}") from exc

        return self._execute_with_retry(_operation, name=f"codebuild.{operation}")
