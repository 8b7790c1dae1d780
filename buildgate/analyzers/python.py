"""pyproject.toml analyzer."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Mapping

from packaging.requirements import InvalidRequirement, Requirement

from buildgate.models.identity import Ecosystem

from .base import Analyzer, DeclaredDependency, ManifestMalformed


class PyProjectAnalyzer(Analyzer):
    """Analyzer for Python projects using PEP 621 metadata."""

    ecosystem = Ecosystem.PYTHON
    manifest_name = "pyproject.toml"

    def read_name(self, manifest: Path) -> str:
        project = self._project_table(manifest)
        name = project.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestMalformed(f"{manifest}: project.name is missing")
        return name

    def read_dependencies(self, manifest: Path) -> List[DeclaredDependency]:
        project = self._project_table(manifest)
        raw = project.get("dependencies") or []
        if not isinstance(raw, list):
            raise ManifestMalformed(
                f"{manifest}: project.dependencies must be a list"
            )
        declared: Dict[str, DeclaredDependency] = {}
        for line in raw:
            try:
                requirement = Requirement(str(line))
            except InvalidRequirement as exc:
                raise ManifestMalformed(
                    f"{manifest}: invalid requirement '{line}': {exc}"
                ) from exc
            local = bool(requirement.url and requirement.url.startswith("file:"))
            declared.setdefault(
                requirement.name,
                DeclaredDependency(name=requirement.name, local=local),
            )
        return list(declared.values())

    @staticmethod
    def _project_table(manifest: Path) -> Mapping[str, Any]:
        try:
            with manifest.open("rb") as handle:
                document = tomllib.load(handle)
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
            raise ManifestMalformed(f"{manifest}: invalid TOML: {exc}") from exc
        except OSError as exc:
            raise ManifestMalformed(f"{manifest}: unreadable: {exc}") from exc
        project = document.get("project")
        if not isinstance(project, Mapping):
            raise ManifestMalformed(
                f"{manifest}: no [project] table present in pyproject.toml"
            )
        return project
