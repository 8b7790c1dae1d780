"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Cargo manifest analyzer.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping

from buildgate.models.identity import Ecosystem

from .base import Analyzer, DeclaredDependency, ManifestMalformed

_LOGGER = logging.getLogger(__name__)

_DEPENDENCY_TABLES = ("dependencies", "build-dependencies")


def load_cargo_manifest(path: Path) -> Dict[str, Any]:
    """Parse ``Cargo.toml`` or raise :class:`ManifestMalformed`."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ManifestMalformed(f"{path}: invalid TOML: {exc}") from exc
    except OSError as exc:
        raise ManifestMalformed(f"{path}: unreadable: {exc}") from exc


class CargoAnalyzer(Analyzer):
    """Analyzer for Rust crates."""

    ecosystem = Ecosystem.RUST
    manifest_name = "Cargo.toml"

    def read_name(self, manifest: Path) -> str:
        document = load_cargo_manifest(manifest)
        package = document.get("package")
        if not isinstance(package, Mapping):
            raise ManifestMalformed(
                f"{manifest}: no package section present in Cargo.toml"
            )
        name = package.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestMalformed(f"{manifest}: package.name is missing")
        return name

    def read_dependencies(self, manifest: Path) -> List[DeclaredDependency]:
        document = load_cargo_manifest(manifest)
        declared: Dict[str, DeclaredDependency] = {}
        for table in self._dependency_tables(document):
            for key, spec in table.items():
                dependency = self._parse_entry(manifest, key, spec)
                previous = declared.get(dependency.name)
                # a crate listed in several tables counts once; prefer the
                # entry that carries registry/path information
                if previous is None or (
                    previous.registry is None and not previous.local
                ):
                    declared[dependency.name] = dependency
        return list(declared.values())

    def _dependency_tables(
        self, document: Mapping[str, Any]
    ) -> Iterator[Mapping[str, Any]]:
        for table_name in _DEPENDENCY_TABLES:
            table = document.get(table_name)
            if isinstance(table, Mapping):
                yield table
        targets = document.get("target")
        if isinstance(targets, Mapping):
            for cfg, target in targets.items():
                if not isinstance(target, Mapping):
                    continue
                for table_name in _DEPENDENCY_TABLES:
                    table = target.get(table_name)
                    if isinstance(table, Mapping):
                        _LOGGER.debug(
                            "Including %s for target %s", table_name, cfg
                        )
                        yield table

    @staticmethod
    def _parse_entry(
        manifest: Path, key: str, spec: Any
    ) -> DeclaredDependency:
        if isinstance(spec, str):
            return DeclaredDependency(name=key)
        if not isinstance(spec, Mapping):
            raise ManifestMalformed(
                f"{manifest}: dependency '{key}' has unsupported value "
                f"{spec!r}"
            )
        name = spec.get("package", key)
        if not isinstance(name, str):
            raise ManifestMalformed(
                f"{manifest}: dependency '{key}' has a non-string package"
            )
        registry = spec.get("registry")
        local = "path" in spec or bool(spec.get("workspace"))
        return DeclaredDependency(
            name=name,
            registry=registry if isinstance(registry, str) else None,
            local=local,
        )
