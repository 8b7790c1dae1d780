"""package.json analyzer."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping

from buildgate.models.identity import Ecosystem

from .base import Analyzer, DeclaredDependency, ManifestMalformed

_DEPENDENCY_FIELDS = ("dependencies", "peerDependencies")
_LOCAL_SPEC_PREFIXES = ("workspace:", "file:", "link:")


class NpmAnalyzer(Analyzer):
    """Analyzer for JavaScript packages."""

    ecosystem = Ecosystem.JAVASCRIPT
    manifest_name = "package.json"

    def read_name(self, manifest: Path) -> str:
        document = self._load(manifest)
        name = document.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestMalformed(f"{manifest}: 'name' is missing")
        return name

    def read_dependencies(self, manifest: Path) -> List[DeclaredDependency]:
        document = self._load(manifest)
        declared: Dict[str, DeclaredDependency] = {}
        for field_name in _DEPENDENCY_FIELDS:
            section = document.get(field_name) or {}
            if not isinstance(section, Mapping):
                raise ManifestMalformed(
                    f"{manifest}: '{field_name}' must be an object"
                )
            for name, spec in section.items():
                spec_text = spec if isinstance(spec, str) else ""
                declared.setdefault(
                    name,
                    DeclaredDependency(
                        name=name,
                        local=spec_text.startswith(_LOCAL_SPEC_PREFIXES),
                    ),
                )
        return list(declared.values())

    @staticmethod
    def _load(manifest: Path) -> Mapping[str, Any]:
        try:
            document = json.loads(manifest.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ManifestMalformed(f"{manifest}: invalid JSON: {exc}") from exc
        except OSError as exc:
            raise ManifestMalformed(f"{manifest}: unreadable: {exc}") from exc
        if not isinstance(document, Mapping):
            raise ManifestMalformed(f"{manifest}: expected a JSON object")
        return document
