"""Select the analyzer that matches a source tree or an explicit ecosystem."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Type

from buildgate.models.identity import Ecosystem

from .base import (Analyzer, ManifestNotFound, SourceRoot,
                   TrackedPackagePolicy, UnsupportedEcosystem)
from .javascript import NpmAnalyzer
from .python import PyProjectAnalyzer
from .rust import CargoAnalyzer

_LOGGER = logging.getLogger(__name__)

# detection order when several manifests are present
_ANALYZER_TYPES: Dict[Ecosystem, Type[Analyzer]] = {
    Ecosystem.RUST: CargoAnalyzer,
    Ecosystem.JAVASCRIPT: NpmAnalyzer,
    Ecosystem.PYTHON: PyProjectAnalyzer,
}


def default_analyzers(
    policy: Optional[TrackedPackagePolicy] = None,
) -> List[Analyzer]:
    return [analyzer_type(policy) for analyzer_type in _ANALYZER_TYPES.values()]


def analyzer_for(
    ecosystem: Ecosystem | str,
    policy: Optional[TrackedPackagePolicy] = None,
) -> Analyzer:
    """Return the analyzer for an explicitly configured ecosystem."""
    try:
        eco = Ecosystem(ecosystem)
    except ValueError as exc:
        raise UnsupportedEcosystem(f"Unknown ecosystem '{ecosystem}'") from exc
    analyzer_type = _ANALYZER_TYPES.get(eco)
    if analyzer_type is None:
        raise UnsupportedEcosystem(
            f"No analyzer is available for the {eco.value} ecosystem yet"
        )
    return analyzer_type(policy)


def detect_analyzer(
    source_root: SourceRoot,
    policy: Optional[TrackedPackagePolicy] = None,
) -> Analyzer:
    """Pick the analyzer whose manifest exists under ``source_root``."""
    for analyzer in default_analyzers(policy):
        if analyzer.has_manifest(source_root):
            _LOGGER.debug(
                "Detected %s manifest in %s",
                analyzer.ecosystem.value,
                source_root,
            )
            return analyzer
    expected = ", ".join(t.manifest_name for t in _ANALYZER_TYPES.values())
    raise ManifestNotFound(
        f"No supported manifest ({expected}) found in {Path(source_root)}"
    )
