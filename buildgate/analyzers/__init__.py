"""Per-ecosystem manifest analyzers."""

from .base import (Analyzer, AnalyzerError, DeclaredDependency,
                   ManifestMalformed, ManifestNotFound, TrackedPackagePolicy,
                   UnsupportedEcosystem)
from .javascript import NpmAnalyzer
from .python import PyProjectAnalyzer
from .registry import analyzer_for, default_analyzers, detect_analyzer
from .rust import CargoAnalyzer

__all__ = [
    "Analyzer",
    "AnalyzerError",
    "CargoAnalyzer",
    "DeclaredDependency",
    "ManifestMalformed",
    "ManifestNotFound",
    "NpmAnalyzer",
    "PyProjectAnalyzer",
    "TrackedPackagePolicy",
    "UnsupportedEcosystem",
    "analyzer_for",
    "default_analyzers",
    "detect_analyzer",
]
