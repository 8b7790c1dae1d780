from __future__ import annotations

"""Base class for per-ecosystem manifest analyzers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Union

from buildgate.errors import BuildGateError
from buildgate.models.identity import Ecosystem, PackageIdentity

SourceRoot = Union[str, Path]


class AnalyzerError(BuildGateError):
    """Base class for manifest analysis failures; never retryable."""


class ManifestNotFound(AnalyzerError):
    """Raised when the source tree has no manifest for the ecosystem."""


class ManifestMalformed(AnalyzerError):
    """Raised when a manifest exists but cannot be interpreted."""


class UnsupportedEcosystem(AnalyzerError):
    """Raised when no analyzer is available for a requested ecosystem."""


@dataclass(frozen=True)
class DeclaredDependency:
    """A direct dependency as written in a manifest, before filtering."""

    name: str
    registry: Optional[str] = None
    local: bool = False


@dataclass(frozen=True)
class TrackedPackagePolicy:
    """Decide which declared dependencies are tracked private packages.

    A dependency is tracked when any rule matches:

    * it comes from an alternate registry listed in ``registries`` (or from
      any alternate registry when ``registries`` is empty);
    * its canonical name starts with one of ``name_prefixes``;
    * it is a local path/workspace dependency and
      ``include_path_dependencies`` is set.
    """

    registries: FrozenSet[str] = frozenset()
    name_prefixes: tuple[str, ...] = ()
    include_path_dependencies: bool = True

    @classmethod
    def from_lists(
        cls,
        registries: Iterable[str] = (),
        name_prefixes: Iterable[str] = (),
        *,
        include_path_dependencies: bool = True,
    ) -> "TrackedPackagePolicy":
        return cls(
            registries=frozenset(r.strip() for r in registries if r.strip()),
            name_prefixes=tuple(
                p.strip().lower() for p in name_prefixes if p.strip()
            ),
            include_path_dependencies=include_path_dependencies,
        )

    def is_tracked(
        self, dependency: DeclaredDependency, canonical: str
    ) -> bool:
        if dependency.registry is not None:
            if not self.registries or dependency.registry in self.registries:
                return True
        if any(canonical.startswith(prefix) for prefix in self.name_prefixes):
            return True
        return dependency.local and self.include_path_dependencies


class Analyzer(ABC):
    """Extract a package's identity and tracked direct dependencies.

    Subclasses implement :meth:`read_name` and :meth:`read_dependencies`;
    both receive the manifest path and must raise
    :class:`ManifestMalformed` when the contents cannot be interpreted.
    Analysis is a pure read of the source tree.
    """

    ecosystem: Ecosystem
    manifest_name: str

    def __init__(self, policy: Optional[TrackedPackagePolicy] = None) -> None:
        self.policy = policy or TrackedPackagePolicy()

    def manifest_path(self, source_root: SourceRoot) -> Path:
        return Path(source_root) / self.manifest_name

    def has_manifest(self, source_root: SourceRoot) -> bool:
        return self.manifest_path(source_root).is_file()

    def identify(self, source_root: SourceRoot) -> PackageIdentity:
        """Return the identity of the package rooted at ``source_root``."""
        path = self._require_manifest(source_root)
        raw_name = self.read_name(path)
        try:
            return PackageIdentity.of(self.ecosystem, raw_name)
        except ValueError as exc:
            raise ManifestMalformed(
                f"{path}: invalid package name '{raw_name}': {exc}"
            ) from exc

    def declared_dependencies(
        self, source_root: SourceRoot
    ) -> FrozenSet[PackageIdentity]:
        """Return the direct dependencies that are tracked private packages."""
        owner = self.identify(source_root)
        path = self.manifest_path(source_root)
        tracked: set[PackageIdentity] = set()
        for dependency in self.read_dependencies(path):
            try:
                identity = PackageIdentity.of(self.ecosystem, dependency.name)
            except ValueError as exc:
                raise ManifestMalformed(
                    f"{path}: invalid dependency name "
                    f"'{dependency.name}': {exc}"
                ) from exc
            if identity == owner:
                continue
            if self.policy.is_tracked(dependency, identity.name):
                tracked.add(identity)
        return frozenset(tracked)

    @abstractmethod
    def read_name(self, manifest: Path) -> str:
        """Return the raw package name declared in ``manifest``."""

    @abstractmethod
    def read_dependencies(self, manifest: Path) -> List[DeclaredDependency]:
        """Return every direct dependency declared in ``manifest``."""

    def _require_manifest(self, source_root: SourceRoot) -> Path:
        path = self.manifest_path(source_root)
        if not path.is_file():
            raise ManifestNotFound(
                f"Can't find {self.manifest_name} in {Path(source_root)}"
            )
        return path

    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        return f"{class_name}(ecosystem={self.ecosystem.value!r})"
