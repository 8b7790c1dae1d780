"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Package identity and dependency edge models.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_PACKAGE_NAME_REGEX = re.compile(r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*$")
_KEY_SEPARATOR = "/"


class Ecosystem(str, Enum):
    """Package ecosystems a build can belong to."""

    RUST = "rust"
    JAVA = "java"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    CSHARP = "csharp"


def canonical_name(ecosystem: Ecosystem, name: str) -> str:
    """Return the ecosystem's canonical spelling of ``name``."""
    stripped = name.strip()
    if not stripped:
        raise ValueError("Package name cannot be empty")
    if ecosystem is Ecosystem.RUST:
        # crates.io treats '-' and '_' as the same crate
        return stripped.lower().replace("_", "-")
    if ecosystem is Ecosystem.PYTHON:
        return re.sub(r"[-_.]+", "-", stripped).lower()
    return stripped.lower()


def validate_package_name(value: str) -> str:
    """Ensure canonical names only use characters safe for storage keys."""
    if not _PACKAGE_NAME_REGEX.match(value):
        raise ValueError(
            f"Package name '{value}' is invalid. Expected pattern "
            f"{_PACKAGE_NAME_REGEX.pattern}"
        )
    return value


@dataclass(frozen=True, order=True)
class PackageIdentity:
    """Version-independent key for a tracked package."""

    ecosystem: Ecosystem
    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.ecosystem, Ecosystem):
            raise ValueError(
                f"Ecosystem '{self.ecosystem}' is not recognized"
            )
        validate_package_name(self.name)

    @classmethod
    def of(cls, ecosystem: Ecosystem | str, name: str) -> "PackageIdentity":
        """Build an identity, canonicalizing the raw manifest name."""
        eco = Ecosystem(ecosystem)
        return cls(ecosystem=eco, name=canonical_name(eco, name))

    @classmethod
    def parse(cls, key: str) -> "PackageIdentity":
        """Inverse of :attr:`key`."""
        ecosystem_raw, sep, name = key.partition(_KEY_SEPARATOR)
        if not sep or not name:
            raise ValueError(
                f"Package key '{key}' must look like '<ecosystem>/<name>'"
            )
        try:
            ecosystem = Ecosystem(ecosystem_raw)
        except ValueError as exc:
            raise ValueError(
                f"Package key '{key}' names unknown ecosystem "
                f"'{ecosystem_raw}'"
            ) from exc
        return cls(ecosystem=ecosystem, name=name)

    @property
    def key(self) -> str:
        return f"{self.ecosystem.value}{_KEY_SEPARATOR}{self.name}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class DependencyEdge:
    """Directed relation ``consumer -> dependency``."""

    consumer: PackageIdentity
    dependency: PackageIdentity

    def __post_init__(self) -> None:
        if self.consumer == self.dependency:
            raise ValueError(
                f"Package '{self.consumer}' cannot depend on itself"
            )
