"""Storage layer abstractions and adapters."""

from .base import BuildRegistry, GraphStore
from .errors import (CyclicDependency, RevisionConflict, StoreError,
                     StoreUnavailable)
from .factory import build_build_registry_from_env, build_graph_store_from_env
from .graph_store import DynamoDBGraphStore
from .lease_registry import DynamoDBBuildRegistry
from .local import LocalBuildRegistry, LocalGraphStore
from .memory import InMemoryBuildRegistry, InMemoryGraphStore

__all__ = [
    "GraphStore",
    "BuildRegistry",
    "StoreError",
    "StoreUnavailable",
    "CyclicDependency",
    "RevisionConflict",
    "InMemoryGraphStore",
    "InMemoryBuildRegistry",
    "LocalGraphStore",
    "LocalBuildRegistry",
    "DynamoDBGraphStore",
    "DynamoDBBuildRegistry",
    "build_graph_store_from_env",
    "build_build_registry_from_env",
]
