"""Pick store backends from settings: DynamoDB, local JSON, or in-memory."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from buildgate.config import GateSettings

from .base import BuildRegistry, GraphStore
from .graph_store import DynamoDBGraphStore
from .lease_registry import DynamoDBBuildRegistry
from .local import LocalBuildRegistry, LocalGraphStore
from .memory import InMemoryBuildRegistry, InMemoryGraphStore

_LOGGER = logging.getLogger(__name__)


def build_graph_store_from_env(
    settings: GateSettings,
    *,
    session: Any | None = None,
) -> GraphStore:
    if settings.graph_table:
        from buildgate.aws import build_client

        _LOGGER.debug("Using DynamoDB graph table %s", settings.graph_table)
        return DynamoDBGraphStore(
            settings.graph_table,
            client=build_client("dynamodb", session=session),
        )
    if settings.state_dir is not None:
        _LOGGER.debug("Using local graph state in %s", settings.state_dir)
        return LocalGraphStore(settings.state_dir)
    _LOGGER.warning(
        "No graph table or state directory configured; "
        "dependency edges will not outlive this process"
    )
    return InMemoryGraphStore()


def build_build_registry_from_env(
    settings: GateSettings,
    *,
    session: Any | None = None,
    clock: Optional[Callable[[], float]] = None,
) -> BuildRegistry:
    if settings.lease_table:
        from buildgate.aws import build_client

        _LOGGER.debug("Using DynamoDB lease table %s", settings.lease_table)
        return DynamoDBBuildRegistry(
            settings.lease_table,
            client=build_client("dynamodb", session=session),
            clock=clock,
        )
    if settings.state_dir is not None:
        _LOGGER.debug("Using local lease state in %s", settings.state_dir)
        return LocalBuildRegistry(settings.state_dir, clock=clock)
    _LOGGER.warning(
        "No lease table or state directory configured; "
        "leases only exclude builds inside this process"
    )
    return InMemoryBuildRegistry(clock=clock)
