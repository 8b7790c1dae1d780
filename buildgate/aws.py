"""Shared boto3 session and client construction."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

DEFAULT_REGION = "us-west-2"

_LOGGER = logging.getLogger(__name__)


def resolve_region(region: Optional[str] = None) -> str:
    return (
        region
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_REGION
    )


def build_session(
    profile: Optional[str] = None,
    region: Optional[str] = None,
) -> boto3.session.Session:
    """Create a session honouring an optional named profile."""
    kwargs: Dict[str, Any] = {"region_name": resolve_region(region)}
    if profile:
        _LOGGER.info("Using AWS profile \"%s\"", profile)
        kwargs["profile_name"] = profile
    return boto3.session.Session(**kwargs)


def build_client(
    service: str,
    *,
    session: Optional[boto3.session.Session] = None,
) -> Any:
    """Create a low-level client with botocore's standard retry mode."""
    session = session or build_session()
    cfg = Config(retries={"max_attempts": 5, "mode": "standard"})
    return session.client(service, config=cfg)
