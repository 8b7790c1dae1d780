"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Runtime settings for the build gate, read from the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from buildgate.utils.env import (env_flag, env_float, env_int, env_list,
                                 env_str, load_dotenv)

DEFAULT_LEASE_SECONDS = 1800
"""Lease duration; a crashed job blocks its package for at most this long."""

DEFAULT_RENEW_MAX_FAILURES = 3
DEFAULT_STORE_RETRIES = 4
DEFAULT_STORE_BASE_DELAY = 0.5
DEFAULT_WAIT_ATTEMPTS = 1
DEFAULT_WAIT_BASE_DELAY = 5.0

CI_PLATFORMS = ("codebuild", "webhook", "local")


@dataclass(frozen=True)
class GateSettings:
    """Immutable snapshot of every tunable the gate reads."""

    graph_table: Optional[str] = None
    lease_table: Optional[str] = None
    state_dir: Optional[Path] = None
    lease_seconds: float = DEFAULT_LEASE_SECONDS
    renew_seconds: Optional[float] = None
    renew_max_failures: int = DEFAULT_RENEW_MAX_FAILURES
    store_retries: int = DEFAULT_STORE_RETRIES
    store_base_delay: float = DEFAULT_STORE_BASE_DELAY
    wait_attempts: int = DEFAULT_WAIT_ATTEMPTS
    wait_base_delay: float = DEFAULT_WAIT_BASE_DELAY
    trigger_consumers: bool = True
    resume_waiters: bool = True
    private_registries: Tuple[str, ...] = field(default_factory=tuple)
    private_prefixes: Tuple[str, ...] = field(default_factory=tuple)
    ci_platform: str = "local"
    webhook_url: Optional[str] = None
    job_id: Optional[str] = None
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None

    @property
    def renew_interval(self) -> float:
        if self.renew_seconds:
            return self.renew_seconds
        return self.lease_seconds / 3.0

    @classmethod
    def from_env(cls) -> "GateSettings":
        load_dotenv()
        shared_table = env_str("PKG_METADATA_TABLE")
        state_dir = env_str("BUILDGATE_STATE_DIR")
        ci_platform = (env_str("BUILDGATE_CI_PLATFORM") or "").lower()
        if ci_platform not in CI_PLATFORMS:
            ci_platform = "codebuild" if env_str("CODEBUILD_BUILD_ID") else "local"
        renew_seconds = env_float("BUILDGATE_RENEW_SECONDS", 0.0)
        return cls(
            graph_table=env_str("BUILDGATE_GRAPH_TABLE") or shared_table,
            lease_table=env_str("BUILDGATE_LEASE_TABLE") or shared_table,
            state_dir=Path(state_dir) if state_dir else None,
            lease_seconds=env_float(
                "BUILDGATE_LEASE_SECONDS", DEFAULT_LEASE_SECONDS, minimum=1.0
            ),
            renew_seconds=renew_seconds or None,
            renew_max_failures=env_int(
                "BUILDGATE_RENEW_MAX_FAILURES",
                DEFAULT_RENEW_MAX_FAILURES,
                minimum=1,
            ),
            store_retries=env_int(
                "BUILDGATE_STORE_RETRIES", DEFAULT_STORE_RETRIES, minimum=1
            ),
            store_base_delay=env_float(
                "BUILDGATE_STORE_BASE_DELAY", DEFAULT_STORE_BASE_DELAY
            ),
            wait_attempts=env_int(
                "BUILDGATE_WAIT_ATTEMPTS", DEFAULT_WAIT_ATTEMPTS, minimum=1
            ),
            wait_base_delay=env_float(
                "BUILDGATE_WAIT_BASE_DELAY", DEFAULT_WAIT_BASE_DELAY
            ),
            trigger_consumers=env_flag("BUILDGATE_TRIGGER_CONSUMERS", True),
            resume_waiters=env_flag("BUILDGATE_RESUME_WAITERS", True),
            private_registries=tuple(env_list("BUILDGATE_PRIVATE_REGISTRIES")),
            private_prefixes=tuple(env_list("BUILDGATE_PRIVATE_PREFIXES")),
            ci_platform=ci_platform,
            webhook_url=env_str("BUILDGATE_WEBHOOK_URL"),
            job_id=env_str("BUILDGATE_JOB_ID"),
            aws_profile=env_str("AWS_PROFILE"),
            aws_region=env_str("AWS_REGION"),
        )
