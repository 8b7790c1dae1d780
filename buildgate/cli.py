"""Command-line wrapper invoked from buildspec phases.

Every command prints a single JSON line on stdout. Exit status 0 means the
build may proceed (or completed), 75 means it was blocked or deferred and the
job should stop without failing, 1 is a hard error.
"""

from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO

from .clients.base_client import CIPlatformClient
from .clients.codebuild import CodeBuildClient
from .clients.local import LocalCIPlatform
from .clients.webhook import WebhookCIPlatformClient
from .config import GateSettings
from .coordinator import GatingCoordinator
from .errors import BuildGateError, LeaseLost
from .logging_config import configure_logging
from .models.identity import PackageIdentity
from .models.lease import LeaseToken
from .models.outcomes import GateOutcome, Proceed
from .renewal import LeaseKeeper
from .storage.base import GraphStore
from .storage.factory import (build_build_registry_from_env,
                              build_graph_store_from_env)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DEFERRED = 75

logger = logging.getLogger(__name__)


def to_json_line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class BuildGateApp:
    """Runs one CLI command against a configured coordinator."""

    def __init__(
        self,
        settings: GateSettings,
        coordinator: GatingCoordinator,
        platform: CIPlatformClient,
        *,
        out: Optional[TextIO] = None,
    ) -> None:
        self._settings = settings
        self._coordinator = coordinator
        self._platform = platform
        self._out = out or sys.stdout

    def emit(self, payload: Dict[str, Any]) -> None:
        print(to_json_line(payload), file=self._out)

    def evaluate(
        self,
        source_root: Optional[Path] = None,
        token_file: Optional[Path] = None,
        wait_attempts: Optional[int] = None,
    ) -> int:
        outcome = self._evaluate(source_root, wait_attempts)
        self.emit(outcome.as_dict())
        if not isinstance(outcome, Proceed):
            return EXIT_DEFERRED
        if token_file is not None:
            token_file.parent.mkdir(parents=True, exist_ok=True)
            token_file.write_text(outcome.token.encode() + "\n", encoding="utf-8")
        return EXIT_OK

    def complete(self, token: LeaseToken, trigger: bool = True) -> int:
        report = self._coordinator.complete(
            token,
            trigger_consumers=trigger and self._settings.trigger_consumers,
            resume_waiters=None if trigger else False,
        )
        self.emit(report.as_dict())
        return EXIT_OK

    def run(
        self,
        command: Sequence[str],
        source_root: Optional[Path] = None,
        wait_attempts: Optional[int] = None,
    ) -> int:
        if not command:
            raise BuildGateError("run requires a build command after '--'")
        outcome = self._evaluate(source_root, wait_attempts)
        if not isinstance(outcome, Proceed):
            self.emit(outcome.as_dict())
            return EXIT_DEFERRED

        cwd = source_root or self._platform.source_root()
        logger.info("Running %s in %s", " ".join(command), cwd)
        completed = False
        try:
            try:
                process = subprocess.Popen(list(command), cwd=str(cwd))
            except OSError as error:
                raise BuildGateError(
                    f"Cannot start build command {command[0]!r}: {error}"
                ) from error

            def _terminate(exc: LeaseLost) -> None:
                logger.error("Stopping build of %s: %s", outcome.package, exc)
                process.terminate()

            keeper = LeaseKeeper(
                self._coordinator,
                outcome.token,
                interval=self._settings.renew_interval,
                max_failures=self._settings.renew_max_failures,
                on_lost=_terminate,
            )
            with keeper:
                returncode = process.wait()

            if keeper.lost:
                self.emit(
                    {
                        "outcome": "error",
                        "package": outcome.package.key,
                        "error": "LeaseLost",
                        "detail": "lease lost while the build was running",
                    }
                )
                return EXIT_ERROR
            if returncode != 0:
                self.emit(
                    {
                        "outcome": "failed",
                        "package": outcome.package.key,
                        "returncode": returncode,
                    }
                )
                return returncode
            completed = True
        finally:
            if not completed:
                self._give_back(outcome.token)
        return self.complete(outcome.token)

    def _give_back(self, token: LeaseToken) -> None:
        try:
            self._coordinator.release(token)
        except LeaseLost as exc:
            logger.info("Lease on %s already gone: %s", token.package, exc)
        except BuildGateError as exc:
            logger.warning(
                "Could not release the lease on %s: %s", token.package, exc
            )

    def consumers(self, package: PackageIdentity) -> int:
        consumers = self._coordinator.consumers_of(package)
        self.emit(
            {
                "package": package.key,
                "consumers": sorted(consumer.key for consumer in consumers),
            }
        )
        return EXIT_OK

    def status(self, package: PackageIdentity, now: float) -> int:
        lease = self._coordinator.registry.get(package)
        payload: Dict[str, Any] = {
            "package": package.key,
            "status": "idle",
            "dependencies": sorted(
                dep.key for dep in self._coordinator.graph.dependencies_of(package)
            ),
            "consumers": sorted(
                consumer.key
                for consumer in self._coordinator.consumers_of(package)
            ),
        }
        if lease is not None:
            payload.update(
                {
                    "status": lease.effective_status(now).value,
                    "job_id": lease.job_id,
                    "acquired_at": lease.acquired_at,
                    "expires_at": lease.expires_at,
                    "waiters": sorted(waiter.key for waiter in lease.waiters),
                }
            )
        self.emit(payload)
        return EXIT_OK

    def _evaluate(
        self, source_root: Optional[Path], wait_attempts: Optional[int]
    ) -> GateOutcome:
        root = source_root or self._platform.source_root()
        job_id = self._settings.job_id or self._platform.current_job_id()
        project_name = None
        if isinstance(self._platform, CodeBuildClient):
            project_name = self._platform.current_project()
        return self._coordinator.evaluate(
            root,
            job_id,
            project_name=project_name,
            wait_attempts=wait_attempts or self._settings.wait_attempts,
            wait_base_delay=self._settings.wait_base_delay,
        )


def build_platform(
    settings: GateSettings,
    graph: GraphStore,
    *,
    session: Any | None = None,
) -> CIPlatformClient:
    if settings.ci_platform == "codebuild":
        from .aws import build_client

        return CodeBuildClient(
            graph, client=build_client("codebuild", session=session)
        )
    if settings.ci_platform == "webhook":
        if not settings.webhook_url:
            raise BuildGateError(
                "BUILDGATE_WEBHOOK_URL is required for the webhook platform"
            )
        return WebhookCIPlatformClient(
            settings.webhook_url, job_id=settings.job_id
        )
    return LocalCIPlatform(job_id=settings.job_id)


def build_app(
    settings: GateSettings,
    *,
    profile: Optional[str] = None,
    out: Optional[TextIO] = None,
) -> BuildGateApp:
    session = None
    needs_aws = (
        settings.graph_table
        or settings.lease_table
        or settings.ci_platform == "codebuild"
    )
    if needs_aws:
        from .aws import build_session

        session = build_session(
            profile or settings.aws_profile, settings.aws_region
        )
    graph = build_graph_store_from_env(settings, session=session)
    registry = build_build_registry_from_env(settings, session=session)
    platform = build_platform(settings, graph, session=session)
    coordinator = GatingCoordinator.from_settings(
        settings, graph, registry, platform
    )
    return BuildGateApp(settings, coordinator, platform, out=out)


def build_arg_parser() -> argparse.ArgumentParser:
    argument_parser = argparse.ArgumentParser(
        prog="buildgate",
        description=(
            "Gate package builds on in-flight consumer builds and trigger "
            "consumers when a build completes."
        ),
    )
    argument_parser.add_argument(
        "--profile",
        help="AWS profile used for DynamoDB and CodeBuild calls.",
    )
    commands = argument_parser.add_subparsers(dest="command", required=True)

    evaluate = commands.add_parser(
        "evaluate", help="Record dependencies and try to take the build lease."
    )
    _add_source_arguments(evaluate)
    evaluate.add_argument(
        "--token-file",
        type=Path,
        help="Write the lease token here when the build may proceed.",
    )

    complete = commands.add_parser(
        "complete", help="Release the lease and trigger consumer builds."
    )
    token_source = complete.add_mutually_exclusive_group(required=True)
    token_source.add_argument("--token", help="Encoded lease token.")
    token_source.add_argument(
        "--token-file", type=Path, help="File holding the lease token."
    )
    complete.add_argument(
        "--no-trigger",
        action="store_true",
        help="Release without starting consumer or waiting builds.",
    )

    run = commands.add_parser(
        "run", help="Evaluate, run a build command under the lease, complete."
    )
    _add_source_arguments(run)
    run.add_argument(
        "build_command",
        nargs=argparse.REMAINDER,
        help="Build command, given after '--'.",
    )

    for name, help_text in (
        ("consumers", "List the recorded consumers of a package."),
        ("status", "Show the lease and graph state of a package."),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument(
            "package", help="Package key, for example rust/core-utils."
        )
    return argument_parser


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--source-root",
        type=Path,
        help="Checkout to analyse; defaults to the CI source directory.",
    )
    parser.add_argument(
        "--wait-attempts",
        type=int,
        help="Gate attempts with backoff before deferring.",
    )


def _read_token(args: argparse.Namespace) -> LeaseToken:
    if args.token_file is not None:
        try:
            raw = args.token_file.read_text(encoding="utf-8")
        except OSError as error:
            raise BuildGateError(
                f"Cannot read lease token file {args.token_file}: {error}"
            ) from error
    else:
        raw = args.token
    try:
        return LeaseToken.decode(raw)
    except ValueError as error:
        raise BuildGateError(str(error)) from error


def _parse_package(raw: str) -> PackageIdentity:
    try:
        return PackageIdentity.parse(raw)
    except ValueError as error:
        raise BuildGateError(str(error)) from error


def _command_argv(raw: List[str]) -> List[str]:
    if raw and raw[0] == "--":
        return raw[1:]
    return raw


def dispatch(app: BuildGateApp, args: argparse.Namespace) -> int:
    if args.command == "evaluate":
        return app.evaluate(args.source_root, args.token_file, args.wait_attempts)
    if args.command == "complete":
        return app.complete(_read_token(args), trigger=not args.no_trigger)
    if args.command == "run":
        return app.run(
            _command_argv(args.build_command),
            args.source_root,
            args.wait_attempts,
        )
    if args.command == "consumers":
        return app.consumers(_parse_package(args.package))
    if args.command == "status":
        return app.status(_parse_package(args.package), time.time())
    raise BuildGateError(f"Unknown command {args.command}")


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    out: Optional[TextIO] = None,
) -> int:
    configure_logging()
    argument_parser = build_arg_parser()
    parsed_args = argument_parser.parse_args(argv)
    stream = out or sys.stdout

    try:
        settings = GateSettings.from_env()
        app = build_app(settings, profile=parsed_args.profile, out=stream)
        return dispatch(app, parsed_args)
    except BuildGateError as error:
        logger.error("%s: %s", error.__class__.__name__, error)
        print(
            to_json_line(
                {
                    "outcome": "error",
                    "error": error.__class__.__name__,
                    "detail": str(error),
                }
            ),
            file=stream,
        )
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
