"""Command-line entry point for the blue/green release tooling.

Usage:
    python -m src.deployment render --template ecs/task-definition-template.json \\
        --region eu-west-1 --ecr-registry 123456789012.dkr.ecr.eu-west-1.amazonaws.com \\
        --image-tag abc123 --execution-role-arn ... --task-role-arn ...
    python -m src.deployment register --descriptor ecs/task-definition-rendered.json
    python -m src.deployment deploy --service notes --revision-id rev-1 \\
        --blue-target notes-blue --green-target notes-green --smoke-url http://alb/

Exit codes: 0 success, 1 deployment/control-plane failure, 2 usage or render error.
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from src.logging_config import LogFormat, LoggingConfig, LogLevel, configure_logging
from src.settings import Settings, get_settings

from .archive import DeploymentArchive
from .config import DeploymentConfig, DeploymentStatus, ScheduleProfile
from .exceptions import DeploymentError, InvalidTransition, RenderError
from .health import AlarmService, HttpAlarmService, LocalAlarmService
from .memory import (
    InMemoryAlarmService,
    InMemoryArtifactRegistry,
    InMemoryTrafficRouter,
    ManualClock,
)
from .models import Deployment, RenderedDescriptor, TargetPair
from .orchestrator import DeploymentCoordinator
from .registry import ArtifactRegistryClient, HttpArtifactRegistry
from .rendering import render, render_file, task_definition_values
from .router import HttpTrafficRouter

logger = logging.getLogger("notes_release.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

# Flags of the task-definition renderer, in argument order
TASK_DEFINITION_FLAGS = (
    "region",
    "ecr_registry",
    "image_tag",
    "execution_role_arn",
    "task_role_arn",
    "db_username",
    "db_password",
    "db_name",
    "alb_dns_name",
)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="notes-release",
        description="Blue/green release tooling for the notes stack",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format", type=str, default="console",
        choices=["json", "console"],
        help="Log output format (default: console)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_render = sub.add_parser("render", help="Render a deployment descriptor template")
    p_render.add_argument("--template", type=str, required=True, help="Template file")
    p_render.add_argument("--output", type=str, default=None, help="Output file")
    p_render.add_argument(
        "--set", dest="values", action="append", default=[], metavar="KEY=VALUE",
        help="Placeholder value (repeatable)",
    )
    for flag in TASK_DEFINITION_FLAGS:
        p_render.add_argument(f"--{flag.replace('_', '-')}", dest=flag, default="")

    p_register = sub.add_parser("register", help="Register a rendered descriptor")
    p_register.add_argument("--descriptor", type=str, required=True)

    p_deploy = sub.add_parser("deploy", help="Run a blue/green deployment")
    p_deploy.add_argument("--service", type=str, required=True)
    source = p_deploy.add_mutually_exclusive_group(required=True)
    source.add_argument("--revision-id", type=str, help="Already registered revision")
    source.add_argument("--descriptor", type=str, help="Rendered descriptor to register")
    p_deploy.add_argument("--blue-target", type=str, required=True)
    p_deploy.add_argument("--green-target", type=str, required=True)
    p_deploy.add_argument("--smoke-url", type=str, default=None)
    p_deploy.add_argument(
        "--profile", type=str, default=None,
        choices=[p.value for p in ScheduleProfile],
        help="Traffic schedule profile (default: from settings)",
    )
    p_deploy.add_argument(
        "--dry-run", action="store_true", default=False,
        help="Run against in-memory collaborators on a simulated clock",
    )
    return parser.parse_args(argv)


def parse_values(pairs: List[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` pairs; a malformed pair raises ``RenderError``."""
    values = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise RenderError(f"Invalid --set value {pair!r}, expected KEY=VALUE")
        values[key.strip("_")] = value
    return values


def build_values(args: argparse.Namespace) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if any(getattr(args, flag) for flag in TASK_DEFINITION_FLAGS):
        values.update(
            task_definition_values(**{flag: getattr(args, flag) for flag in TASK_DEFINITION_FLAGS})
        )
    values.update(parse_values(args.values))
    return values


def cmd_render(args: argparse.Namespace) -> int:
    try:
        descriptor = render_file(args.template, build_values(args), args.output)
    except RenderError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    print(descriptor.digest)
    return EXIT_OK


def cmd_register(args: argparse.Namespace, settings: Settings) -> int:
    try:
        descriptor = render(Path(args.descriptor).read_text(encoding="utf-8"), {})
    except (OSError, RenderError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    client = ArtifactRegistryClient(
        HttpArtifactRegistry(settings.registry_url, timeout=settings.request_timeout)
    )
    try:
        revision = client.register(descriptor)
    except DeploymentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    print(revision.revision_id)
    return EXIT_OK


def build_alarm_service(settings: Settings) -> AlarmService:
    """Alarm service selected by ``settings.alarm_backend``."""
    if settings.alarm_backend == "http":
        return HttpAlarmService(settings.alarm_url, timeout=settings.request_timeout)
    if settings.alarm_backend == "local":
        return LocalAlarmService()
    raise ValueError(
        f"Unknown alarm backend {settings.alarm_backend!r}, expected 'http' or 'local'"
    )


def build_coordinator(
    args: argparse.Namespace,
    settings: Settings,
    config: DeploymentConfig,
) -> DeploymentCoordinator:
    """Wire a coordinator against HTTP control planes, or in-memory ones for a dry run."""
    archive = DeploymentArchive() if settings.use_database else None
    if args.dry_run:
        return DeploymentCoordinator(
            InMemoryTrafficRouter(),
            InMemoryAlarmService(),
            InMemoryArtifactRegistry(),
            config=config,
            clock=ManualClock(),
            archive=archive,
        )
    return DeploymentCoordinator(
        HttpTrafficRouter(settings.router_url, timeout=settings.request_timeout),
        build_alarm_service(settings),
        HttpArtifactRegistry(settings.registry_url, timeout=settings.request_timeout),
        config=config,
        archive=archive,
    )


def abort_on_signal(coordinator: DeploymentCoordinator, deployment_id: str):
    """Build a SIGINT/SIGTERM handler that aborts ``deployment_id``.

    The abort runs on a helper thread: the handler interrupts the main
    thread, which may be holding the coordinator lock at that moment.
    """

    def _handle_signal(signum, frame):
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, aborting deployment %s", sig_name, deployment_id)
        worker = threading.Thread(
            target=coordinator.abort,
            args=(deployment_id, f"received {sig_name}"),
            name=f"abort-{deployment_id[:8]}",
            daemon=True,
        )
        worker.start()
        return worker

    return _handle_signal


def run_deployment(
    coordinator: DeploymentCoordinator,
    args: argparse.Namespace,
    targets: TargetPair,
    descriptor: Optional[RenderedDescriptor],
) -> Deployment:
    """Create and run one deployment with abort-on-signal installed."""
    coordinator.register_service(args.service, targets)
    deployment = coordinator.create_deployment(
        args.service, descriptor=descriptor, revision_id=args.revision_id
    )
    handler = abort_on_signal(coordinator, deployment.deployment_id)
    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        return coordinator.run(deployment.deployment_id)
    except InvalidTransition:
        # aborted between create and run
        if deployment.is_terminal:
            return deployment
        raise
    finally:
        for sig, previous_handler in previous.items():
            signal.signal(sig, previous_handler)


def cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    config = DeploymentConfig.from_settings(settings)
    if args.smoke_url is not None:
        config = replace(config, smoke_test_url=args.smoke_url)
    if args.dry_run:
        config = replace(config, smoke_test_url="")
    if args.profile:
        config = replace(config, schedule_profile=ScheduleProfile(args.profile))

    descriptor = None
    if args.descriptor:
        try:
            descriptor = render(Path(args.descriptor).read_text(encoding="utf-8"), {})
        except (OSError, RenderError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return EXIT_USAGE

    try:
        targets = TargetPair(args.blue_target, args.green_target)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    try:
        coordinator = build_coordinator(args, settings, config)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    try:
        deployment = run_deployment(coordinator, args, targets, descriptor)
    except DeploymentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        coordinator.close()

    print(f"{deployment.deployment_id} {deployment.status.value}")
    if deployment.status != DeploymentStatus.COMPLETE:
        print(f"error: {deployment.failure_reason}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(
        LoggingConfig(level=LogLevel(args.log_level), format=LogFormat(args.log_format)),
        stream=sys.stderr,
    )
    settings = get_settings()

    if args.command == "render":
        return cmd_render(args)
    if args.command == "register":
        return cmd_register(args, settings)
    return cmd_deploy(args, settings)


if __name__ == "__main__":
    sys.exit(main())
