"""Operator command line for provisioning and running the vector service."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Callable, Dict, List, Sequence

from provisioner.common.logging import configure_logging, json_log, scoped_run_id
from provisioner.core.config import Settings, get_settings
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    ProvisioningError,
    ServiceUnreachable,
    logs_hint,
)
from provisioner.core.models.status import HealthStatus
from provisioner.core.services import environment
from provisioner.core.services.launcher import ServiceLauncher
from provisioner.core.services.readiness import ReadinessProber
from provisioner.core.services.sequence import provision, start_service

logger = logging.getLogger("provisioner.cli")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioner",
        description="Provision a host and operate the containerized vector service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # First-time setup on a bare VM
  VECTOR_DB_URL=https://db.example.com VECTOR_DB_API_KEY=... provisioner provision

  # Rebuild images and wait up to five minutes for readiness
  provisioner start --rebuild --timeout 300

  # Follow the last 200 log lines
  provisioner logs --follow --tail 200
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Operator command")

    provision_parser = subparsers.add_parser("provision", help="Install dependencies, configure and start")
    start_parser = subparsers.add_parser("start", help="Start the service and wait for readiness")
    for sub in (provision_parser, start_parser):
        sub.add_argument("--rebuild", action="store_true", help="Rebuild images before starting")
        sub.add_argument("--timeout", type=_positive_int, default=None, help="Readiness timeout in seconds")

    subparsers.add_parser("stop", help="Stop and remove the service containers")

    restart_parser = subparsers.add_parser("restart", help="Restart the service and wait for readiness")
    restart_parser.add_argument("--timeout", type=_positive_int, default=None, help="Readiness timeout in seconds")

    status_parser = subparsers.add_parser("status", help="Show containers and service health")
    status_parser.add_argument(
        "--timeout",
        type=_positive_int,
        default=None,
        help="Wait up to this many seconds for readiness instead of probing once",
    )

    logs_parser = subparsers.add_parser("logs", help="Show service logs")
    logs_parser.add_argument("--follow", "-f", action="store_true", help="Stream new log output")
    logs_parser.add_argument("--tail", type=_non_negative_int, default=None, help="Number of lines to show")
    return parser


def _print_health(health: HealthStatus) -> None:
    line = f"health: {health.status.value} (version {health.version})"
    if health.raw_status and health.raw_status != health.status.value:
        line += f" [reported '{health.raw_status}']"
    print(line)


def _finish_readiness(health: HealthStatus, settings: Settings) -> int:
    _print_health(health)
    if not health.is_ready:
        print(
            f"warning: service is reachable but not ready. {logs_hint(settings.project_name)}",
            file=sys.stderr,
        )
    return EXIT_OK


def _prober(settings: Settings) -> ReadinessProber:
    return ReadinessProber(probe_timeout=settings.probe_timeout_s)


def cmd_provision(args: argparse.Namespace, context: ProvisioningContext) -> int:
    result = provision(context, rebuild=args.rebuild, timeout=args.timeout)
    if result.access_url:
        print(f"service available at {result.access_url}")
    return _finish_readiness(result.health, context.settings)


def cmd_start(args: argparse.Namespace, context: ProvisioningContext) -> int:
    _, handle, health = start_service(context, rebuild=args.rebuild, timeout=args.timeout)
    print(f"started project {handle.project_name} ({len(handle.container_ids)} containers)")
    return _finish_readiness(health, context.settings)


def cmd_stop(args: argparse.Namespace, context: ProvisioningContext) -> int:
    ServiceLauncher(context).stop()
    print(f"stopped project {context.settings.project_name}")
    return EXIT_OK


def cmd_restart(args: argparse.Namespace, context: ProvisioningContext) -> int:
    settings = context.settings
    config = environment.load(settings.env_path, timeout_seconds=settings.readiness_timeout_s)
    handle = ServiceLauncher(context).restart(config)
    health = _prober(settings).await_ready(
        handle,
        settings.health_url,
        args.timeout or config.timeout_seconds,
        interval=settings.probe_interval_s,
        cancel=context.cancel_event,
        hint=logs_hint(settings.project_name),
    )
    return _finish_readiness(health, settings)


def cmd_status(args: argparse.Namespace, context: ProvisioningContext) -> int:
    settings = context.settings
    launcher = ServiceLauncher(context)
    print(launcher.ps().rstrip())
    handle = launcher.current_handle()
    if handle is None:
        raise ServiceUnreachable(
            f"Project {settings.project_name} has no running containers.",
            hint="Start it with: provisioner start",
        )
    prober = _prober(settings)
    if args.timeout is not None:
        health = prober.await_ready(
            handle,
            settings.health_url,
            args.timeout,
            interval=settings.probe_interval_s,
            cancel=context.cancel_event,
            hint=logs_hint(settings.project_name),
        )
        return _finish_readiness(health, settings)

    health = prober.probe(settings.health_url)
    _print_health(health)
    if not health.is_reachable:
        raise ServiceUnreachable(
            f"Health endpoint {settings.health_url} is unreachable ({health.detail}).",
            hint=logs_hint(settings.project_name),
        )
    return EXIT_OK


def cmd_logs(args: argparse.Namespace, context: ProvisioningContext) -> int:
    return ServiceLauncher(context).logs(follow=args.follow, tail=args.tail)


COMMANDS: Dict[str, Callable[[argparse.Namespace, ProvisioningContext], int]] = {
    "provision": cmd_provision,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "logs": cmd_logs,
}


def _report_error(exc: ProvisioningError) -> None:
    print(f"error: {exc.message}", file=sys.stderr)
    if exc.hint:
        print(f"hint: {exc.hint}", file=sys.stderr)


def main(argv: Sequence[str] | None = None, *, context: ProvisioningContext | None = None) -> int:
    """CLI entry point; returns the process exit code."""

    args = build_parser().parse_args(list(argv) if argv is not None else None)
    settings = context.settings if context is not None else get_settings()
    configure_logging(logging.DEBUG if args.verbose or settings.debug else settings.log_level)

    context = context or ProvisioningContext.create(settings)
    restore_sigterm = False
    previous_handler: object = None
    if hasattr(signal, "SIGTERM"):
        try:
            previous_handler = signal.signal(signal.SIGTERM, lambda *_: context.cancel())
            restore_sigterm = True
        except ValueError:
            pass

    with scoped_run_id(command=args.command):
        try:
            return COMMANDS[args.command](args, context)
        except ProvisioningError as exc:
            json_log(
                logger,
                logging.ERROR if exc.fatal else logging.WARNING,
                "cli.error",
                error=exc.to_payload(),
            )
            _report_error(exc)
            return exc.exit_code
        except KeyboardInterrupt:
            context.cancel()
            print("interrupted", file=sys.stderr)
            return EXIT_CANCELLED
        except Exception as exc:
            logger.exception("cli.unexpected")
            print(f"error: unexpected failure: {exc}", file=sys.stderr)
            print(f"hint: {logs_hint(settings.project_name)}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            if restore_sigterm:
                signal.signal(signal.SIGTERM, previous_handler)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()


__all__: List[str] = ["build_parser", "main", "run"]
