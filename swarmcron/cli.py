"""Command-line entry point."""

from __future__ import annotations

import argparse
import logging
import signal
from pathlib import Path
from types import FrameType
from typing import List, Optional

import docker
from docker.errors import DockerException

from . import __version__
from .config import Settings, load_settings
from .directory import ServiceDirectory
from .engine import Engine
from .errors import ConfigError, StreamFailure, SwarmCronError, TransientClusterError
from .labels import parse_labels
from .logs import LOGGER_NAME, setup_logging
from .scheduler import TriggerScheduler

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_PREVIEW_COUNT = 5


def connect() -> docker.DockerClient:
    try:
        return docker.from_env()
    except DockerException as exc:
        raise TransientClusterError(f"Cannot create Docker client: {exc}") from exc


def command_daemon(settings: Settings) -> int:
    logger.info("Starting swarmcron v%s (tz=%s)", __version__, settings.timezone_name)
    client = connect()
    engine = Engine(settings, client)

    def handle_signal(signum: int, _frame: Optional[FrameType]) -> None:
        logger.info("Received %s", signal.Signals(signum).name)
        engine.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        engine.bootstrap()
        engine.start()
        engine.run_forever()
    except StreamFailure as exc:
        logger.critical("Event channel failed: %s", exc)
        return 1
    finally:
        engine.shutdown()
        client.close()
    return 0


def command_validate(directory: ServiceDirectory) -> int:
    services = directory.list_scheduled()
    invalid = 0
    enabled = 0
    print(f"Scheduled services: {len(services)}")
    for service in sorted(services, key=lambda item: item.name):
        try:
            config = parse_labels(service.labels)
        except ConfigError as exc:
            invalid += 1
            print(f"- {service.name}: invalid ({exc})")
            continue
        if not config.enabled:
            print(f"- {service.name}: disabled")
            continue
        enabled += 1
        timeout = config.monitoring_timeout.total_seconds() if config.monitoring_timeout else None
        print(
            f"- {service.name}: {config.schedule} | skip_running={config.skip_running}"
            f" | replicas={config.replicas}"
            + (f" | monitoring_timeout={timeout:g}s" if timeout is not None else "")
        )
    print(f"Enabled services: {enabled}")
    print(f"Invalid services: {invalid}")
    return 1 if invalid else 0


def command_preview(
    directory: ServiceDirectory,
    settings: Settings,
    service_name: Optional[str],
    count: int,
) -> int:
    scheduler = TriggerScheduler(tz=settings.timezone)
    services = directory.list_scheduled()
    if service_name:
        services = [service for service in services if service.name == service_name]
        if not services:
            raise SwarmCronError(f'Unknown scheduled service "{service_name}".')

    for service in sorted(services, key=lambda item: item.name):
        print("=" * 80)
        try:
            config = parse_labels(service.labels)
        except ConfigError as exc:
            print(f"Service: {service.name} (invalid)")
            print(str(exc))
            continue
        print(f"Service: {service.name} (enabled={config.enabled})")
        if not config.enabled:
            continue
        print(f"Schedule: {config.schedule} ({settings.timezone_name})")
        print(f"Next {count} run(s):")
        for run_dt in scheduler.next_fire_times(config.schedule, count):
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="swarmcron",
        description="Wake up Docker Swarm services on cron schedules declared in service labels",
    )
    parser.add_argument("--config", help="Path to an optional YAML settings file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("daemon", help="Run the scheduler daemon (default)")
    subparsers.add_parser("validate", help="Validate the labels of scheduled services")

    preview_parser = subparsers.add_parser("preview", help="Show next fire times of scheduled services")
    preview_parser.add_argument("--service", help="Preview a single service by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    command = args.command or "daemon"

    try:
        settings = load_settings(Path(args.config).resolve() if args.config else None)
    except ConfigError as exc:
        setup_logging()
        logger.error(str(exc))
        return 1
    setup_logging(settings.logging_level, settings.log_json, settings.log_file)

    try:
        if command == "daemon":
            return command_daemon(settings)
        if command == "validate":
            return command_validate(ServiceDirectory(connect()))
        if command == "preview":
            if args.count <= 0:
                raise SwarmCronError("--count must be >= 1")
            return command_preview(ServiceDirectory(connect()), settings, args.service, args.count)
        raise SwarmCronError(f"Unsupported command: {command}")
    except SwarmCronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
