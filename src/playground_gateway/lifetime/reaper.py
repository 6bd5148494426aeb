"""Out-of-process reaper.

Meant to run from cron (or a systemd timer) independently of the service,
so it keeps working when the service is down, restarting or wedged::

    */5 * * * * playground-reaper

It only trusts what the container runtime reports: a managed container whose
``Created`` timestamp is older than ``ceiling + grace`` is force-removed,
along with its volume. Playground volumes that no container mounts anymore
are removed too. Concurrent runs are safe: anything already gone (or already
being removed) counts as done.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import docker
from docker.errors import DockerException

from playground_gateway.config import PlaygroundSettings
from playground_gateway.logger import setup_logging
from playground_gateway.runtime.docker_runtime import (
    MANAGED_LABEL,
    SESSION_LABEL,
    parse_docker_timestamp,
    remove_container_quietly,
    remove_volume_quietly,
)
from playground_gateway.sessions.models import utcnow

from .policy import LifetimePolicy

logger = logging.getLogger(__name__)

# Volumes are created a moment before their container; never race a create.
VOLUME_MIN_AGE_SECONDS = 120


@dataclass
class ReapReport:
    containers_removed: list[str] = field(default_factory=list)
    volumes_removed: list[str] = field(default_factory=list)
    containers_kept: int = 0
    errors: int = 0

    @property
    def total_removed(self) -> int:
        return len(self.containers_removed) + len(self.volumes_removed)


class Reaper:
    """Removes playground containers and volumes past the hard limit."""

    def __init__(
        self,
        client: docker.DockerClient,
        policy: LifetimePolicy,
        *,
        container_prefix: str,
        volume_prefix: str,
        max_age_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        dry_run: bool = False,
    ):
        self.client = client
        self.policy = policy
        self.container_prefix = container_prefix
        self.volume_prefix = volume_prefix
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else policy.hard_limit_seconds
        )
        self.clock = clock
        self.dry_run = dry_run

    def run(self) -> ReapReport:
        report = ReapReport()
        now = self.clock()
        mounted = self._reap_containers(now, report)
        self._reap_volumes(now, mounted, report)
        logger.info(
            "Reaper done%s  containers_removed=%d  volumes_removed=%d  kept=%d  errors=%d",
            " (dry run)" if self.dry_run else "",
            len(report.containers_removed), len(report.volumes_removed),
            report.containers_kept, report.errors,
        )
        return report

    def _reap_containers(self, now: datetime, report: ReapReport) -> set[str]:
        """Remove old containers; return the volumes still mounted by survivors."""
        mounted: set[str] = set()
        containers = self.client.containers.list(
            all=True, filters={"label": MANAGED_LABEL}
        )
        for container in containers:
            name = container.name or ""
            if not name.startswith(self.container_prefix):
                continue
            volumes = [
                m.get("Name") for m in container.attrs.get("Mounts") or []
                if m.get("Type") == "volume" and m.get("Name")
            ]
            try:
                created = parse_docker_timestamp(container.attrs["Created"])
            except (KeyError, ValueError) as exc:
                report.errors += 1
                mounted.update(volumes)
                logger.error("Container %s has no usable creation time: %s", name, exc)
                continue

            age = (now - created).total_seconds()
            if age <= self.max_age_seconds:
                report.containers_kept += 1
                mounted.update(volumes)
                continue

            session_id = (container.labels or {}).get(SESSION_LABEL, "?")
            logger.info(
                "Reaping container %s  session=%s  age=%.0fs  limit=%.0fs",
                name, session_id, age, self.max_age_seconds,
            )
            if self.dry_run:
                report.containers_removed.append(name)
                continue
            try:
                remove_container_quietly(self.client, container.id)
                report.containers_removed.append(name)
            except DockerException as exc:
                report.errors += 1
                mounted.update(volumes)
                logger.error("Failed to remove container %s: %s", name, exc)
        return mounted

    def _reap_volumes(self, now: datetime, mounted: set[str], report: ReapReport) -> None:
        for volume in self.client.volumes.list():
            name = volume.name or ""
            if not name.startswith(self.volume_prefix) or name in mounted:
                continue
            created_at = (volume.attrs or {}).get("CreatedAt")
            if created_at:
                try:
                    age = (now - parse_docker_timestamp(created_at)).total_seconds()
                except ValueError:
                    age = None
                if age is not None and age < VOLUME_MIN_AGE_SECONDS:
                    continue

            logger.info("Reaping orphan volume %s", name)
            if self.dry_run:
                report.volumes_removed.append(name)
                continue
            try:
                if remove_volume_quietly(self.client, name):
                    report.volumes_removed.append(name)
            except DockerException as exc:
                report.errors += 1
                logger.error("Failed to remove volume %s: %s", name, exc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="playground-reaper",
        description="Remove playground containers and volumes older than the lifetime ceiling.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be removed without removing anything",
    )
    parser.add_argument(
        "--max-age",
        type=float,
        default=None,
        help="Override the maximum container age in seconds (default: ceiling + grace)",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: from settings)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = PlaygroundSettings()
    setup_logging(args.log_level or settings.log_level, service_name="playground-reaper")

    try:
        client = docker.from_env()
        client.ping()
    except DockerException as exc:
        logger.error("Docker daemon unreachable, nothing reaped: %s", exc)
        return 1

    reaper = Reaper(
        client,
        LifetimePolicy.from_settings(settings),
        container_prefix=settings.container_prefix,
        volume_prefix=settings.volume_prefix,
        max_age_seconds=args.max_age,
        dry_run=args.dry_run,
    )
    try:
        report = reaper.run()
    except DockerException as exc:
        logger.error("Reaper aborted: %s", exc)
        return 1
    finally:
        client.close()
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
