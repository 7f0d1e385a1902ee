"""Start, stop and inspect the containerized service through docker compose."""
from __future__ import annotations

import logging
from typing import List

from provisioner.common.logging import json_log
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import CommandFailed, ServiceLaunchFailed, logs_hint
from provisioner.core.models.provisioning import ProvisioningConfig, ServiceHandle

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 5


def _tail(text: str, lines: int = _STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class ServiceLauncher:
    """Owns the compose project that runs the service."""

    def __init__(self, context: ProvisioningContext) -> None:
        self._context = context
        self._runner = context.runner
        self._settings = context.settings
        self._compose: List[str] | None = None

    def compose_command(self) -> List[str]:
        """Prefer the ``docker compose`` plugin, falling back to legacy ``docker-compose``."""

        if self._compose is not None:
            return self._compose
        if self._runner.which("docker") is not None:
            try:
                if self._runner.run(["docker", "compose", "version"]).returncode == 0:
                    self._compose = ["docker", "compose"]
                    return self._compose
            except CommandFailed:
                pass
        if self._runner.which("docker-compose") is not None:
            self._compose = ["docker-compose"]
            return self._compose
        raise ServiceLaunchFailed(
            "Neither `docker compose` nor `docker-compose` is available.",
            hint="Run `provisioner provision` to install the container tooling.",
        )

    def _base(self) -> List[str]:
        return [
            *self.compose_command(),
            "-p",
            self._settings.project_name,
            "-f",
            str(self._settings.compose_path),
        ]

    def _handle(self, container_ids: List[str]) -> ServiceHandle:
        return ServiceHandle(
            project_name=self._settings.project_name,
            compose_file=self._settings.compose_path,
            container_ids=tuple(container_ids),
        )

    def container_ids(self) -> List[str]:
        result = self._runner.run([*self._base(), "ps", "-q"])
        if result.returncode != 0:
            return []
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    # ------------------------------------------------------------------
    def launch(self, config: ProvisioningConfig, rebuild: bool = False) -> ServiceHandle:
        """Bring the service up detached. Readiness is not implied."""

        compose_path = self._settings.compose_path
        if not compose_path.is_file():
            raise ServiceLaunchFailed(
                f"Compose file {compose_path} does not exist.",
                hint="Set PROVISION_PROJECT_DIR / PROVISION_COMPOSE_FILE to the service definition.",
            )
        self._context.check_cancelled("launch")

        argv = [*self._base(), "up", "-d"]
        if rebuild:
            argv.append("--build")
        json_log(
            logger,
            logging.INFO,
            "service.launching",
            project=self._settings.project_name,
            compose_file=str(compose_path),
            rebuild=rebuild,
        )
        result = self._runner.run(argv, env=config.to_env())
        if result.returncode != 0:
            raise ServiceLaunchFailed(
                f"docker compose up failed with status {result.returncode}: {_tail(result.stderr or '')}",
                hint=logs_hint(self._settings.project_name),
            )

        handle = self._handle(self.container_ids())
        if not handle.is_set:
            raise ServiceLaunchFailed(
                "docker compose reported success but no containers are running.",
                hint=logs_hint(self._settings.project_name),
            )
        json_log(
            logger,
            logging.INFO,
            "service.launched",
            project=handle.project_name,
            containers=list(handle.container_ids),
        )
        return handle

    def current_handle(self) -> ServiceHandle | None:
        """Return a handle for the running project, or None when nothing runs."""

        ids = self.container_ids()
        if not ids:
            return None
        return self._handle(ids)

    def stop(self) -> None:
        try:
            self._runner.run([*self._base(), "down"], check=True)
        except CommandFailed as exc:
            raise ServiceLaunchFailed(f"Stopping the service failed: {exc.message}") from exc
        json_log(logger, logging.INFO, "service.stopped", project=self._settings.project_name)

    def restart(self, config: ProvisioningConfig) -> ServiceHandle:
        """Restart running containers, or bring the project up if nothing is running."""

        if self.current_handle() is None:
            return self.launch(config)
        result = self._runner.run([*self._base(), "restart"], env=config.to_env())
        if result.returncode != 0:
            raise ServiceLaunchFailed(
                f"docker compose restart failed: {_tail(result.stderr or '')}",
                hint=logs_hint(self._settings.project_name),
            )
        handle = self.current_handle()
        if handle is None:
            raise ServiceLaunchFailed(
                "No containers are running after restart.",
                hint=logs_hint(self._settings.project_name),
            )
        json_log(logger, logging.INFO, "service.restarted", project=handle.project_name)
        return handle

    def ps(self) -> str:
        result = self._runner.run([*self._base(), "ps"])
        return result.stdout or ""

    def logs(self, follow: bool = False, tail: int | None = None) -> int:
        """Stream container logs to the terminal and return the compose exit code."""

        argv = [*self._base(), "logs"]
        if follow:
            argv.append("--follow")
        if tail is not None:
            argv.extend(["--tail", str(tail)])
        return self._runner.run(argv, capture=False).returncode


__all__ = ["ServiceLauncher"]
