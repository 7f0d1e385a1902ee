"""Subprocess execution bound to an explicit working directory and privilege policy."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Mapping, Sequence

from provisioner.common.logging import json_log
from provisioner.core.config import Settings
from provisioner.core.exceptions import CommandFailed

logger = logging.getLogger(__name__)


class CommandRunner:
    """Run external tools (package managers, ``ufw``, ``docker``) for the provisioner."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def needs_sudo(self) -> bool:
        policy = self._settings.use_sudo
        if policy == "never":
            return False
        if policy == "always":
            return True
        geteuid = getattr(os, "geteuid", None)
        if geteuid is None or geteuid() == 0:
            return False
        return self.which("sudo") is not None

    def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        check: bool = False,
        capture: bool = True,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute ``argv`` inside ``project_dir``.

        ``env`` entries are layered over the current process environment and are never
        logged. With ``capture=False`` output streams straight to the terminal.
        """

        command = list(argv)
        if privileged and self.needs_sudo():
            command = ["sudo", "-E", *command] if env else ["sudo", *command]

        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)

        json_log(logger, logging.DEBUG, "command.run", argv=command, env_keys=sorted(env or {}))
        try:
            result = subprocess.run(
                command,
                cwd=str(self._settings.project_dir),
                env=merged_env,
                capture_output=capture,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandFailed(command, 127, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandFailed(command, 124, f"timed out after {timeout}s") from exc

        if result.returncode != 0:
            json_log(
                logger,
                logging.DEBUG,
                "command.failed",
                argv=command,
                returncode=result.returncode,
            )
            if check:
                raise CommandFailed(command, result.returncode, result.stderr or "")
        return result


__all__ = ["CommandRunner"]
