"""Idempotent installation of the host tooling the service needs."""
from __future__ import annotations

import getpass
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from provisioner.common.logging import json_log
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import (
    CommandFailed,
    DependencyInstallFailed,
    OptionalDependencyFailed,
)

logger = logging.getLogger(__name__)

_MANAGERS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("apt", ("apt-get", "dpkg")),
    ("dnf", ("dnf",)),
    ("yum", ("yum",)),
    ("apk", ("apk",)),
    ("brew", ("brew",)),
)


@dataclass(frozen=True)
class Dependency:
    """A host tool, how to detect it and which packages provide it."""

    name: str
    packages: Dict[str, Tuple[str, ...]]
    executables: Tuple[str, ...] = ()
    probe: Tuple[str, ...] = ()
    required: bool = True

    def packages_for(self, manager: str) -> Tuple[str, ...]:
        return self.packages.get(manager) or self.packages.get("*", ())


DEFAULT_DEPENDENCIES: Tuple[Dependency, ...] = (
    Dependency(
        name="ca-certificates",
        packages={"*": ("ca-certificates",)},
        probe=("test", "-d", "/etc/ssl/certs"),
    ),
    Dependency(name="curl", packages={"*": ("curl",)}, executables=("curl",)),
    Dependency(
        name="docker",
        packages={
            "apt": ("docker.io",),
            "dnf": ("docker",),
            "yum": ("docker",),
            "apk": ("docker",),
            "brew": ("docker",),
        },
        executables=("docker",),
    ),
    Dependency(
        name="compose",
        packages={
            "apt": ("docker-compose",),
            "dnf": ("docker-compose",),
            "yum": ("docker-compose",),
            "apk": ("docker-cli-compose",),
            "brew": ("docker-compose",),
        },
        executables=("docker-compose",),
        probe=("docker", "compose", "version"),
    ),
    Dependency(name="ufw", packages={"*": ("ufw",)}, executables=("ufw",)),
    Dependency(name="awscli", packages={"*": ("awscli",)}, executables=("aws",), required=False),
    Dependency(name="htop", packages={"*": ("htop",)}, executables=("htop",), required=False),
    Dependency(name="wget", packages={"*": ("wget",)}, executables=("wget",), required=False),
    Dependency(name="jq", packages={"*": ("jq",)}, executables=("jq",), required=False),
)


@dataclass
class InstallReport:
    """Outcome of an installer run."""

    manager: str | None = None
    present: List[str] = field(default_factory=list)
    installed: List[str] = field(default_factory=list)
    optional_failures: List[OptionalDependencyFailed] = field(default_factory=list)
    daemon_started: bool = False


class DependencyInstaller:
    """Install missing packages through the host package manager."""

    def __init__(
        self,
        context: ProvisioningContext,
        dependencies: Sequence[Dependency] | None = None,
    ) -> None:
        self._context = context
        self._runner = context.runner
        self._dependencies = list(dependencies or DEFAULT_DEPENDENCIES)
        if not context.settings.install_optional_tools:
            self._dependencies = [dep for dep in self._dependencies if dep.required]
        self._index_refreshed = False
        self.manager = self._detect_package_manager()

    # ------------------------------------------------------------------
    def _detect_package_manager(self) -> str | None:
        for manager, executables in _MANAGERS:
            if all(self._runner.which(name) for name in executables):
                return manager
        return None

    def is_present(self, dependency: Dependency) -> bool:
        """Presence probe: an executable on PATH or a successful probe command."""

        if any(self._runner.which(name) for name in dependency.executables):
            return True
        if dependency.probe:
            try:
                return self._runner.run(dependency.probe).returncode == 0
            except CommandFailed:
                return False
        return False

    # ------------------------------------------------------------------
    def ensure(self) -> InstallReport:
        """Install whatever is missing and make sure the container daemon runs."""

        report = InstallReport(manager=self.manager)
        for dependency in self._dependencies:
            self._context.check_cancelled(f"install:{dependency.name}")
            if self.is_present(dependency):
                report.present.append(dependency.name)
                continue
            try:
                self._install(dependency)
            except DependencyInstallFailed as exc:
                if dependency.required:
                    raise
                failure = OptionalDependencyFailed(exc.message, hint=exc.hint)
                report.optional_failures.append(failure)
                json_log(
                    logger,
                    logging.WARNING,
                    "install.optional_failed",
                    dependency=dependency.name,
                    error=exc.message,
                )
                continue
            report.installed.append(dependency.name)

        self._context.check_cancelled("install:daemon")
        report.daemon_started = self.ensure_daemon()
        self._ensure_docker_group(report)
        json_log(
            logger,
            logging.INFO,
            "install.complete",
            manager=self.manager,
            present=report.present,
            installed=report.installed,
            optional_failures=[failure.message for failure in report.optional_failures],
        )
        return report

    def _install(self, dependency: Dependency) -> None:
        if self.manager is None:
            raise DependencyInstallFailed(
                f"{dependency.name} is missing and no supported package manager was found.",
                hint="Install it manually, then re-run.",
            )
        packages = dependency.packages_for(self.manager)
        if not packages:
            raise DependencyInstallFailed(f"No {self.manager} package is known for {dependency.name}.")

        json_log(logger, logging.INFO, "install.package", dependency=dependency.name, manager=self.manager)
        try:
            self._refresh_index()
            self._runner.run(self._install_command(packages), privileged=True, check=True)
        except CommandFailed as exc:
            raise DependencyInstallFailed(
                f"Installing {dependency.name} via {self.manager} failed: {exc.message}",
            ) from exc
        if not self.is_present(dependency):
            raise DependencyInstallFailed(f"{dependency.name} is still unavailable after installation.")

    def _refresh_index(self) -> None:
        if self._index_refreshed:
            return
        self._index_refreshed = True
        if self.manager == "apt":
            self._runner.run(["apt-get", "update", "-qq"], privileged=True)
        elif self.manager == "apk":
            self._runner.run(["apk", "update"], privileged=True)

    def _install_command(self, packages: Sequence[str]) -> List[str]:
        if self.manager == "apt":
            return ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", "-qq", *packages]
        if self.manager in {"dnf", "yum"}:
            return [self.manager, "install", "-y", *packages]
        if self.manager == "apk":
            return ["apk", "add", *packages]
        if self.manager == "brew":
            return ["brew", "install", *packages]
        raise DependencyInstallFailed(f"Unsupported package manager {self.manager!r}.")

    # ------------------------------------------------------------------
    def ensure_daemon(self) -> bool:
        """Start the container daemon when it is not active. Returns True if started."""

        if self._runner.which("systemctl") is None:
            return False
        if self._runner.run(["systemctl", "is-active", "--quiet", "docker"]).returncode == 0:
            return False
        try:
            self._runner.run(["systemctl", "enable", "--now", "docker"], privileged=True, check=True)
        except CommandFailed as exc:
            raise DependencyInstallFailed(
                f"Docker daemon could not be started: {exc.message}",
                hint="Check `systemctl status docker` and `journalctl -u docker`.",
            ) from exc
        json_log(logger, logging.INFO, "install.daemon_started", service="docker")
        return True

    def _ensure_docker_group(self, report: InstallReport) -> None:
        user = os.environ.get("SUDO_USER") or getpass.getuser()
        if not user or user == "root":
            return
        groups = self._runner.run(["id", "-nG", user])
        if groups.returncode == 0 and "docker" in groups.stdout.split():
            return
        result = self._runner.run(["usermod", "-aG", "docker", user], privileged=True)
        if result.returncode != 0:
            failure = OptionalDependencyFailed(
                f"Could not add {user} to the docker group.",
                hint=f"Run `sudo usermod -aG docker {user}` manually.",
            )
            report.optional_failures.append(failure)
            json_log(logger, logging.WARNING, "install.docker_group_failed", user=user)


__all__ = ["DEFAULT_DEPENDENCIES", "Dependency", "DependencyInstaller", "InstallReport"]
