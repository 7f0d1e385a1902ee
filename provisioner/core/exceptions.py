"""Domain-specific exceptions and error payload helpers."""
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Sequence

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from provisioner.core.models.status import HealthStatus

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MISSING_CREDENTIAL = 3
EXIT_CANCELLED = 130


def build_error_payload(error_code: str, message: str, hint: str | None = None) -> Dict[str, str]:
    """Return a standardized error payload."""

    payload: Dict[str, str] = {"error_code": error_code, "message": message}
    if hint:
        payload["hint"] = hint
    return payload


class ProvisioningError(Exception):
    """Base error with standardized payload and process exit code."""

    error_code = "PROVISIONING_ERROR"
    exit_code = EXIT_FAILURE
    fatal = True

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        self.message = message
        self.hint = hint
        super().__init__(message)

    def to_payload(self) -> Dict[str, str]:
        """Return the serialized payload for the error."""

        return build_error_payload(self.error_code, self.message, self.hint)


class MissingCredential(ProvisioningError):
    error_code = "MISSING_CREDENTIAL"
    exit_code = EXIT_MISSING_CREDENTIAL

    def __init__(self, key: str, message: str | None = None, *, hint: str | None = None) -> None:
        self.key = key
        super().__init__(
            message or f"Required credential {key} is empty or missing.",
            hint=hint or f"Export {key} or add it to the configuration file, then re-run.",
        )


class InvalidConfiguration(ProvisioningError):
    error_code = "INVALID_CONFIGURATION"


class CommandFailed(ProvisioningError):
    """A subprocess exited unsuccessfully or could not be started."""

    error_code = "COMMAND_FAILED"

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"`{' '.join(self.argv)}` exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DependencyInstallFailed(ProvisioningError):
    error_code = "DEPENDENCY_INSTALL_FAILED"


class OptionalDependencyFailed(ProvisioningError):
    error_code = "OPTIONAL_DEPENDENCY_FAILED"
    fatal = False


class FirewallConfigFailed(ProvisioningError):
    error_code = "FIREWALL_CONFIG_FAILED"

    def __init__(self, message: str, *, fatal: bool = True, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.fatal = fatal


class ServiceLaunchFailed(ProvisioningError):
    error_code = "SERVICE_LAUNCH_FAILED"


class ServiceUnreachable(ProvisioningError):
    error_code = "SERVICE_UNREACHABLE"


class ServiceDegraded(ProvisioningError):
    """Readiness budget elapsed while the service answered but was not ready."""

    error_code = "SERVICE_DEGRADED"
    fatal = False

    def __init__(self, status: "HealthStatus", *, hint: str | None = None) -> None:
        self.status = status
        super().__init__(
            f"Service is reachable but reported '{status.raw_status or status.status.value}'.",
            hint=hint,
        )


class ProvisioningCancelled(ProvisioningError):
    error_code = "CANCELLED"
    exit_code = EXIT_CANCELLED


class CircuitOpenError(ProvisioningError):
    error_code = "CIRCUIT_OPEN"


def logs_hint(project_name: str) -> str:
    return f"Inspect raw logs with: docker compose -p {project_name} logs --tail 100"


__all__ = [
    "EXIT_CANCELLED",
    "EXIT_FAILURE",
    "EXIT_MISSING_CREDENTIAL",
    "EXIT_OK",
    "CircuitOpenError",
    "CommandFailed",
    "DependencyInstallFailed",
    "FirewallConfigFailed",
    "InvalidConfiguration",
    "MissingCredential",
    "OptionalDependencyFailed",
    "ProvisioningCancelled",
    "ProvisioningError",
    "ServiceDegraded",
    "ServiceLaunchFailed",
    "ServiceUnreachable",
    "build_error_payload",
    "logs_hint",
]
