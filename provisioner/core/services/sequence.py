"""The ordered provisioning sequence: bare host to verified-running service."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import requests

from provisioner.common.logging import json_log
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import ProvisioningCancelled, logs_hint
from provisioner.core.models.provisioning import ProvisioningConfig, ServiceHandle
from provisioner.core.models.status import HealthStatus
from provisioner.core.services import environment
from provisioner.core.services.environment import Prompt
from provisioner.core.services.firewall import FirewallConfigurator, FirewallReport
from provisioner.core.services.installer import DependencyInstaller, InstallReport
from provisioner.core.services.launcher import ServiceLauncher
from provisioner.core.services.readiness import ReadinessProber

logger = logging.getLogger(__name__)

PUBLIC_ADDRESS_URL = "https://ifconfig.me/ip"


@dataclass
class ProvisioningResult:
    config: ProvisioningConfig
    handle: ServiceHandle
    health: HealthStatus
    install: InstallReport | None = None
    firewall: FirewallReport | None = None
    access_url: str | None = None


def public_address(session: requests.Session | None = None, timeout: float = 5.0) -> str | None:
    """Best-effort lookup of the host's public IP address."""

    session = session or requests.Session()
    try:
        response = session.get(PUBLIC_ADDRESS_URL, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        json_log(logger, logging.DEBUG, "provision.public_address_unavailable", error=str(exc))
        return None
    address = response.text.strip()
    return address or None


def start_service(
    context: ProvisioningContext,
    *,
    rebuild: bool = False,
    timeout: float | None = None,
    prompt: Prompt | None = None,
    prober: ReadinessProber | None = None,
) -> tuple[ProvisioningConfig, ServiceHandle, HealthStatus]:
    """Materialize configuration, launch the service and wait for readiness."""

    settings = context.settings
    context.check_cancelled("environment")
    config = environment.materialize(context, prompt=prompt)

    context.check_cancelled("launch")
    handle = ServiceLauncher(context).launch(config, rebuild=rebuild)

    budget = float(timeout or config.timeout_seconds)
    remaining = context.remaining()
    if remaining is not None:
        budget = max(min(budget, remaining), 0.1)

    prober = prober or ReadinessProber(probe_timeout=settings.probe_timeout_s)
    try:
        health = prober.await_ready(
            handle,
            settings.health_url,
            budget,
            interval=settings.probe_interval_s,
            cancel=context.cancel_event,
            hint=logs_hint(settings.project_name),
        )
    except (ProvisioningCancelled, KeyboardInterrupt):
        json_log(
            logger,
            logging.WARNING,
            "provision.cancelled_after_launch",
            project=handle.project_name,
            containers=list(handle.container_ids),
        )
        raise
    return config, handle, health


def provision(
    context: ProvisioningContext,
    *,
    rebuild: bool = False,
    timeout: float | None = None,
    prompt: Prompt | None = None,
    prober: ReadinessProber | None = None,
    lookup_public_address: bool = True,
) -> ProvisioningResult:
    """Run every step in order, aborting on the first fatal error."""

    context.check_cancelled("install")
    install_report = DependencyInstaller(context).ensure()

    # Credentials are validated before the firewall or any container is touched.
    context.check_cancelled("environment")
    environment.materialize(context, prompt=prompt)

    context.check_cancelled("firewall")
    firewall_report = FirewallConfigurator(context).configure()

    config, handle, health = start_service(
        context,
        rebuild=rebuild,
        timeout=timeout,
        prompt=prompt,
        prober=prober,
    )

    access_url = None
    if lookup_public_address:
        address = public_address()
        if address:
            access_url = f"http://{address}:{context.settings.service_port}"

    json_log(
        logger,
        logging.INFO,
        "provision.complete",
        status=health.status.value,
        version=health.version,
        access_url=access_url,
    )
    return ProvisioningResult(
        config=config,
        handle=handle,
        health=health,
        install=install_report,
        firewall=firewall_report,
        access_url=access_url,
    )


__all__ = ["PUBLIC_ADDRESS_URL", "ProvisioningResult", "provision", "public_address", "start_service"]
