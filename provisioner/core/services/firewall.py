"""Firewall allow-list management through ``ufw``."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Set

from provisioner.common.logging import json_log
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import (
    CommandFailed,
    FirewallConfigFailed,
    ProvisioningCancelled,
)

logger = logging.getLogger(__name__)

WEB_PORTS = (80, 443)


@dataclass(frozen=True)
class PortRule:
    port: int
    protocol: str = "tcp"
    baseline: bool = True

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.protocol}"


@dataclass
class FirewallReport:
    added: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    warnings: List[FirewallConfigFailed] = field(default_factory=list)
    enabled: bool = False


def planned_rules(context: ProvisioningContext) -> List[PortRule]:
    """Return the allow-list in application order: admin, service, then web ports."""

    settings = context.settings
    rules = [PortRule(settings.admin_port), PortRule(settings.service_port)]
    if settings.open_web_ports:
        for port in WEB_PORTS:
            if port not in {settings.admin_port, settings.service_port}:
                rules.append(PortRule(port, baseline=False))
    return rules


class FirewallConfigurator:
    """Open the minimal port set and enable enforcement without locking out SSH."""

    def __init__(self, context: ProvisioningContext) -> None:
        self._context = context
        self._runner = context.runner

    def _ufw(self, *args: str, check: bool = True) -> str:
        result = self._runner.run(["ufw", *args], privileged=True, check=check)
        return result.stdout or ""

    def existing_rules(self) -> Set[str]:
        """Rules already added, whether or not enforcement is active."""

        rules: Set[str] = set()
        for line in self._ufw("show", "added").splitlines():
            parts = line.split()
            if len(parts) == 3 and parts[:2] == ["ufw", "allow"]:
                rules.add(parts[2])
        return rules

    def is_enabled(self) -> bool:
        for line in self._ufw("status").splitlines():
            if line.lower().startswith("status:"):
                return line.split(":", 1)[1].strip().lower() == "active"
        return False

    def configure(self) -> FirewallReport:
        if self._runner.which("ufw") is None:
            raise FirewallConfigFailed(
                "ufw is not installed; the baseline access port cannot be guaranteed.",
                hint="Install ufw (re-run `provisioner provision`) or configure the firewall manually.",
            )

        report = FirewallReport()
        try:
            self._apply(report)
        except (FirewallConfigFailed, ProvisioningCancelled, KeyboardInterrupt):
            if not report.enabled:
                self._rollback(report)
            raise

        json_log(
            logger,
            logging.INFO,
            "firewall.configured",
            added=report.added,
            existing=report.existing,
            enabled=report.enabled,
            warnings=[warning.message for warning in report.warnings],
        )
        return report

    def _apply(self, report: FirewallReport) -> None:
        try:
            current = self.existing_rules()
            already_enabled = self.is_enabled()
        except CommandFailed as exc:
            raise FirewallConfigFailed(f"Unable to read firewall state: {exc.message}") from exc

        for rule in planned_rules(self._context):
            self._context.check_cancelled(f"firewall:{rule.spec}")
            if rule.spec in current:
                report.existing.append(rule.spec)
                continue
            try:
                self._ufw("allow", rule.spec)
            except CommandFailed as exc:
                error = FirewallConfigFailed(
                    f"Could not allow {rule.spec}: {exc.message}",
                    fatal=rule.baseline,
                )
                if rule.baseline:
                    raise error from exc
                report.warnings.append(error)
                json_log(logger, logging.WARNING, "firewall.optional_rule_failed", rule=rule.spec)
                continue
            current.add(rule.spec)
            report.added.append(rule.spec)

        if already_enabled:
            report.enabled = True
            return
        self._context.check_cancelled("firewall:enable")
        try:
            self._ufw("--force", "enable")
        except CommandFailed as exc:
            raise FirewallConfigFailed(f"Could not enable the firewall: {exc.message}") from exc
        report.enabled = True

    def _rollback(self, report: FirewallReport) -> None:
        for spec in reversed(report.added):
            result = self._runner.run(["ufw", "delete", "allow", spec], privileged=True)
            if result.returncode != 0:
                json_log(logger, logging.WARNING, "firewall.rollback_failed", rule=spec)
        if report.added:
            json_log(logger, logging.INFO, "firewall.rolled_back", rules=list(reversed(report.added)))
        report.added.clear()


def configure(context: ProvisioningContext) -> FirewallReport:
    return FirewallConfigurator(context).configure()


__all__ = ["FirewallConfigurator", "FirewallReport", "PortRule", "configure", "planned_rules"]
