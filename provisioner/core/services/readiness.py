"""Readiness polling against the service health endpoint."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import requests

from provisioner.common.logging import json_log
from provisioner.core.exceptions import (
    ProvisioningCancelled,
    ServiceDegraded,
    ServiceUnreachable,
)
from provisioner.core.models.provisioning import ServiceHandle
from provisioner.core.models.status import HealthStatus, ProbeReport

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_S = 5.0
DEFAULT_INTERVAL_S = 5.0
_MIN_PROBE_TIMEOUT_S = 0.1


class ReadinessProber:
    """Poll ``GET /health`` until the service reports ready or the budget runs out.

    Transport failures count as "not yet ready". A reachable but non-ready service is
    remembered so that, when time runs out, the caller receives the last observed
    status instead of an error. Only a window with no successful response at all
    raises :class:`ServiceUnreachable`.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._session = session or requests.Session()
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._sleep = sleep
        self.last_report: ProbeReport | None = None

    def probe(self, endpoint: str, timeout: float | None = None) -> HealthStatus:
        """Issue one bounded-timeout health request."""

        try:
            response = self._session.get(endpoint, timeout=timeout or self._probe_timeout)
        except requests.RequestException as exc:
            return HealthStatus.unreachable(detail=f"{type(exc).__name__}: {exc}")

        if not 200 <= response.status_code < 300:
            return HealthStatus.unreachable(detail=f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            return HealthStatus.unreachable(detail="health body is not JSON")
        if not isinstance(payload, dict):
            return HealthStatus.unreachable(detail="health body is not a JSON object")
        return HealthStatus.from_payload(payload)

    def _wait(self, delay: float, cancel: threading.Event | None) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)
        if cancel is not None and cancel.is_set():
            raise ProvisioningCancelled("Readiness wait cancelled.")

    def await_ready(
        self,
        handle: ServiceHandle | None,
        endpoint: str,
        timeout: float,
        *,
        interval: float = DEFAULT_INTERVAL_S,
        cancel: threading.Event | None = None,
        strict: bool = False,
        hint: str | None = None,
    ) -> HealthStatus:
        if handle is None or not handle.is_set:
            raise ServiceUnreachable(
                "No running service handle; refusing to probe for readiness.",
                hint=hint,
            )

        started = self._clock()
        deadline = started + timeout
        report = ProbeReport()
        self.last_report = report
        last_reachable: HealthStatus | None = None

        while True:
            if cancel is not None and cancel.is_set():
                raise ProvisioningCancelled("Readiness wait cancelled.")

            remaining = deadline - self._clock()
            status = self.probe(endpoint, max(_MIN_PROBE_TIMEOUT_S, min(self._probe_timeout, remaining)))
            report.attempts += 1
            report.final = status
            report.elapsed_s = max(0.0, self._clock() - started)
            json_log(
                logger,
                logging.DEBUG,
                "readiness.probe",
                attempt=report.attempts,
                status=status.status.value,
                detail=status.detail,
            )

            if status.is_ready:
                json_log(
                    logger,
                    logging.INFO,
                    "readiness.ready",
                    attempts=report.attempts,
                    elapsed_s=round(report.elapsed_s, 2),
                    version=status.version,
                )
                return status
            if status.is_reachable:
                last_reachable = status
                report.reachable_attempts += 1

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._wait(min(interval, remaining), cancel)
            # No probe is started once the budget is spent.
            if deadline - self._clock() <= 0:
                break

        if last_reachable is not None:
            report.final = last_reachable
            json_log(
                logger,
                logging.WARNING,
                "readiness.degraded",
                attempts=report.attempts,
                status=last_reachable.raw_status,
                version=last_reachable.version,
            )
            if strict:
                raise ServiceDegraded(last_reachable, hint=hint)
            return last_reachable

        json_log(logger, logging.ERROR, "readiness.unreachable", attempts=report.attempts, endpoint=endpoint)
        raise ServiceUnreachable(
            f"Service at {endpoint} did not respond within {timeout:g}s ({report.attempts} probes).",
            hint=hint,
        )


__all__ = ["ReadinessProber"]
