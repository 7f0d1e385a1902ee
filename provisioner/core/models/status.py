"""Models describing service health as observed by readiness probes."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field

_READY_ALIASES = {"ready", "ok", "healthy"}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class HealthState(str, Enum):
    """Coarse readiness categories."""

    READY = "ready"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class HealthStatus(BaseModel):
    """Result of a single readiness probe. Never persisted."""

    status: HealthState
    version: str = "unknown"
    observed_at: datetime = Field(default_factory=_utcnow)
    raw_status: str | None = None
    detail: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status is HealthState.READY

    @property
    def is_reachable(self) -> bool:
        return self.status is not HealthState.UNREACHABLE

    @classmethod
    def unreachable(cls, detail: str | None = None) -> "HealthStatus":
        return cls(status=HealthState.UNREACHABLE, detail=detail)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "HealthStatus":
        """Interpret a ``/health`` response body.

        The canonical body is ``{"status": ..., "version": ...}``. Older services nest a
        second ``health`` field next to ``status``; when it is present both fields must
        report readiness for the result to be ready.
        """

        raw = str(payload.get("status", "")).strip()
        nested = payload.get("health")
        version = str(payload.get("version") or "unknown")

        ready = raw.lower() in _READY_ALIASES
        detail = None
        if nested is not None:
            nested_text = str(nested).strip()
            detail = f"health={nested_text}"
            ready = ready and nested_text.lower() in _READY_ALIASES
        return cls(
            status=HealthState.READY if ready else HealthState.DEGRADED,
            version=version,
            raw_status=raw or None,
            detail=detail,
        )


class ProbeReport(BaseModel):
    """Summary of a readiness wait."""

    attempts: int = Field(0, ge=0)
    elapsed_s: float = Field(0.0, ge=0)
    final: HealthStatus | None = None
    reachable_attempts: int = Field(0, ge=0)


__all__ = ["HealthState", "HealthStatus", "ProbeReport"]
