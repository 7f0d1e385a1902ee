"""Explicit execution context threaded through every provisioning step."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from provisioner.core.config import Settings, get_settings
from provisioner.core.exceptions import ProvisioningCancelled
from provisioner.core.services.runner import CommandRunner


@dataclass
class ProvisioningContext:
    """Settings, command runner and cancellation signal for one invocation."""

    settings: Settings
    runner: CommandRunner
    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: float | None = None
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        runner: CommandRunner | None = None,
        timeout: float | None = None,
    ) -> "ProvisioningContext":
        settings = settings or get_settings()
        context = cls(settings=settings, runner=runner or CommandRunner(settings))
        if timeout is not None:
            context.deadline = context.clock() + timeout
        return context

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and self.clock() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    def check_cancelled(self, step: str) -> None:
        """Raise :class:`ProvisioningCancelled` when the invocation should stop."""

        if self.cancelled:
            raise ProvisioningCancelled(f"Provisioning cancelled before step '{step}'.")


__all__ = ["ProvisioningContext"]
