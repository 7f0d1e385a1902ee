"""Materialize the persisted service configuration file."""
from __future__ import annotations

import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Mapping

from dotenv import dotenv_values

from provisioner.common.logging import json_log, redact_secret
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import InvalidConfiguration, MissingCredential
from provisioner.core.models.provisioning import (
    API_KEY_KEY,
    DEBUG_KEY,
    LOG_LEVEL_KEY,
    URL_KEY,
    ProvisioningConfig,
)

logger = logging.getLogger(__name__)

Prompt = Callable[[str, bool], str]

_PROMPT_LABELS = {
    URL_KEY: "Vector database URL",
    API_KEY_KEY: "Vector database API key",
}
_FILE_MODE = 0o600


def _terminal_prompt(key: str, secret: bool) -> str:
    label = f"{_PROMPT_LABELS.get(key, key)}: "
    if secret:
        return getpass.getpass(label)
    return input(label)


def load(path: Path, *, timeout_seconds: int = 120) -> ProvisioningConfig:
    """Load and validate an existing configuration file without modifying it."""

    if not path.is_file():
        raise InvalidConfiguration(
            f"Configuration file {path} does not exist.",
            hint="Run `provisioner start` to create it.",
        )
    values: Dict[str, str | None] = dict(dotenv_values(path, interpolate=False))
    try:
        return ProvisioningConfig.from_values(values, timeout_seconds=timeout_seconds)
    except MissingCredential as exc:
        raise MissingCredential(
            exc.key,
            f"Configuration file {path} has no value for {exc.key}.",
            hint=f"Edit {path} and set {exc.key}; the file is never overwritten automatically.",
        ) from exc


def _solicit(
    environ: Mapping[str, str],
    prompt: Prompt | None,
) -> Dict[str, str | None]:
    values: Dict[str, str | None] = {
        URL_KEY: environ.get(URL_KEY),
        API_KEY_KEY: environ.get(API_KEY_KEY),
        DEBUG_KEY: environ.get(DEBUG_KEY),
        LOG_LEVEL_KEY: environ.get(LOG_LEVEL_KEY),
    }
    for key in (URL_KEY, API_KEY_KEY):
        if (values[key] or "").strip() or prompt is None:
            continue
        try:
            values[key] = prompt(key, key == API_KEY_KEY)
        except EOFError:
            values[key] = ""
    return values


def _write_new(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, _FILE_MODE)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    os.chmod(path, _FILE_MODE)


def materialize(
    context: ProvisioningContext,
    existing_file: Path | None = None,
    *,
    prompt: Prompt | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProvisioningConfig:
    """Return the deployment configuration, creating the file on first use.

    An existing file is loaded and validated but never rewritten. Otherwise credentials
    come from ``environ`` (the process environment by default) and, for anything still
    missing, from ``prompt`` or an interactive terminal prompt. Empty credentials raise
    :class:`MissingCredential` before anything is written.
    """

    settings = context.settings
    path = existing_file or settings.env_path
    timeout = settings.readiness_timeout_s

    if path.exists():
        config = load(path, timeout_seconds=timeout)
        json_log(
            logger,
            logging.INFO,
            "environment.loaded",
            path=str(path),
            vector_db_url=config.vector_db_url,
            api_key=redact_secret(config.vector_db_api_key.get_secret_value()),
        )
        return config

    if prompt is None and settings.interactive and sys.stdin is not None and sys.stdin.isatty():
        prompt = _terminal_prompt

    values = _solicit(environ if environ is not None else os.environ, prompt)
    config = ProvisioningConfig.from_values(values, timeout_seconds=timeout)

    context.check_cancelled("environment")
    _write_new(path, config.render())
    json_log(
        logger,
        logging.INFO,
        "environment.written",
        path=str(path),
        vector_db_url=config.vector_db_url,
        api_key=redact_secret(config.vector_db_api_key.get_secret_value()),
    )
    return config


__all__ = ["Prompt", "load", "materialize"]
