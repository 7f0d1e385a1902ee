"""Models describing the persisted service configuration and running deployments."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from provisioner.core.exceptions import InvalidConfiguration, MissingCredential

URL_KEY = "VECTOR_DB_URL"
API_KEY_KEY = "VECTOR_DB_API_KEY"
DEBUG_KEY = "DEBUG"
LOG_LEVEL_KEY = "LOG_LEVEL"
REQUIRED_KEYS = (URL_KEY, API_KEY_KEY)

_KNOWN_SCHEMES = {"http", "https", "grpc", "grpcs"}
_BARE_VALUE = re.compile(r"^[A-Za-z0-9_./:@%+=,~?&-]*$")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _quote(value: str) -> str:
    if _BARE_VALUE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_bool(value: object) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise InvalidConfiguration(f"{DEBUG_KEY} must be a boolean, got {value!r}.")


def is_url_shaped(value: str) -> bool:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        return False
    return parsed.scheme.lower() in _KNOWN_SCHEMES or bool(parsed.hostname)


class ProvisioningConfig(BaseModel):
    """Credentials and runtime options injected into the containerized service."""

    model_config = ConfigDict(frozen=True)

    vector_db_url: str = Field(..., min_length=1)
    vector_db_api_key: SecretStr
    timeout_seconds: int = Field(120, ge=1)
    debug: bool | None = None
    log_level: str | None = None

    @field_validator("vector_db_url")
    @classmethod
    def _url_shape(cls, value: str) -> str:
        if not is_url_shaped(value):
            raise ValueError(f"{URL_KEY} is not a URL: {value!r}")
        return value

    @field_validator("vector_db_api_key")
    @classmethod
    def _non_empty_key(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError(f"{API_KEY_KEY} must not be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str | None) -> str | None:
        return value.strip().upper() or None if value is not None else None

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, str | None],
        *,
        timeout_seconds: int = 120,
    ) -> "ProvisioningConfig":
        """Build a config from raw ``KEY=value`` pairs.

        Empty or absent credentials raise :class:`MissingCredential`; values that are
        present but malformed raise :class:`InvalidConfiguration`.
        """

        cleaned = {key: (value or "").strip() for key, value in values.items()}
        for key in REQUIRED_KEYS:
            if not cleaned.get(key):
                raise MissingCredential(key)
        try:
            return cls(
                vector_db_url=cleaned[URL_KEY],
                vector_db_api_key=SecretStr(cleaned[API_KEY_KEY]),
                timeout_seconds=timeout_seconds,
                debug=parse_bool(cleaned.get(DEBUG_KEY)),
                log_level=cleaned.get(LOG_LEVEL_KEY) or None,
            )
        except ValidationError as exc:
            messages = "; ".join(err.get("msg", "") for err in exc.errors())
            raise InvalidConfiguration(f"Configuration is invalid: {messages}") from exc

    def to_env(self) -> Dict[str, str]:
        """Return the runtime environment injected into the service containers."""

        env = {
            URL_KEY: self.vector_db_url,
            API_KEY_KEY: self.vector_db_api_key.get_secret_value(),
        }
        if self.debug is not None:
            env[DEBUG_KEY] = "true" if self.debug else "false"
        if self.log_level:
            env[LOG_LEVEL_KEY] = self.log_level
        return env

    def render(self) -> str:
        """Return the exact text persisted to the configuration file."""

        return "".join(f"{key}={_quote(value)}\n" for key, value in self.to_env().items())


class ServiceHandle(BaseModel):
    """Reference to a compose project and the containers it is running."""

    model_config = ConfigDict(frozen=True)

    project_name: str
    compose_file: Path
    container_ids: tuple[str, ...] = ()
    started_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_set(self) -> bool:
        return bool(self.container_ids)


__all__ = [
    "API_KEY_KEY",
    "DEBUG_KEY",
    "LOG_LEVEL_KEY",
    "REQUIRED_KEYS",
    "URL_KEY",
    "ProvisioningConfig",
    "ServiceHandle",
    "is_url_shaped",
    "parse_bool",
]
