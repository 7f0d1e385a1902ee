"""Provisioner configuration settings."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central provisioner configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROVISION_",
        env_file="provisioner.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    project_dir: Path = Field(default=Path("."), description="Directory holding the compose definition")
    compose_file: str = Field("docker-compose.yml", description="Compose file, relative to project_dir")
    project_name: str = Field("vector-service", min_length=1, description="Compose project name")
    env_file: str = Field(".env", description="Persisted service configuration file")

    service_port: int = Field(8000, ge=1, le=65535, description="Port the service listens on")
    admin_port: int = Field(22, ge=1, le=65535, description="Administrative access (SSH) port")
    open_web_ports: bool = Field(True, description="Also allow 80/tcp and 443/tcp")

    health_host: str = Field("localhost", description="Host used for readiness probes")
    health_path: str = Field("/health", description="Health endpoint path")
    readiness_timeout_s: int = Field(120, ge=1, description="Overall readiness budget")
    probe_interval_s: float = Field(5.0, gt=0, description="Delay between readiness probes")
    probe_timeout_s: float = Field(5.0, gt=0, description="Timeout for a single readiness probe")

    use_sudo: Literal["auto", "always", "never"] = Field("auto", description="Privilege escalation policy")
    interactive: bool = Field(True, description="Allow prompting for missing credentials")
    install_optional_tools: bool = Field(True, description="Install auxiliary tooling such as awscli")

    log_level: str = Field("INFO", description="Root log level")
    debug: bool = Field(False, description="Verbose diagnostics")

    client_max_retries: int = Field(3, ge=1, description="Retry attempts for integration calls")
    client_backoff_s: float = Field(1.0, gt=0, description="Initial backoff for integration retries")
    client_cache_ttl_s: float = Field(300.0, ge=0, description="Lifetime of cached GET responses")
    client_timeout_s: float = Field(30.0, gt=0, description="Timeout for integration requests")
    breaker_failure_threshold: int = Field(5, ge=1, description="Failures before the breaker opens")
    breaker_reset_timeout_s: float = Field(60.0, gt=0, description="Open interval before a trial call")
    client_max_concurrency: int = Field(5, ge=1, description="Cap on simultaneous in-flight requests")

    @field_validator("project_dir", mode="before")
    @classmethod
    def _ensure_path(cls, value: Path | str) -> Path:
        return Path(value)

    @field_validator("health_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def health_url(self) -> str:
        return f"http://{self.health_host}:{self.service_port}{self.health_path}"

    @property
    def compose_path(self) -> Path:
        return self.resolve_path(self.compose_file)

    @property
    def env_path(self) -> Path:
        return self.resolve_path(self.env_file)

    def resolve_path(self, value: str | Path) -> Path:
        """Resolve ``value`` against ``project_dir`` unless it is absolute."""

        path = Path(value)
        if path.is_absolute():
            return path
        return self.project_dir / path


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
