"""
Configuration — typed, validated settings loaded from YAML, environment and .env.

Uses pydantic-settings to:
  - Load the YAML configuration file (path from CONFIG_PATH)
  - Let environment variables override any value (12-factor app)
  - Fall back to a .env file
  - Validate types and constraints at startup

Designed for Kubernetes deployment: the YAML file is a mounted ConfigMap and
secrets (S3 keys, webhook URL) arrive as environment variables.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var STORAGE__S3__BUCKET maps to storage.s3.bucket, ALERTING__WEBHOOK_URL maps to
alerting.webhook_url, etc.

Load order (highest priority first):
  1. Explicit init arguments
  2. Environment variables
  3. .env file
  4. YAML configuration file
  5. Default values
"""

from __future__ import annotations

import os
import re
import socket
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from crl_trawler.domain.models import CrlSource

log = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path("/config/configuration.yaml")

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

_SOURCE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_config_file: ContextVar[Path | None] = ContextVar("crl_trawler_config_file", default=None)


def config_path() -> Path:
    """The YAML configuration file: CONFIG_PATH, or /config/configuration.yaml."""
    return Path(os.environ.get("CONFIG_PATH", str(DEFAULT_CONFIG_PATH)))


class CrlSourceSettings(BaseModel):
    """
    One CRL distribution point.

    `name` doubles as the artifact file name (`<name>.crl`), so it must be
    safe to use as a path component.
    """

    name: str = Field(description="Unique, filename-safe source name")
    url: str = Field(description="HTTP(S) URL the CRL is published at")
    cert_file_name: str = Field(
        description="Issuer certificate file, relative to ca_directory or absolute",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _SOURCE_NAME.match(value):
            raise ValueError(
                f"CRL source name must contain only letters, digits, '.', '_' or '-': {value!r}"
            )
        return value

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"CRL URL must be http:// or https://, got {value!r}")
        return value


class SchedulerSettings(BaseModel):
    """Polling interval and whether a cycle runs immediately at startup."""

    poll_interval_minutes: int = Field(default=60, ge=1)
    run_on_startup: bool = Field(default=True)


class LocalStorageSettings(BaseModel):
    enabled: bool = Field(default=True)
    directory: Path = Field(default=Path("/data/crls"))
    file_mode: int = Field(default=0o660, ge=0, le=0o777)

    @field_validator("file_mode", mode="before")
    @classmethod
    def parse_octal(cls, value: Any) -> Any:
        """Accept "0660" / "0o660" strings as octal, as written in YAML or env."""
        if isinstance(value, str):
            return int(value.removeprefix("0o"), 8)
        return value


class ObjectStorageSettings(BaseModel):
    """
    S3-compatible object storage (AWS S3, MinIO, IBM COS, ...).

    `endpoint_url` is only needed for non-AWS stores. Static credentials are
    optional; when omitted boto3 uses its default credential chain.
    """

    enabled: bool = Field(default=False)
    bucket: str | None = Field(default=None)
    prefix: str = Field(default="")
    endpoint_url: str | None = Field(default=None)
    region: str | None = Field(default=None)
    access_key_id: str | None = Field(default=None)
    secret_access_key: SecretStr | None = Field(default=None)
    use_ssl: bool = Field(default=True)
    path_style: bool = Field(default=False)

    @model_validator(mode="after")
    def check_required(self) -> ObjectStorageSettings:
        """
        When enabled, require a bucket and a complete key pair (if any key is given).

        Raises ValueError at startup naming every missing field.
        """
        if not self.enabled:
            return self
        missing = []
        if not self.bucket:
            missing.append("STORAGE__S3__BUCKET")
        if self.access_key_id and not self.secret_access_key:
            missing.append("STORAGE__S3__SECRET_ACCESS_KEY")
        if self.secret_access_key and not self.access_key_id:
            missing.append("STORAGE__S3__ACCESS_KEY_ID")
        if missing:
            raise ValueError("Object storage is enabled but missing: " + ", ".join(missing))
        return self


class StorageSettings(BaseModel):
    local: LocalStorageSettings = Field(default_factory=lambda: LocalStorageSettings())
    s3: ObjectStorageSettings = Field(default_factory=lambda: ObjectStorageSettings())


class AlertingSettings(BaseModel):
    """
    Alert webhook (Alertmanager-compatible receiver).

    The label fields are copied verbatim onto every alert.
    """

    enabled: bool = Field(default=False)
    webhook_url: str | None = Field(default=None)
    receiver: str = Field(default="crl-trawler")
    service_id: str = Field(default="")
    team: str = Field(default="")
    cluster: str = Field(default="")
    app: str = Field(default="crl-trawler")
    instance: str = Field(default_factory=socket.gethostname)
    external_url: str = Field(default="")
    queue_size: int = Field(default=100, ge=1)
    timeout_seconds: float = Field(default=10, gt=0)

    @model_validator(mode="after")
    def check_webhook(self) -> AlertingSettings:
        if self.enabled and not self.webhook_url:
            raise ValueError("Alerting is enabled but ALERTING__WEBHOOK_URL is not set")
        return self


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    env_nested_delimiter="__" maps SCHEDULER__POLL_INTERVAL_MINUTES →
    scheduler.poll_interval_minutes, STORAGE__LOCAL__DIRECTORY →
    storage.local.directory, etc.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    sources: list[CrlSourceSettings] = Field(default_factory=list)
    ca_directory: Path = Field(default=Path("/config/ca"))
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())
    storage: StorageSettings = Field(default_factory=lambda: StorageSettings())
    alerting: AlertingSettings = Field(default_factory=lambda: AlertingSettings())

    http_timeout_seconds: int = Field(default=60, ge=1)
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = _config_file.get() or config_path()
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    @field_validator("sources")
    @classmethod
    def validate_unique_names(cls, value: list[CrlSourceSettings]) -> list[CrlSourceSettings]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for source in value:
            if source.name in seen:
                duplicates.add(source.name)
            seen.add(source.name)
        if duplicates:
            raise ValueError(f"Duplicate CRL source names: {', '.join(sorted(duplicates))}")
        return value

    @model_validator(mode="after")
    def check_backends(self) -> AppSettings:
        if not (self.storage.local.enabled or self.storage.s3.enabled):
            raise ValueError("At least one storage backend (local or s3) must be enabled")
        return self

    def crl_sources(self) -> list[CrlSource]:
        """Sources in configuration order, with issuer certificate paths resolved."""
        result = []
        for source in self.sources:
            cert_path = Path(source.cert_file_name)
            if not cert_path.is_absolute():
                cert_path = self.ca_directory / cert_path
            result.append(
                CrlSource(name=source.name, url=source.url, issuer_certificate_path=cert_path)
            )
        return result


def load_settings(path: Path | str | None = None) -> AppSettings:
    """Load settings from `path` (default: CONFIG_PATH) layered under env and .env."""
    token = _config_file.set(Path(path) if path is not None else None)
    try:
        return AppSettings()
    finally:
        _config_file.reset(token)


class SettingsReloader:
    """
    Re-reads the configuration file when its modification time changes.

    An invalid new file is logged and ignored; the previous settings stay in
    effect until a valid file appears.
    """

    def __init__(self, settings: AppSettings, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else config_path()
        self._settings = settings
        self._mtime = self._stat()

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def path(self) -> Path:
        return self._path

    def sources(self) -> list[CrlSource]:
        return self._settings.crl_sources()

    def _stat(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except OSError:
            return None

    def refresh(self) -> bool:
        """Reload if the file changed. Returns True when new settings took effect."""
        mtime = self._stat()
        if mtime is None:
            if self._mtime is not None:
                log.warning("config.file_missing", path=str(self._path))
            self._mtime = None
            return False
        if mtime == self._mtime:
            return False

        self._mtime = mtime
        try:
            new_settings = load_settings(self._path)
        except Exception as e:
            log.error("config.reload_failed", path=str(self._path), error=str(e))
            return False

        self._settings = new_settings
        log.info(
            "config.reloaded",
            path=str(self._path),
            sources=len(new_settings.sources),
            poll_interval_minutes=new_settings.scheduler.poll_interval_minutes,
        )
        return True
