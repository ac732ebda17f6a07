"""Application configuration for the Dropbox origin server."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LONGPOLL_MIN_SECONDS = 30
LONGPOLL_MAX_SECONDS = 480
RESERVED_PATHS = frozenset({"/", "/robots.txt"})


def env_field(default, *env_names: str):
    if len(env_names) == 1:
        return Field(default, validation_alias=env_names[0])
    return Field(default, validation_alias=AliasChoices(*env_names))


def parse_mime_overrides(value: str | None) -> dict[str, str]:
    """Parse ``ext=type`` pairs separated by commas into an extension map."""

    overrides: dict[str, str] = {}
    if not value:
        return overrides
    for item in value.split(","):
        extension, _, media_type = item.partition("=")
        extension = extension.strip().lower()
        media_type = media_type.strip()
        if not extension or not media_type:
            continue
        if not extension.startswith("."):
            extension = f".{extension}"
        overrides[extension] = media_type
    return overrides


class OriginSettings(BaseSettings):
    """Runtime settings for the origin server and its Dropbox connection."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    access_token: Optional[SecretStr] = env_field(None, "DROPBOX_ACCESS_TOKEN", "ACCESS_TOKEN")
    client_id: Optional[str] = env_field(None, "DROPBOX_CLIENT_ID", "CLIENT_ID")
    client_secret: Optional[SecretStr] = env_field(None, "DROPBOX_CLIENT_SECRET", "CLIENT_SECRET")

    folder: str = env_field("/Public", "DBOX_FOLDER")
    hostname: Optional[str] = env_field(None, "DBOX_HOSTNAME")
    bind_address: str = env_field("0.0.0.0", "DBOX_BIND")
    http_port: int = env_field(8889, "DBOX_HTTP_PORT")
    https_port: int = env_field(443, "DBOX_HTTPS_PORT")
    tls_cert_dir: Path = env_field(Path("/etc/letsencrypt/live"), "DBOX_TLS_CERT_DIR")
    redirect_url: str = env_field("https://github.com/sajal/dboxserver", "DBOX_REDIRECT_URL")

    remote_timeout_seconds: float = env_field(20.0, "DBOX_REMOTE_TIMEOUT")
    longpoll_timeout_seconds: int = env_field(300, "DBOX_LONGPOLL_TIMEOUT")
    watch_error_backoff_seconds: float = env_field(60.0, "DBOX_WATCH_ERROR_BACKOFF")
    max_cache_object_bytes: Optional[int] = env_field(None, "DBOX_MAX_CACHE_OBJECT_BYTES")
    coalesce_fetches: bool = env_field(False, "DBOX_COALESCE_FETCHES")
    mime_overrides_raw: str = env_field("", "DBOX_MIME_OVERRIDES")

    metrics_path: Optional[str] = env_field(None, "DBOX_METRICS_PATH")
    metrics_token: Optional[SecretStr] = env_field(None, "DBOX_METRICS_TOKEN")
    log_level: str = env_field("INFO", "DBOX_LOG_LEVEL")
    log_format: str = env_field("json", "DBOX_LOG_FORMAT")
    otel_exporter_endpoint: Optional[str] = env_field(None, "DBOX_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "DBOX_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "DBOX_OTEL_SAMPLER_RATIO")

    @field_validator("folder", mode="before")
    @classmethod
    def _normalize_folder(cls, value):
        # Dropbox addresses its root as the empty string.
        if value is None:
            return ""
        value = str(value).strip()
        if value and not value.startswith("/"):
            value = f"/{value}"
        return value.rstrip("/")

    @field_validator("hostname", "metrics_path", "client_id", "otel_exporter_endpoint", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return value

    @field_validator("max_cache_object_bytes", mode="before")
    @classmethod
    def _parse_object_limit(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, str):
            value = int(value.strip())
        if value <= 0:
            return None
        return value

    @field_validator("longpoll_timeout_seconds")
    @classmethod
    def _clamp_longpoll(cls, value: int) -> int:
        return max(LONGPOLL_MIN_SECONDS, min(LONGPOLL_MAX_SECONDS, value))

    @field_validator("metrics_path")
    @classmethod
    def _validate_metrics_path(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not value.startswith("/"):
            value = f"/{value}"
        if value in RESERVED_PATHS:
            raise ValueError(f"metrics path {value!r} collides with a reserved path")
        return value

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"json", "console"}:
            raise ValueError("log format must be 'json' or 'console'")
        return normalized

    @property
    def mime_overrides(self) -> dict[str, str]:
        return parse_mime_overrides(self.mime_overrides_raw)

    @property
    def serves_https(self) -> bool:
        return self.hostname is not None
