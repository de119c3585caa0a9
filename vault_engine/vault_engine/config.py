"""Vault engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import dotenv_values
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_VAR = "N8N_ENCRYPTION_KEY"

SAFETY_DIR_NAME = "safety"
REPORT_DIR_NAME = "reports"
# Subdirectories of the backup root that never hold snapshots.
RESERVED_DIR_NAMES = frozenset({SAFETY_DIR_NAME, REPORT_DIR_NAME})


class Settings(BaseSettings):
    """Application settings loaded from environment variables with STACKVAULT_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="STACKVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment label recorded in every manifest.
    env: str = "gcp"
    debug: bool = False

    # Compose project
    compose_dir: Path = Path("docker")
    compose_file: str = "docker-compose.yml"
    app_service: str = "n8n"
    db_service: str = "postgres"

    # Database (inside the db container)
    db_user: str = "n8n"
    db_name: str = "n8n"
    count_tables: list[str] = Field(
        default_factory=lambda: ["workflow_entity", "execution_entity", "credentials_entity"],
    )

    # Storage
    backup_root: Path = Path("/mnt/data/backups")
    data_root: Path = Path("/mnt/data/n8n")
    config_files: list[str] = Field(default_factory=lambda: ["docker-compose.yml", ".env"])
    optional_config_files: list[str] = Field(default_factory=lambda: ["cloudflared/config.yml"])

    # Secret consistency
    encryption_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("STACKVAULT_ENCRYPTION_KEY", ENCRYPTION_KEY_VAR),
    )

    # Readiness probing
    health_url: str = "http://localhost:5678/healthz"
    http_timeout: float = Field(default=5.0, gt=0)
    probe_max_attempts: int = Field(default=30, gt=0)
    probe_interval_seconds: float = Field(default=2.0, gt=0)

    # External commands
    command_timeout_seconds: float = Field(default=3600.0, gt=0)

    # Retention
    retention_days: int = Field(default=30, ge=0)
    incomplete_retention_hours: int = Field(default=72, ge=0)

    # Kubernetes source (migration export)
    kube_namespace: str = "default"
    kube_secret_names: list[str] = Field(default_factory=lambda: ["n8n-secret", "n8n-config", "n8n-env", "n8n"])
    kube_db_user: str = "n8n"
    kube_db_name: str = "n8n"

    # Telemetry
    structured_logging: bool = False

    @field_validator("encryption_key", mode="before")
    @classmethod
    def mask_key_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None or v == "":
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @property
    def compose_path(self) -> Path:
        return self.compose_dir / self.compose_file

    @property
    def compose_env_file(self) -> Path:
        return self.compose_dir / ".env"

    @property
    def lock_dir(self) -> Path:
        return self.backup_root / ".locks"

    @property
    def safety_dir(self) -> Path:
        return self.backup_root / SAFETY_DIR_NAME

    @property
    def report_dir(self) -> Path:
        return self.backup_root / REPORT_DIR_NAME


def read_compose_env_key(env_file: Path) -> str | None:
    """Return ``N8N_ENCRYPTION_KEY`` from a compose ``.env`` file, if present."""
    if not env_file.is_file():
        return None
    value = dotenv_values(env_file).get(ENCRYPTION_KEY_VAR)
    return value or None


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info(
            "Loaded settings for environment %s (compose=%s, backups=%s)",
            settings.env,
            settings.compose_path,
            settings.backup_root,
        )

    return settings
