from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_BACKUP_DIR = "/root/sensio-backup-db"
DEFAULT_RETENTION_DAYS = 7
DEFAULT_SCHEDULE = "0 * * * *"


class ConfigurationError(Exception):
    """Raised when the backup configuration is missing or unusable."""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Object storage ----------------------------------------------------------


class StorageConfig(_Frozen):
    bucket: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    folder: str = "mongodb-backups"

    @property
    def enabled(self) -> bool:
        return bool(self.bucket and self.access_key_id and self.secret_access_key)


# --- Mail relay --------------------------------------------------------------


class MailConfig(_Frozen):
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    recipient: Optional[str] = None
    start_tls: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.recipient)


# --- Dump/restore tools ------------------------------------------------------


class ToolsConfig(_Frozen):
    mongodump: str = "mongodump"
    mongorestore: str = "mongorestore"
    parallel_collections: int = Field(default=4, ge=1)


# --- Scheduler ---------------------------------------------------------------


class SchedulerConfig(_Frozen):
    cron: str = DEFAULT_SCHEDULE
    timezone: str = "UTC"

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# --- Root --------------------------------------------------------------------


class BackupConfig(_Frozen):
    source_uri: str
    secondary_uri: Optional[str] = None
    source_db_name: str = "crm_backend"
    backup_dir: Path = Path(DEFAULT_BACKUP_DIR)
    retention_days: int = DEFAULT_RETENTION_DAYS
    storage: StorageConfig = StorageConfig()
    mail: MailConfig = MailConfig()
    tools: ToolsConfig = ToolsConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    @field_validator("source_uri")
    @classmethod
    def _require_source(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Source connection string (MONGO_URI) must be set.")
        return value

    @field_validator("secondary_uri")
    @classmethod
    def _blank_secondary(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @field_validator("backup_dir")
    @classmethod
    def _expand_backup_dir(cls, value: Path) -> Path:
        return value.expanduser()


# Environment key -> (section, field). A section of None means top level.
ENVIRONMENT_KEYS: Dict[str, tuple] = {
    "MONGO_URI": (None, "source_uri"),
    "BACKUP_MONGO_URI": (None, "secondary_uri"),
    "SOURCE_DB_NAME": (None, "source_db_name"),
    "BACKUP_DIR": (None, "backup_dir"),
    "RETENTION_DAYS": (None, "retention_days"),
    "S3_BUCKET": ("storage", "bucket"),
    "S3_ACCESS_KEY_ID": ("storage", "access_key_id"),
    "S3_SECRET_ACCESS_KEY": ("storage", "secret_access_key"),
    "S3_REGION": ("storage", "region"),
    "S3_ENDPOINT_URL": ("storage", "endpoint_url"),
    "S3_FOLDER": ("storage", "folder"),
    "EMAIL_HOST": ("mail", "host"),
    "EMAIL_PORT": ("mail", "port"),
    "EMAIL_USER": ("mail", "user"),
    "EMAIL_PASS": ("mail", "password"),
    "ALERT_EMAIL": ("mail", "recipient"),
    "EMAIL_STARTTLS": ("mail", "start_tls"),
    "MONGODUMP_PATH": ("tools", "mongodump"),
    "MONGORESTORE_PATH": ("tools", "mongorestore"),
    "RESTORE_PARALLEL_COLLECTIONS": ("tools", "parallel_collections"),
    "BACKUP_SCHEDULE": ("scheduler", "cron"),
    "BACKUP_TIMEZONE": ("scheduler", "timezone"),
}


def _apply_environment(raw: Dict[str, Any], environ: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    merged = {key: (dict(value) if isinstance(value, dict) else value) for key, value in raw.items()}
    for env_key, (section, field) in ENVIRONMENT_KEYS.items():
        value = environ.get(env_key)
        if value is None or value == "":
            continue
        if section is None:
            merged[field] = value
        else:
            merged.setdefault(section, {})[field] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return raw


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, Optional[str]]] = None,
    env_file: Optional[Path] = None,
) -> BackupConfig:
    """Build the immutable run configuration.

    Values come from the optional YAML file, then the optional ``.env`` file,
    then the process environment; later sources win.
    """
    raw: Dict[str, Any] = _read_yaml(path) if path else {}

    layered: Dict[str, Optional[str]] = {}
    if env_file and env_file.exists():
        layered.update(dotenv_values(env_file))
    layered.update(os.environ if environ is None else environ)

    data = _apply_environment(raw, layered)
    if not data.get("source_uri"):
        raise ConfigurationError("MONGO_URI is required")

    try:
        return BackupConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
