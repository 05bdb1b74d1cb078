"""Configuration via environment variables with cloud-native secret support.

Locally, plain env vars or a .env file are used. Database URLs may be
secret references (see secrets.py).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from scripts.membersync.errors import ConfigurationError
from scripts.membersync.secrets import resolve_database_url, resolve_source_url

DEFAULT_FIELDS_DIR = Path(__file__).parent / "data"


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 2
    max_connections: int = 10


@dataclass(frozen=True)
class SourceConfig:
    url: str
    connect_timeout: int = 10


@dataclass(frozen=True)
class ReconcileConfig:
    chunk_size: int = 1000
    # Retain key sets above this size are staged in a temp table
    stage_threshold: int = 1000
    fetch_workers: int = 4


@dataclass(frozen=True)
class MailchimpConfig:
    timeout: float = 20.0
    retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    upsert_workers: int = 8
    delete_workers: int = 10
    job_concurrency: int = 20
    fields_dir: Path = DEFAULT_FIELDS_DIR


@dataclass(frozen=True)
class SchedulerConfig:
    db_sync_cron: str = "@daily"
    mailchimp_cron: str = "@daily"
    misfire_grace_time: int = 300
    shutdown_grace_seconds: int = 60
    max_retries: int = 3


@dataclass(frozen=True)
class SyncConfig:
    database: DatabaseConfig
    source: SourceConfig
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    mailchimp: MailchimpConfig = field(default_factory=MailchimpConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def load_config() -> SyncConfig:
    """Load configuration from environment variables (and .env if present)."""
    load_dotenv()

    database = DatabaseConfig(
        url=resolve_database_url(),
        min_connections=_int_env("DB_MIN_CONNECTIONS", 2, minimum=1),
        max_connections=_int_env("DB_MAX_CONNECTIONS", 10, minimum=1),
    )
    source = SourceConfig(
        url=resolve_source_url(),
        connect_timeout=_int_env("SOURCE_DB_CONNECT_TIMEOUT", 10, minimum=1),
    )
    reconcile = ReconcileConfig(
        chunk_size=_int_env("SYNC_CHUNK_SIZE", 1000, minimum=1),
        stage_threshold=_int_env("SYNC_STAGE_THRESHOLD", 1000, minimum=1),
        fetch_workers=_int_env("SYNC_FETCH_WORKERS", 4, minimum=1),
    )
    fields_dir = os.environ.get("MAILCHIMP_FIELDS_DIR")
    mailchimp = MailchimpConfig(
        timeout=_float_env("MAILCHIMP_TIMEOUT", 20.0),
        retries=_int_env("MAILCHIMP_RETRIES", 3),
        base_delay=_float_env("MAILCHIMP_RETRY_BASE_DELAY", 1.0),
        max_delay=_float_env("MAILCHIMP_RETRY_MAX_DELAY", 30.0),
        upsert_workers=_int_env("MAILCHIMP_UPSERT_WORKERS", 8, minimum=1),
        delete_workers=_int_env("MAILCHIMP_DELETE_WORKERS", 10, minimum=1),
        job_concurrency=_int_env("MAILCHIMP_JOB_CONCURRENCY", 20, minimum=1),
        fields_dir=Path(fields_dir) if fields_dir else DEFAULT_FIELDS_DIR,
    )
    scheduler = SchedulerConfig(
        db_sync_cron=os.environ.get("DB_SYNC_CRON", "@daily"),
        mailchimp_cron=os.environ.get("MAILCHIMP_CRON", "@daily"),
        misfire_grace_time=_int_env("SCHEDULER_MISFIRE_GRACE", 300),
        shutdown_grace_seconds=_int_env("SCHEDULER_SHUTDOWN_GRACE", 60),
        max_retries=_int_env("SCHEDULER_MAX_RETRIES", 3),
    )

    if database.min_connections > database.max_connections:
        raise ConfigurationError("DB_MIN_CONNECTIONS exceeds DB_MAX_CONNECTIONS")

    return SyncConfig(
        database=database,
        source=source,
        reconcile=reconcile,
        mailchimp=mailchimp,
        scheduler=scheduler,
    )
