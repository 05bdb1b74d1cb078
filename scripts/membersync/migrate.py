"""Versioned schema migrations for the target database.

Migrations are the ``NNN_description.sql`` files shipped in the package's
``schema`` directory. Each one is applied in its own transaction together
with the ``schema_migrations`` row that records it, so a failed file leaves
no trace and is retried by the next run.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from scripts.membersync.db import Database
from scripts.membersync.errors import ConfigurationError

logger = logging.getLogger("membersync.migrate")

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

# Serialises concurrent runners (CLI and scheduler) on one database
LOCK_ID = 7_316_214

_FILE_PATTERN = re.compile(r"^(\d+)_(\w+)\.sql$")

MIGRATIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version      INTEGER PRIMARY KEY,
    description  TEXT NOT NULL,
    checksum     TEXT NOT NULL,
    applied_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    path: Path

    @property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


@dataclass(frozen=True)
class MigrationStatus:
    migration: Migration
    applied_at: Optional[datetime] = None
    checksum_matches: bool = True

    @property
    def applied(self) -> bool:
        return self.applied_at is not None


def discover(directory: Path = SCHEMA_DIR) -> list[Migration]:
    """Migration files in version order. Duplicate versions are an error."""
    found: dict[int, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        match = _FILE_PATTERN.match(path.name)
        if not match:
            logger.warning("Ignoring schema file with no version prefix: %s", path.name)
            continue
        version = int(match.group(1))
        if version in found:
            raise ConfigurationError(
                f"duplicate migration version {version}: {found[version].path.name}, {path.name}"
            )
        found[version] = Migration(version, match.group(2).replace("_", " "), path)
    return [found[v] for v in sorted(found)]


def _applied(cur) -> dict[int, tuple[str, datetime]]:
    cur.execute("SELECT version, checksum, applied_at FROM schema_migrations")
    return {version: (checksum, applied_at) for version, checksum, applied_at in cur.fetchall()}


def info(db: Database, directory: Path = SCHEMA_DIR) -> list[MigrationStatus]:
    """Applied and pending state of every known migration."""
    migrations = discover(directory)
    with db.transaction() as cur:
        cur.execute(MIGRATIONS_TABLE_SQL)
        applied = _applied(cur)
    statuses = []
    for migration in migrations:
        if migration.version not in applied:
            statuses.append(MigrationStatus(migration))
            continue
        checksum, applied_at = applied[migration.version]
        statuses.append(MigrationStatus(migration, applied_at, checksum == migration.checksum))
    return statuses


def run(db: Database, directory: Path = SCHEMA_DIR) -> list[Migration]:
    """Apply every pending migration in version order. Returns those applied."""
    done: list[Migration] = []
    for migration in discover(directory):
        with db.transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", (LOCK_ID,))
            cur.execute(MIGRATIONS_TABLE_SQL)
            applied = _applied(cur)
            if migration.version in applied:
                if applied[migration.version][0] != migration.checksum:
                    logger.warning(
                        "Migration %03d changed since it was applied", migration.version
                    )
                continue
            logger.info("Applying migration %03d %s", migration.version, migration.description)
            cur.execute(migration.sql)
            cur.execute(
                "INSERT INTO schema_migrations (version, description, checksum) VALUES (%s, %s, %s)",
                (migration.version, migration.description, migration.checksum),
            )
        done.append(migration)
    logger.info("Migrations complete: %d applied", len(done))
    return done
