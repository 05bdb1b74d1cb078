"""Target database helpers: connection pool, table reconciliation, run tracking."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Collection, Generator, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.membersync.config import DatabaseConfig
from scripts.membersync.reconciler import ReconcileTarget
from scripts.membersync.tables import Row, TableSpec

logger = logging.getLogger("membersync.db")

DEFAULT_STAGE_THRESHOLD = 1000


class Database:
    """Thin wrapper around a ThreadedConnectionPool."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def table(self, spec: TableSpec, stage_threshold: int = DEFAULT_STAGE_THRESHOLD) -> "TableTarget":
        return TableTarget(self, spec, stage_threshold)

    # ------------------------------------------------------------------
    # Sync run tracking
    # ------------------------------------------------------------------

    def record_run_start(
        self, kind: str, target: Optional[str] = None, metadata: Optional[dict] = None
    ) -> str:
        """Insert a sync_runs row with status RUNNING. Returns the run id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO sync_runs (id, kind, target, status, run_metadata)
                   VALUES (%s, %s, %s, 'RUNNING', %s)""",
                (run_id, kind, target, psycopg2.extras.Json(metadata or {})),
            )
        return run_id

    def record_run_end(
        self,
        run_id: str,
        status: str,
        records_upserted: int = 0,
        records_deleted: int = 0,
        report: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Finalise a sync_runs row."""
        with self.transaction() as cur:
            cur.execute(
                """UPDATE sync_runs
                   SET status = %s,
                       finished_at = NOW(),
                       records_upserted = %s,
                       records_deleted = %s,
                       report = %s,
                       error_message = %s
                   WHERE id = %s""",
                (
                    status,
                    records_upserted,
                    records_deleted,
                    psycopg2.extras.Json(report) if report else None,
                    error_message,
                    run_id,
                ),
            )

    def get_recent_runs(self, kind: Optional[str] = None, limit: int = 10) -> list[dict[str, Any]]:
        """Fetch recent sync runs for status display."""
        with self.transaction() as cur:
            if kind:
                cur.execute(
                    """SELECT id, kind, target, status, started_at, finished_at,
                              records_upserted, records_deleted, error_message
                       FROM sync_runs WHERE kind = %s
                       ORDER BY started_at DESC LIMIT %s""",
                    (kind, limit),
                )
            else:
                cur.execute(
                    """SELECT id, kind, target, status, started_at, finished_at,
                              records_upserted, records_deleted, error_message
                       FROM sync_runs
                       ORDER BY started_at DESC LIMIT %s""",
                    (limit,),
                )
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, row)) for row in cur.fetchall()]


class TableTarget(ReconcileTarget):
    """A destination table reconciled by natural key.

    Table and column names come from static TableSpec definitions only.
    """

    def __init__(self, db: Database, spec: TableSpec, stage_threshold: int = DEFAULT_STAGE_THRESHOLD) -> None:
        self._db = db
        self.spec = spec
        self.name = spec.name
        self.stage_threshold = stage_threshold

    def key_of(self, row: Row) -> tuple:
        return self.spec.key_of(row)

    def upsert_sql(self) -> str:
        spec = self.spec
        col_list = ", ".join(spec.columns)
        conflict_list = ", ".join(spec.key_columns)
        # Key-only tables still touch the row so it is counted as affected
        update_columns = spec.update_columns or spec.key_columns[:1]
        set_clauses = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_columns)
        return (
            f"INSERT INTO {spec.name} ({col_list}) VALUES %s "
            f"ON CONFLICT ({conflict_list}) DO UPDATE SET {set_clauses}"
        )

    def upsert_rows(self, rows: Sequence[Row]) -> int:
        """Write one chunk as a single statement in its own transaction."""
        if not rows:
            return 0
        values = [self.spec.values(row) for row in rows]
        with self._db.transaction() as cur:
            # One page per chunk so rowcount covers the whole chunk
            psycopg2.extras.execute_values(cur, self.upsert_sql(), values, page_size=len(values))
            return cur.rowcount

    def retain_keys(self, keys: Collection[tuple]) -> int:
        """Delete rows whose key is absent, in one transaction."""
        if not keys:
            return 0
        with self._db.transaction() as cur:
            if len(keys) > self.stage_threshold:
                return self._retain_staged(cur, keys)
            key_list = ", ".join(self.spec.key_columns)
            cur.execute(
                f"DELETE FROM {self.spec.name} WHERE ({key_list}) NOT IN %s",
                (tuple(keys),),
            )
            return cur.rowcount

    def _retain_staged(self, cur, keys: Collection[tuple]) -> int:
        spec = self.spec
        temp = f"_keep_{spec.name}"
        key_list = ", ".join(spec.key_columns)
        cur.execute(
            f"CREATE TEMPORARY TABLE {temp} ON COMMIT DROP AS "
            f"SELECT {key_list} FROM {spec.name} WITH NO DATA"
        )
        psycopg2.extras.execute_values(
            cur,
            f"INSERT INTO {temp} ({key_list}) VALUES %s",
            list(keys),
            page_size=DEFAULT_STAGE_THRESHOLD,
        )
        match = " AND ".join(f"k.{c} = t.{c}" for c in spec.key_columns)
        cur.execute(
            f"DELETE FROM {spec.name} t "
            f"WHERE NOT EXISTS (SELECT 1 FROM {temp} k WHERE {match})"
        )
        logger.debug("Staged %d keys for %s retain", len(keys), spec.name)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Diagnostic reads
    # ------------------------------------------------------------------

    def all(self) -> list[dict[str, Any]]:
        with self._db.transaction() as cur:
            cur.execute(f"SELECT {', '.join(self.spec.columns)} FROM {self.spec.name}")
            return [dict(zip(self.spec.columns, row)) for row in cur.fetchall()]

    def by_key(self, key: tuple) -> Optional[dict[str, Any]]:
        where = " AND ".join(f"{c} = %s" for c in self.spec.key_columns)
        with self._db.transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(self.spec.columns)} FROM {self.spec.name} WHERE {where}",
                tuple(key),
            )
            row = cur.fetchone()
        return dict(zip(self.spec.columns, row)) if row else None
