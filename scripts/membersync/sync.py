"""One relational reconciliation pass: fetch, transform, reconcile, report."""

from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from scripts.membersync import tables
from scripts.membersync.config import SyncConfig
from scripts.membersync.db import Database
from scripts.membersync.models import DateFilter, LeadershipKind
from scripts.membersync.pipeline import DependencyScheduler
from scripts.membersync.reconciler import Reconciler
from scripts.membersync.source import SourceDatabase
from scripts.membersync.stats import SyncReport
from scripts.membersync.transform import LEADERSHIP_TABLES, SourceSnapshot, build_target_rows

logger = logging.getLogger("membersync.sync")

RUN_KIND = "database"

# Source fetches each destination table is built from. A failed fetch
# fails every table derived from it so retain never runs on partial data.
_ALL_LEADERSHIP = tuple(f"leadership:{kind.value}" for kind in LeadershipKind)
TABLE_SOURCES: dict[str, tuple[str, ...]] = {
    tables.REGIONS.name: ("regions",),
    tables.CLUBS.name: ("clubs",),
    tables.STANDING_COMMITTEES.name: ("standing_committees",),
    tables.MEMBERS.name: ("members",),
    tables.BRNS.name: ("members",),
    tables.ADDRESSES.name: ("members", "addresses"),
    tables.USERS.name: ("members",) + _ALL_LEADERSHIP,
    tables.LEADERSHIP_ROLE.name: _ALL_LEADERSHIP,
}
for _kind, _table in LEADERSHIP_TABLES.items():
    TABLE_SOURCES[_table] = (f"leadership:{_kind.value}",)


def fetch_snapshot(
    source: SourceDatabase,
    workers: int = 4,
    date_filter: DateFilter = DateFilter.CURRENT,
) -> tuple[SourceSnapshot, dict[str, str]]:
    """Run the independent source reads concurrently.

    Returns the snapshot and a mapping of failed fetch name -> error.
    """
    fetches: dict[str, Callable[[], Any]] = {
        "regions": source.regions,
        "clubs": source.clubs,
        "standing_committees": source.standing_committees,
        "members": source.members,
    }
    for kind in LeadershipKind:
        fetches[f"leadership:{kind.value}"] = (
            lambda kind=kind: source.leadership(kind, date_filter)
        )

    results: dict[str, Any] = {}
    errors: dict[str, str] = {}
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {name: pool.submit(fn) for name, fn in fetches.items()}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except Exception as exc:
                logger.error("Fetch %s failed: %s", name, exc, exc_info=True)
                errors[name] = str(exc)

    snapshot = SourceSnapshot(
        regions=results.get("regions", []),
        clubs=results.get("clubs", []),
        standing_committees=results.get("standing_committees", []),
        members=results.get("members", []),
        leadership={
            kind: results.get(f"leadership:{kind.value}", []) for kind in LeadershipKind
        },
    )

    if "members" not in errors:
        try:
            snapshot.addresses = source.mailing_addresses(
                m.primary.uid for m in snapshot.members
            )
        except Exception as exc:
            logger.error("Fetch addresses failed: %s", exc, exc_info=True)
            errors["addresses"] = str(exc)

    logger.info(
        "Fetched snapshot: %d regions, %d clubs, %d committees, %d members",
        len(snapshot.regions), len(snapshot.clubs),
        len(snapshot.standing_committees), len(snapshot.members),
    )
    return snapshot, errors


def failed_tables(fetch_errors: dict[str, str]) -> dict[str, str]:
    failed: dict[str, str] = {}
    for table, sources in TABLE_SOURCES.items():
        broken = [s for s in sources if s in fetch_errors]
        if broken:
            failed[table] = f"source fetch failed: {', '.join(broken)}"
    return failed


def run_database_pass(
    config: SyncConfig,
    db: Database,
    source: SourceDatabase,
    stop_event: Optional[threading.Event] = None,
) -> SyncReport:
    """Fetch every entity type and reconcile the relational target."""
    run_id = db.record_run_start(RUN_KIND)
    try:
        snapshot, fetch_errors = fetch_snapshot(source, config.reconcile.fetch_workers)
        rows = build_target_rows(snapshot)

        stage_threshold = config.reconcile.stage_threshold
        scheduler = DependencyScheduler(
            target_for=lambda name: db.table(tables.ALL_TABLES[name], stage_threshold),
            reconciler=Reconciler(config.reconcile.chunk_size),
            stop_event=stop_event,
            max_workers=config.reconcile.fetch_workers,
        )
        report = scheduler.run(rows, failed=failed_tables(fetch_errors))
    except Exception as exc:
        db.record_run_end(
            run_id,
            status="FAILED",
            error_message=f"{exc}\n{traceback.format_exc()}"[:4000],
        )
        logger.error("Database pass failed: %s", exc, extra={"run_id": run_id})
        raise

    status = "SUCCESS" if report.ok else "PARTIAL"
    problems = {**report.failures, **report.skipped}
    db.record_run_end(
        run_id,
        status=status,
        records_upserted=report.total_upserted,
        records_deleted=report.total_deleted,
        report={"entities": report.as_dict(), "failures": report.failures,
                "skipped": report.skipped},
        error_message="; ".join(f"{k}: {v}" for k, v in problems.items())[:1000] or None,
    )
    logger.info(
        "Database pass %s", status.lower(),
        extra={"run_id": run_id, "upserted": report.total_upserted,
               "deleted": report.total_deleted},
    )
    return report
