"""CLI entry point: sync, mailchimp, fields, jobs, lists, ping, lookup, migrate, scheduler, status."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Generator, Optional

from scripts.membersync.config import SyncConfig, load_config
from scripts.membersync.db import Database
from scripts.membersync.errors import SyncError
from scripts.membersync.logging_config import configure_logging
from scripts.membersync.secrets import is_secret_reference
from scripts.membersync.source import SourceDatabase
from scripts.membersync.tables import ALL_TABLES

logger = logging.getLogger("membersync.cli")


@contextmanager
def _resources() -> Generator[tuple[SyncConfig, Database, SourceDatabase], None, None]:
    config = load_config()
    db = Database(config.database)
    try:
        yield config, db, SourceDatabase(config.source)
    finally:
        db.close()


def _print_report(report) -> None:
    fmt = "{:<32}  {:>9}  {:>8}  {:>9}"
    print(fmt.format("ENTITY", "UPSERTED", "DELETED", "SECONDS"))
    print("-" * 64)
    for name, stats in report.as_dict().items():
        print(fmt.format(name, stats["upserted"], stats["deleted"], f"{stats['duration']:.2f}"))
    for name, error in report.failures.items():
        print(f"FAILED   {name}: {error}")
    for name, reason in report.skipped.items():
        print(f"SKIPPED  {name}: {reason}")


def _print_job_results(results) -> None:
    fmt = "{:<6}  {:<28}  {:>9}  {:>8}  {}"
    print(fmt.format("JOB", "NAME", "UPSERTED", "DELETED", "RESULT"))
    print("-" * 80)
    for r in results:
        if r.fields is not None and r.ok:
            outcome = (
                f"fields +{len(r.fields.added)} -{len(r.fields.deleted)} "
                f"~{len(r.fields.updated)}"
            )
        else:
            outcome = "ok" if r.ok else f"error: {r.error}"
        print(fmt.format(str(r.job_id or ""), r.name[:28], r.upserted, r.deleted, outcome))


def cmd_sync(args: argparse.Namespace) -> int:
    """Run one relational reconciliation pass."""
    from scripts.membersync.sync import run_database_pass

    with _resources() as (config, db, source):
        report = run_database_pass(config, db, source)
    _print_report(report)
    return 0 if report.ok else 1


def cmd_mailchimp(args: argparse.Namespace) -> int:
    """Sync members into every configured audience, or one job."""
    from scripts.membersync.jobs import run_mailchimp_pass

    with _resources() as (config, db, source):
        results = run_mailchimp_pass(config, db, source, job_id=args.job)
    _print_job_results(results)
    return 0 if all(r.ok for r in results) else 1


def cmd_fields(args: argparse.Namespace) -> int:
    """Sync audience merge fields to the declared schema."""
    from scripts.membersync.jobs import JobStore, sync_job_fields, sync_many

    with _resources() as (config, db, _source):
        store = JobStore(db)
        jobs = [store.get(args.job)] if args.job is not None else store.all()
        if None in jobs:
            print(f"No mailchimp job with id {args.job}")
            return 1
        results = sync_many(
            jobs,
            lambda job: sync_job_fields(job, config.mailchimp, args.process_deletes),
            concurrency=config.mailchimp.job_concurrency,
        )
    _print_job_results(results)
    return 0 if all(r.ok for r in results) else 1


def cmd_jobs(args: argparse.Namespace) -> int:
    """Manage mailchimp job descriptors."""
    from scripts.membersync.jobs import JobStore

    with _resources() as (_config, db, _source):
        store = JobStore(db)
        if args.action == "list":
            fmt = "{:<6}  {:<28}  {:<14}  {:<16}  {}"
            print(fmt.format("ID", "NAME", "LIST", "SCOPE", "CREATED"))
            print("-" * 90)
            for job in store.all():
                created = str(job.created_at)[:19] if job.created_at else ""
                print(fmt.format(job.id, job.name[:28], job.list_id, job.scope, created))
            return 0
        if args.action == "add":
            if not is_secret_reference(args.api_key):
                logger.warning("Storing a literal API key for job %r", args.name)
            job = store.create(args.name, args.api_key, args.list, args.club, args.region)
            print(f"Created job {job.id} ({job.scope})")
            return 0
        if args.action == "update":
            job = store.update(
                args.id, name=args.name, api_key=args.api_key, list_id=args.list,
                club=args.club, region=args.region,
            )
            if job is None:
                print(f"No mailchimp job with id {args.id}")
                return 1
            print(f"Updated job {job.id} ({job.scope})")
            return 0
        if store.delete(args.id):
            print(f"Deleted job {args.id}")
            return 0
        print(f"No mailchimp job with id {args.id}")
        return 1


def _client_for(args: argparse.Namespace):
    from scripts.membersync.jobs import JobStore
    from scripts.membersync.mailchimp.client import Client
    from scripts.membersync.secrets import resolve_secret

    config = load_config()
    if args.api_key:
        return Client(resolve_secret(args.api_key), timeout=config.mailchimp.timeout)
    db = Database(config.database)
    try:
        job = JobStore(db).get(args.job)
    finally:
        db.close()
    if job is None:
        raise SyncError(f"no mailchimp job with id {args.job}")
    return job.client(config.mailchimp)


def cmd_ping(args: argparse.Namespace) -> int:
    """Check the Mailchimp API is reachable with the given credentials."""
    status = _client_for(args).ping()
    print(status)
    return 0


def cmd_lists(args: argparse.Namespace) -> int:
    """Show the audiences visible to an API key."""
    from scripts.membersync.mailchimp.client import lists

    for audience in lists(_client_for(args)):
        print(f"{audience['id']:<14}  {audience['name']}")
    return 0


# entity -> (option, SourceDatabase method); "all" takes no value
SOURCE_LOOKUPS: dict[str, tuple[tuple[str, str], ...]] = {
    "member": (("email", "member_by_email"), ("club", "members_by_club"),
               ("region", "members_by_region"), ("all", "members")),
    "user": (("uid", "user_by_uid"), ("email", "user_by_email")),
    "club": (("uid", "club_by_uid"), ("number", "club_by_number"), ("all", "clubs")),
    "region": (("uid", "region_by_uid"), ("all", "regions")),
    "committee": (("uid", "standing_committee_by_uid"), ("all", "standing_committees")),
}


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _print_json(value: Any) -> None:
    if dataclasses.is_dataclass(value):
        value = dataclasses.asdict(value)
    elif isinstance(value, list):
        value = [dataclasses.asdict(v) if dataclasses.is_dataclass(v) else v for v in value]
    print(json.dumps(value, indent=2, default=_json_default))


def _lookup_table(args: argparse.Namespace) -> int:
    spec = ALL_TABLES[args.table]
    if args.key and len(args.key) != len(spec.key_columns):
        print(f"{spec.name} is keyed by {', '.join(spec.key_columns)}")
        return 1
    with _resources() as (_config, db, _source):
        target = db.table(spec)
        result = target.by_key(tuple(args.key)) if args.key else target.all()
    if result is None:
        print(f"No {spec.name} row with key {' '.join(args.key)}")
        return 1
    _print_json(result)
    return 0


def cmd_lookup(args: argparse.Namespace) -> int:
    """Print source records, or target table rows, as JSON."""
    if args.entity == "table":
        return _lookup_table(args)
    option, method = next(
        (opt, meth) for opt, meth in SOURCE_LOOKUPS[args.entity]
        if getattr(args, opt) not in (None, False)
    )
    fetch = getattr(SourceDatabase(load_config().source), method)
    result = fetch() if option == "all" else fetch(getattr(args, option))
    if result is None:
        print(f"No {args.entity} with {option} {getattr(args, option)}")
        return 1
    _print_json(result)
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    """Apply or list the packaged schema migrations."""
    from scripts.membersync import migrate

    with _resources() as (_config, db, _source):
        if args.action == "run":
            applied = migrate.run(db)
            for m in applied:
                print(f"Applied {m.version:03d}/{m.description}")
            if not applied:
                print("Schema is up to date.")
            return 0
        statuses = migrate.info(db)
    for s in statuses:
        state = "Applied" if s.applied else "Pending"
        changed = "" if s.checksum_matches else "  (changed since applied)"
        print(f"{state} {s.migration.version:03d}/{s.migration.description}{changed}")
    return 0


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Start the cron-driven scheduling loop."""
    from scripts.membersync.scheduler import SchedulerContext, start_scheduler

    with _resources() as (config, db, source):
        start_scheduler(SchedulerContext(config, db, source))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show recent sync runs."""
    with _resources() as (_config, db, _source):
        runs = db.get_recent_runs(kind=args.kind, limit=args.limit)
    if not runs:
        print("No sync runs found.")
        return 0

    fmt = "{:<36}  {:<10}  {:<8}  {:<20}  {:<20}  {:>8}  {:>8}  {}"
    print(fmt.format("RUN ID", "KIND", "STATUS", "STARTED", "FINISHED",
                     "UPSERTED", "DELETED", "ERROR"))
    print("-" * 150)
    for r in runs:
        started = str(r["started_at"])[:19] if r["started_at"] else ""
        finished = str(r["finished_at"])[:19] if r["finished_at"] else ""
        error = (r.get("error_message") or "")[:40]
        print(fmt.format(
            str(r["id"])[:36], r["kind"], r["status"], started, finished,
            r.get("records_upserted") or 0, r.get("records_deleted") or 0, error,
        ))
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "sync": cmd_sync,
    "mailchimp": cmd_mailchimp,
    "fields": cmd_fields,
    "jobs": cmd_jobs,
    "lists": cmd_lists,
    "ping": cmd_ping,
    "lookup": cmd_lookup,
    "migrate": cmd_migrate,
    "scheduler": cmd_scheduler,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="membersync",
        description="Membership data sync to PostgreSQL and Mailchimp",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Run one database reconciliation pass")

    mc = sub.add_parser("mailchimp", help="Sync members into Mailchimp audiences")
    mc.add_argument("--job", "-j", type=int, help="Only this job id")

    fields = sub.add_parser("fields", help="Sync audience merge fields")
    fields.add_argument("--job", "-j", type=int, help="Only this job id")
    fields.add_argument(
        "--process-deletes", action="store_true",
        help="Delete remote fields missing from the declared schema",
    )

    jobs = sub.add_parser("jobs", help="Manage mailchimp jobs")
    actions = jobs.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="List jobs")
    add = actions.add_parser("add", help="Create a job")
    add.add_argument("--name", required=True)
    add.add_argument("--api-key", required=True, help="Key or secret reference")
    add.add_argument("--list", required=True, help="Audience (list) id")
    scope = add.add_mutually_exclusive_group()
    scope.add_argument("--club", type=int, help="Only members of this club uid")
    scope.add_argument("--region", type=int, help="Only members of this region uid")
    update = actions.add_parser("update", help="Change a job")
    update.add_argument("id", type=int)
    update.add_argument("--name")
    update.add_argument("--api-key")
    update.add_argument("--list")
    update.add_argument("--club", type=int)
    update.add_argument("--region", type=int)
    delete = actions.add_parser("delete", help="Delete a job")
    delete.add_argument("id", type=int)

    for name, help_text in (("ping", "Check API connectivity"), ("lists", "Show audiences")):
        p = sub.add_parser(name, help=help_text)
        creds = p.add_mutually_exclusive_group(required=True)
        creds.add_argument("--job", "-j", type=int, help="Use this job's API key")
        creds.add_argument("--api-key", help="Key or secret reference")

    lookup = sub.add_parser("lookup", help="Print source records or target rows as JSON")
    entities = lookup.add_subparsers(dest="entity", required=True)
    for entity, options in SOURCE_LOOKUPS.items():
        p = entities.add_parser(entity, help=f"Look up {entity} records in the source")
        by = p.add_mutually_exclusive_group(required=True)
        for option, _method in options:
            if option == "all":
                by.add_argument("--all", action="store_true", help="Every record")
            else:
                by.add_argument(f"--{option}", type=str if option == "email" else int)
    table = entities.add_parser("table", help="Show rows of a target table")
    table.add_argument("table", choices=sorted(ALL_TABLES))
    table.add_argument("--key", nargs="+", help="Key column values, in key order")

    migrate = sub.add_parser("migrate", help="Manage the target schema")
    migrate.add_argument("action", choices=["run", "info"])

    sub.add_parser("scheduler", help="Start the scheduled sync loop")

    status = sub.add_parser("status", help="Show recent sync runs")
    status.add_argument("--kind", "-k", choices=["database", "mailchimp"])
    status.add_argument("--limit", "-l", type=int, default=10,
                        help="Number of runs to show (default: 10)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    args = build_parser().parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except SyncError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
