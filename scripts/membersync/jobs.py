"""Mailchimp sync jobs: persisted descriptors and the audience sync itself."""

from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from scripts.membersync.config import MailchimpConfig, SyncConfig
from scripts.membersync.db import Database
from scripts.membersync.errors import ConfigurationError
from scripts.membersync.mailchimp import members as mc_members
from scripts.membersync.mailchimp import merge_fields as mc_fields
from scripts.membersync.mailchimp.audience import to_audience, to_tag_updates
from scripts.membersync.mailchimp.client import Client
from scripts.membersync.mailchimp.merge_fields import MergeFieldDiff, MergeFields
from scripts.membersync.mailchimp.retry import RetryPolicy
from scripts.membersync.models import Member
from scripts.membersync.secrets import resolve_secret
from scripts.membersync.source import SourceDatabase

logger = logging.getLogger("membersync.jobs")

RUN_KIND = "mailchimp"
FIELDS_CLUB = "fields-club.yaml"
FIELDS_ALL = "fields-all.yaml"


@dataclass(frozen=True)
class MailchimpJob:
    id: Optional[int]
    name: str
    api_key: str
    list_id: str
    club: Optional[int] = None
    region: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.club is not None and self.region is not None:
            raise ConfigurationError(f"job {self.name!r}: set a club or a region, not both")
        if not self.list_id:
            raise ConfigurationError(f"job {self.name!r}: list id is required")

    @property
    def scope(self) -> str:
        if self.club is not None:
            return f"club {self.club}"
        if self.region is not None:
            return f"region {self.region}"
        return "all members"

    @property
    def fields_file(self) -> str:
        return FIELDS_CLUB if self.club is not None else FIELDS_ALL

    def client(self, config: MailchimpConfig) -> Client:
        return Client(resolve_secret(self.api_key), timeout=config.timeout)


class JobStore:
    """CRUD for the mailchimp_jobs table."""

    COLUMNS = ("id", "name", "api_key", "list_id", "club", "region", "created_at")
    EDITABLE = ("name", "api_key", "list_id", "club", "region")

    def __init__(self, db: Database) -> None:
        self._db = db

    def _select(self, where: str = "", args: tuple = ()) -> list[MailchimpJob]:
        with self._db.transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(self.COLUMNS)} FROM mailchimp_jobs {where} ORDER BY id",
                args,
            )
            return [MailchimpJob(**dict(zip(self.COLUMNS, row))) for row in cur.fetchall()]

    def all(self) -> list[MailchimpJob]:
        return self._select()

    def get(self, job_id: int) -> Optional[MailchimpJob]:
        jobs = self._select("WHERE id = %s", (job_id,))
        return jobs[0] if jobs else None

    def create(
        self,
        name: str,
        api_key: str,
        list_id: str,
        club: Optional[int] = None,
        region: Optional[int] = None,
    ) -> MailchimpJob:
        job = MailchimpJob(None, name, api_key, list_id, club, region)
        with self._db.transaction() as cur:
            cur.execute(
                """INSERT INTO mailchimp_jobs (name, api_key, list_id, club, region)
                   VALUES (%s, %s, %s, %s, %s)
                   RETURNING id, created_at""",
                (job.name, job.api_key, job.list_id, job.club, job.region),
            )
            job_id, created_at = cur.fetchone()
        return replace(job, id=job_id, created_at=created_at)

    def update(self, job_id: int, **changes: Any) -> Optional[MailchimpJob]:
        """Change only the provided (non-None) fields."""
        unknown = set(changes) - set(self.EDITABLE)
        if unknown:
            raise ValueError(f"not editable: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None}
        current = self.get(job_id)
        if current is None or not changes:
            return current
        updated = replace(current, **changes)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._db.transaction() as cur:
            cur.execute(
                f"UPDATE mailchimp_jobs SET {assignments} WHERE id = %s",
                (*changes.values(), job_id),
            )
        return updated

    def delete(self, job_id: int) -> bool:
        with self._db.transaction() as cur:
            cur.execute("DELETE FROM mailchimp_jobs WHERE id = %s", (job_id,))
            return cur.rowcount > 0


@dataclass
class JobResult:
    job_id: Optional[int]
    name: str
    upserted: int = 0
    deleted: int = 0
    tagged: int = 0
    fields: Optional[MergeFieldDiff] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def retry_policy(config: MailchimpConfig) -> RetryPolicy:
    return RetryPolicy(config.retries, config.base_delay, config.max_delay)


def fetch_job_members(job: MailchimpJob, source: SourceDatabase) -> list[Member]:
    if job.club is not None:
        return source.members_by_club(job.club)
    if job.region is not None:
        return source.members_by_region(job.region)
    return source.members()


def sync_job(
    job: MailchimpJob,
    source: SourceDatabase,
    config: MailchimpConfig,
    client: Optional[Client] = None,
) -> JobResult:
    """Upsert the job's members into its audience, remove the rest, refresh tags."""
    client = client or job.client(config)
    retry = retry_policy(config)
    extra = {"job_id": job.id, "list_id": job.list_id}

    members = fetch_job_members(job, source)
    addresses = source.mailing_addresses(m.primary.uid for m in members)
    merge_fields = MergeFields.load(config.fields_dir / job.fields_file)
    audience = to_audience(members, addresses, merge_fields)
    logger.info("Syncing %d audience members for %s", len(audience), job.scope, extra=extra)

    succeeded = mc_members.upsert_many(
        client, job.list_id, audience, retry, workers=config.upsert_workers
    )
    deleted = 0
    if not audience:
        logger.warning("No members fetched, skipping retain", extra=extra)
    elif not succeeded:
        logger.warning("No member upsert succeeded, skipping retain", extra=extra)
    else:
        # Only members the audience accepted this pass are kept
        deleted = mc_members.retain(
            client, job.list_id, {m.id for m in succeeded}, retry,
            workers=config.delete_workers,
        )
    tagged = mc_members.update_tags(client, job.list_id, to_tag_updates(members), retry)

    return JobResult(job.id, job.name, upserted=len(succeeded), deleted=deleted, tagged=tagged)


def sync_job_fields(
    job: MailchimpJob,
    config: MailchimpConfig,
    process_deletes: bool = False,
    client: Optional[Client] = None,
) -> JobResult:
    target = MergeFields.load(config.fields_dir / job.fields_file)
    # Validate before building the client so a bad schema never reaches the API
    target.validate()
    client = client or job.client(config)
    result = mc_fields.sync(client, job.list_id, target, process_deletes, retry_policy(config))
    return JobResult(job.id, job.name, fields=result)


def sync_many(
    jobs: Iterable[MailchimpJob],
    fn: Callable[[MailchimpJob], JobResult],
    concurrency: int = 20,
    stop_event: Optional[threading.Event] = None,
) -> list[JobResult]:
    """Run fn for every job on a bounded pool; one job failing never stops the others."""

    def run(job: MailchimpJob) -> JobResult:
        if stop_event is not None and stop_event.is_set():
            return JobResult(job.id, job.name, error="shutdown requested")
        try:
            return fn(job)
        except Exception as exc:
            logger.error(
                "Job %s failed: %s", job.name, exc, exc_info=True,
                extra={"job_id": job.id, "list_id": job.list_id},
            )
            return JobResult(job.id, job.name, error=str(exc))

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        return list(pool.map(run, jobs))


def run_mailchimp_pass(
    config: SyncConfig,
    db: Database,
    source: SourceDatabase,
    stop_event: Optional[threading.Event] = None,
    job_id: Optional[int] = None,
) -> list[JobResult]:
    """Sync every configured audience (or one) with run tracking."""
    store = JobStore(db)
    if job_id is not None:
        job = store.get(job_id)
        if job is None:
            raise ConfigurationError(f"no mailchimp job with id {job_id}")
        jobs = [job]
    else:
        jobs = store.all()

    run_id = db.record_run_start(RUN_KIND, metadata={"jobs": [j.id for j in jobs]})
    try:
        results = sync_many(
            jobs,
            lambda job: sync_job(job, source, config.mailchimp),
            concurrency=config.mailchimp.job_concurrency,
            stop_event=stop_event,
        )
    except Exception as exc:
        db.record_run_end(
            run_id, status="FAILED",
            error_message=f"{exc}\n{traceback.format_exc()}"[:4000],
        )
        raise

    failures = [r for r in results if not r.ok]
    db.record_run_end(
        run_id,
        status="PARTIAL" if failures else "SUCCESS",
        records_upserted=sum(r.upserted for r in results),
        records_deleted=sum(r.deleted for r in results),
        report={"jobs": {r.name: _result_dict(r) for r in results}},
        error_message="; ".join(f"{r.name}: {r.error}" for r in failures)[:1000] or None,
    )
    return results


def _result_dict(result: JobResult) -> dict[str, Any]:
    out: dict[str, Any] = {
        "upserted": result.upserted,
        "deleted": result.deleted,
        "tagged": result.tagged,
    }
    if result.fields is not None:
        out["fields"] = {
            "added": result.fields.added,
            "deleted": result.fields.deleted,
            "updated": result.fields.updated,
        }
    if result.error:
        out["error"] = result.error
    return out
