"""Audience member writes: batch upsert, retain, tag updates."""

from __future__ import annotations

import hashlib
import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional

from scripts.membersync.errors import RemoteError
from scripts.membersync.mailchimp import batches
from scripts.membersync.mailchimp.client import Client
from scripts.membersync.mailchimp.retry import RetryPolicy

logger = logging.getLogger("membersync.mailchimp.members")

MAX_UPSERT_BATCH = 300
MAX_TAG_OPERATIONS = 500
INVALID_EMAIL_DOMAINS = ("noemail.com", "example.com")


def member_id(email: str) -> str:
    """Subscriber hash: md5 of the lower-cased address."""
    return hashlib.md5(email.lower().encode("utf-8")).hexdigest()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return not email.lower().endswith(INVALID_EMAIL_DOMAINS)


@dataclass
class AudienceMember:
    email_address: str
    merge_fields: dict[str, Any] = field(default_factory=dict)
    status_if_new: str = "subscribed"

    @property
    def id(self) -> str:
        return member_id(self.email_address)

    def payload(self) -> dict[str, Any]:
        return {
            "email_address": self.email_address,
            "status_if_new": self.status_if_new,
            "merge_fields": self.merge_fields,
        }


@dataclass(frozen=True)
class TagUpdate:
    name: str
    active: bool

    def payload(self) -> dict[str, str]:
        return {"name": self.name, "status": "active" if self.active else "inactive"}


def _chunked(items: Iterable, size: int) -> Iterator[list]:
    iterator = iter(items)
    while chunk := list(itertools.islice(iterator, size)):
        yield chunk


def _upsert_batch(
    client: Client, list_id: str, batch: list[AudienceMember], retry: RetryPolicy
) -> list[AudienceMember]:
    body = {"members": [m.payload() for m in batch], "update_existing": True}
    resp = retry.call(
        lambda: client.post(f"/3.0/lists/{list_id}", body),
        description=f"upsert {len(batch)} members into {list_id}",
    ) or {}

    failed: set[str] = set()
    for error in resp.get("errors") or []:
        email = (error.get("email_address") or "").lower()
        failed.add(email)
        logger.warning(
            "Member %s rejected: %s", email, error.get("error"),
            extra={"list_id": list_id},
        )
    return [m for m in batch if m.email_address.lower() not in failed]


def upsert_many(
    client: Client,
    list_id: str,
    members: Iterable[AudienceMember],
    retry: Optional[RetryPolicy] = None,
    workers: int = 8,
) -> list[AudienceMember]:
    """Add or update members in batches. Returns the members that succeeded."""
    retry = retry or RetryPolicy()
    succeeded: list[AudienceMember] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(_upsert_batch, client, list_id, batch, retry)
            for batch in _chunked(members, MAX_UPSERT_BATCH)
        ]
        for future in futures:
            succeeded.extend(future.result())
    logger.info(
        "Upserted %d members", len(succeeded),
        extra={"list_id": list_id, "upserted": len(succeeded)},
    )
    return succeeded


def remote_member_ids(client: Client, list_id: str) -> set[str]:
    """Ids of every member that is not ``cleaned``."""
    return {
        item["id"]
        for item in client.fetch_stream(
            f"/3.0/lists/{list_id}/members",
            "members",
            {"fields": "members.id,members.status"},
        )
        if item.get("status") != "cleaned"
    }


def _delete_member(client: Client, list_id: str, mid: str, retry: RetryPolicy) -> bool:
    try:
        retry.call(
            lambda: client.delete(f"/3.0/lists/{list_id}/members/{mid}"),
            description=f"delete member {mid}",
        )
    except RemoteError as exc:
        if exc.status == 404:
            logger.debug("Member %s already gone", mid, extra={"list_id": list_id})
            return False
        raise
    return True


def retain(
    client: Client,
    list_id: str,
    keep_ids: Iterable[str],
    retry: Optional[RetryPolicy] = None,
    workers: int = 10,
) -> int:
    """Delete remote members not in keep_ids. Returns the number actually deleted."""
    retry = retry or RetryPolicy()
    stale = sorted(remote_member_ids(client, list_id) - set(keep_ids))
    if not stale:
        return 0
    with ThreadPoolExecutor(max_workers=workers) as pool:
        deleted = sum(pool.map(lambda mid: _delete_member(client, list_id, mid, retry), stale))
    logger.info(
        "Deleted %d of %d stale members", deleted, len(stale),
        extra={"list_id": list_id, "deleted": deleted},
    )
    return deleted


def update_tags(
    client: Client,
    list_id: str,
    updates: Iterable[tuple[str, list[TagUpdate]]],
    retry: Optional[RetryPolicy] = None,
    wait: Callable[..., dict[str, Any]] = batches.wait,
) -> int:
    """Apply tag changes through the batch endpoint. Returns operations submitted."""
    retry = retry or RetryPolicy()
    operations = [
        batches.operation(
            "POST",
            f"/lists/{list_id}/members/{mid}/tags",
            body={"tags": [t.payload() for t in tags]},
            operation_id=mid,
        )
        for mid, tags in updates
    ]
    for chunk in _chunked(operations, MAX_TAG_OPERATIONS):
        batch_id = retry.call(
            lambda: batches.submit(client, chunk),
            description=f"tag batch for {list_id}",
        )
        wait(client, batch_id, retry=retry)
    return len(operations)
