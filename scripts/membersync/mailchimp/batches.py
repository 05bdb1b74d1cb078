"""Batch operations endpoint: submit many calls at once and poll for completion."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional

from scripts.membersync.errors import BatchTimeoutError
from scripts.membersync.mailchimp.client import Client
from scripts.membersync.mailchimp.retry import RetryPolicy

logger = logging.getLogger("membersync.mailchimp.batches")

POLL_INTERVAL = 5.0
# Ten minutes at the default interval
MAX_POLLS = 120


def operation(
    method: str,
    path: str,
    body: Any = None,
    params: Optional[dict[str, Any]] = None,
    operation_id: Optional[str] = None,
) -> dict[str, Any]:
    op: dict[str, Any] = {"method": method, "path": path}
    if params:
        op["params"] = params
    if body is not None:
        op["body"] = json.dumps(body)
    if operation_id:
        op["operation_id"] = operation_id
    return op


def submit(client: Client, operations: list[dict[str, Any]]) -> str:
    """Start a batch. Returns the batch id."""
    resp = client.post("/3.0/batches", {"operations": operations})
    batch_id = resp["id"]
    logger.info("Submitted batch %s with %d operations", batch_id, len(operations))
    return batch_id


def wait(
    client: Client,
    batch_id: str,
    poll_interval: float = POLL_INTERVAL,
    max_polls: int = MAX_POLLS,
    retry: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Poll until the batch reports ``finished``; returns the final status.

    Each status fetch goes through ``retry``. Raises BatchTimeoutError
    when the batch is still running after ``max_polls`` fetches.
    """
    if max_polls < 1:
        raise ValueError("max_polls must be positive")
    retry = retry or RetryPolicy()
    path = f"/3.0/batches/{batch_id}"
    for poll in range(max_polls):
        if poll:
            sleep(poll_interval)
        status = retry.call(lambda: client.fetch(path), f"status of batch {batch_id}")
        if status.get("status") == "finished":
            if status.get("errored_operations"):
                logger.warning(
                    "Batch %s finished with %d errored operations",
                    batch_id, status["errored_operations"],
                )
            return status
    raise BatchTimeoutError(
        f"batch {batch_id} not finished after {max_polls} polls "
        f"({status.get('status', 'unknown')})"
    )
