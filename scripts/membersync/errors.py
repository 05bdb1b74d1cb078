"""Exception hierarchy shared by the relational and mailing-list paths."""

from __future__ import annotations

from typing import Any, Optional


class SyncError(Exception):
    """Base class for all membersync errors."""


class ConfigurationError(SyncError):
    """Invalid process or job configuration. Never retried."""


class MergeFieldTagError(ConfigurationError):
    """A declared merge-field tag exceeds the remote tag-length limit."""

    def __init__(self, tags: list[str], limit: int) -> None:
        self.tags = tags
        self.limit = limit
        super().__init__(
            f"merge field tags longer than {limit} characters: {', '.join(tags)}"
        )


class MalformedApiKeyError(ConfigurationError):
    """API key without a data-center suffix."""


class RemoteError(SyncError):
    """A failed call against the mailing-list platform."""

    retryable = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status = status
        self.detail = detail or {}
        super().__init__(message)


class RemoteTransportError(RemoteError):
    """Connection failures, timeouts, 5xx and 429 responses."""

    retryable = True


class RemoteValidationError(RemoteError):
    """4xx responses: the request itself is wrong."""


class BatchTimeoutError(RemoteError):
    """A submitted batch did not finish within the polling limit."""


class ChunkWriteError(SyncError):
    """A chunk of an upsert failed; earlier chunks stay committed."""

    def __init__(self, entity_type: str, chunk_index: int, cause: Exception) -> None:
        self.entity_type = entity_type
        self.chunk_index = chunk_index
        self.cause = cause
        super().__init__(f"{entity_type}: chunk {chunk_index} failed: {cause}")
