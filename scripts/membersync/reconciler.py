"""Upsert + retain: converge a target collection onto a snapshot."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Collection, Sequence

from scripts.membersync.errors import ChunkWriteError
from scripts.membersync.tables import Row

logger = logging.getLogger("membersync.reconciler")

DEFAULT_CHUNK_SIZE = 1000


class ReconcileTarget(ABC):
    """A keyed collection that can be upserted into and trimmed."""

    name: str = ""

    @abstractmethod
    def key_of(self, row: Row) -> Any:
        """Natural key of a target-shaped row."""

    @abstractmethod
    def upsert_rows(self, rows: Sequence[Row]) -> int:
        """Insert-or-update one chunk atomically. Returns rows affected."""

    @abstractmethod
    def retain_keys(self, keys: Collection[Any]) -> int:
        """Delete every row whose key is not in keys. Returns rows deleted."""


class Reconciler:
    """Chunked upsert followed by retain.

    Chunks commit independently: a failing chunk stops the remaining
    chunks of that collection but does not undo the ones already written.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def _unique(self, target: ReconcileTarget, snapshot: Sequence[Row]) -> list[Row]:
        seen: set = set()
        rows: list[Row] = []
        for row in snapshot:
            key = target.key_of(row)
            if key in seen:
                continue
            seen.add(key)
            rows.append(row)
        if len(rows) < len(snapshot):
            logger.debug(
                "Dropped %d duplicate keys from %s",
                len(snapshot) - len(rows), target.name,
            )
        return rows

    def _chunks(self, rows: list[Row]) -> list[list[Row]]:
        size = self.chunk_size
        return [rows[i : i + size] for i in range(0, len(rows), size)]

    def upsert(self, target: ReconcileTarget, snapshot: Sequence[Row]) -> int:
        total = 0
        for index, chunk in enumerate(self._chunks(self._unique(target, snapshot))):
            try:
                total += target.upsert_rows(chunk)
            except Exception as exc:
                raise ChunkWriteError(target.name, index, exc) from exc
        return total

    def retain(self, target: ReconcileTarget, snapshot: Sequence[Row]) -> int:
        # An empty snapshot means nothing was fetched, not that the target is empty
        if not snapshot:
            logger.warning(
                "Empty snapshot, skipping retain",
                extra={"entity_type": target.name},
            )
            return 0
        return target.retain_keys({target.key_of(row) for row in snapshot})

    def reconcile(
        self, target: ReconcileTarget, snapshot: Sequence[Row]
    ) -> tuple[int, int]:
        upserted = self.upsert(target, snapshot)
        deleted = self.retain(target, snapshot)
        return upserted, deleted
