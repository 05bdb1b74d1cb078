"""Per-entity-type reconciliation counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class EntityStats:
    upserted: int = 0
    deleted: int = 0
    duration: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "upserted": self.upserted,
            "deleted": self.deleted,
            "duration": round(self.duration, 3),
        }


@dataclass
class SyncReport:
    entities: dict[str, EntityStats] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.skipped

    @property
    def total_upserted(self) -> int:
        return sum(s.upserted for s in self.entities.values())

    @property
    def total_deleted(self) -> int:
        return sum(s.deleted for s in self.entities.values())

    def as_dict(self) -> dict[str, Any]:
        return {name: stats.as_dict() for name, stats in sorted(self.entities.items())}


class StatsAggregator:
    """Collects counts as steps finish. Safe to share between worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._report = SyncReport()

    def _entry(self, entity_type: str) -> EntityStats:
        return self._report.entities.setdefault(entity_type, EntityStats())

    def record_upsert(self, entity_type: str, count: int, seconds: float) -> None:
        with self._lock:
            entry = self._entry(entity_type)
            entry.upserted += count
            entry.duration += seconds

    def record_retain(self, entity_type: str, count: int, seconds: float) -> None:
        with self._lock:
            entry = self._entry(entity_type)
            entry.deleted += count
            entry.duration += seconds

    def record_failure(self, entity_type: str, exc: BaseException) -> None:
        with self._lock:
            self._report.failures[entity_type] = str(exc)

    def record_skip(self, entity_type: str, reason: str) -> None:
        with self._lock:
            self._report.skipped.setdefault(entity_type, reason)

    def report(self) -> SyncReport:
        with self._lock:
            return SyncReport(
                entities={k: EntityStats(v.upserted, v.deleted, v.duration)
                          for k, v in self._report.entities.items()},
                failures=dict(self._report.failures),
                skipped=dict(self._report.skipped),
            )
