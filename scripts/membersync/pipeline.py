"""Dependency-ordered reconciliation across entity types.

Upserts walk the foreign-key graph parents first; retains walk it children
first. Independent branches run concurrently on a small worker pool. A
failed entity type never blocks unrelated branches, but everything that
depends on it is skipped for the rest of the pass.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from graphlib import TopologicalSorter
from typing import Callable, Iterable, Mapping, Optional, Sequence

from scripts.membersync import tables
from scripts.membersync.reconciler import Reconciler, ReconcileTarget
from scripts.membersync.stats import StatsAggregator, SyncReport
from scripts.membersync.tables import Row

logger = logging.getLogger("membersync.pipeline")


@dataclass(frozen=True)
class Reference:
    """Child rows whose ``column`` value is missing from the parent's
    ``parent_column`` values are dropped before upsert.

    A ``nullable`` reference keeps the row and clears the column instead;
    rows that already hold None pass through.
    """

    parent: str
    column: str
    parent_column: str
    nullable: bool = False


@dataclass(frozen=True)
class EntityStep:
    name: str
    depends_on: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()


_LEADERSHIP_PARENTS = (tables.USERS.name, tables.LEADERSHIP_ROLE.name)

ENTITY_GRAPH: tuple[EntityStep, ...] = (
    EntityStep(tables.LEADERSHIP_ROLE.name),
    EntityStep(tables.REGIONS.name),
    EntityStep(tables.STANDING_COMMITTEES.name),
    EntityStep(tables.USERS.name),
    EntityStep(tables.CLUBS.name, depends_on=(tables.REGIONS.name,)),
    EntityStep(tables.ADDRESSES.name, depends_on=(tables.USERS.name,)),
    EntityStep(tables.BRNS.name, depends_on=(tables.USERS.name,)),
    EntityStep(
        tables.MEMBERS.name,
        depends_on=(tables.USERS.name, tables.CLUBS.name),
        references=(Reference(tables.CLUBS.name, "local_club", "number", nullable=True),),
    ),
    EntityStep(
        tables.LEADERSHIP_CLUB.name,
        depends_on=(tables.CLUBS.name,) + _LEADERSHIP_PARENTS,
        references=(Reference(tables.CLUBS.name, "club", "uid"),),
    ),
    EntityStep(
        tables.LEADERSHIP_REGION.name,
        depends_on=(tables.REGIONS.name,) + _LEADERSHIP_PARENTS,
        references=(Reference(tables.REGIONS.name, "region", "uid"),),
    ),
    EntityStep(
        tables.LEADERSHIP_STANDING_COMMITTEE.name,
        depends_on=(tables.STANDING_COMMITTEES.name,) + _LEADERSHIP_PARENTS,
        references=(
            Reference(tables.STANDING_COMMITTEES.name, "standing_committee", "uid"),
        ),
    ),
    EntityStep(tables.LEADERSHIP_INTERNATIONAL.name, depends_on=_LEADERSHIP_PARENTS),
)


def topological_order(steps: Iterable[EntityStep]) -> list[str]:
    return list(TopologicalSorter({s.name: set(s.depends_on) for s in steps}).static_order())


class DependencyScheduler:
    """Runs one reconciliation pass over a set of entity snapshots."""

    def __init__(
        self,
        target_for: Callable[[str], ReconcileTarget],
        reconciler: Reconciler,
        steps: Sequence[EntityStep] = ENTITY_GRAPH,
        stats: Optional[StatsAggregator] = None,
        stop_event: Optional[threading.Event] = None,
        max_workers: int = 4,
    ) -> None:
        self._steps = {s.name: s for s in steps}
        unknown = {d for s in steps for d in s.depends_on} - set(self._steps)
        if unknown:
            raise ValueError(f"unknown dependencies: {sorted(unknown)}")
        self._target_for = target_for
        self._reconciler = reconciler
        self.stats = stats or StatsAggregator()
        self._stop_event = stop_event
        self._max_workers = max_workers
        self._upserted: dict[str, list[Row]] = {}

    @property
    def order(self) -> list[str]:
        return topological_order(self._steps.values())

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    # ------------------------------------------------------------------

    def run(
        self,
        snapshots: Mapping[str, Sequence[Row]],
        failed: Optional[Mapping[str, str]] = None,
    ) -> SyncReport:
        """Upsert in dependency order, then retain in reverse order.

        ``failed`` names entity types whose snapshot could not be built;
        they are reported as failures and treated like a failed upsert.
        """
        self._upserted = {}
        for name, reason in (failed or {}).items():
            self.stats.record_failure(name, RuntimeError(reason))

        parents = {name: set(s.depends_on) for name, s in self._steps.items()}
        children: dict[str, set[str]] = {name: set() for name in self._steps}
        for name, deps in parents.items():
            for dep in deps:
                children[dep].add(name)

        pre_failed = set(failed or {})
        self._walk(
            parents,
            lambda name: name not in pre_failed and self._upsert(name, snapshots.get(name, ())),
            phase="upsert",
        )
        self._walk(children, self._retain, phase="retain")
        return self.stats.report()

    def _walk(
        self,
        graph: Mapping[str, set[str]],
        action: Callable[[str], bool],
        phase: str,
    ) -> set[str]:
        """Run action on every node once all of its predecessors succeeded."""
        sorter = TopologicalSorter(graph)
        sorter.prepare()
        succeeded: set[str] = set()
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            pending: dict[Future, str] = {}
            while sorter.is_active():
                for name in sorter.get_ready():
                    blocked = sorted(p for p in graph[name] if p not in succeeded)
                    if self._stopping():
                        self.stats.record_skip(name, "shutdown requested")
                        sorter.done(name)
                    elif blocked:
                        if name in self._upserted or phase == "upsert":
                            self.stats.record_skip(
                                name, f"{phase} blocked by {', '.join(blocked)}"
                            )
                        sorter.done(name)
                    else:
                        pending[pool.submit(action, name)] = name
                if not pending:
                    continue
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    name = pending.pop(future)
                    if future.result():
                        succeeded.add(name)
                    sorter.done(name)
        return succeeded

    def _filter(self, step: EntityStep, rows: Sequence[Row]) -> list[Row]:
        kept = list(rows)
        for ref in step.references:
            parent_keys = {r.get(ref.parent_column) for r in self._upserted.get(ref.parent, [])}
            filtered = []
            for row in kept:
                value = row.get(ref.column)
                if value is None and ref.nullable:
                    filtered.append(row)
                    continue
                if value is None or value not in parent_keys:
                    logger.warning(
                        "%s %s record: %s %s=%s not present",
                        "Unlinking" if ref.nullable else "Dropping",
                        step.name, ref.parent, ref.parent_column, value,
                        extra={"entity_type": step.name, "missing_key": value},
                    )
                    if ref.nullable:
                        filtered.append({**row, ref.column: None})
                    continue
                filtered.append(row)
            kept = filtered
        return kept

    def _upsert(self, name: str, snapshot: Sequence[Row]) -> bool:
        step = self._steps[name]
        rows = self._filter(step, snapshot)
        started = time.monotonic()
        try:
            count = self._reconciler.upsert(self._target_for(name), rows)
        except Exception as exc:
            logger.error("Upsert failed: %s", exc, exc_info=True, extra={"entity_type": name})
            self.stats.record_failure(name, exc)
            return False
        elapsed = time.monotonic() - started
        self.stats.record_upsert(name, count, elapsed)
        self._upserted[name] = rows
        logger.info(
            "Upserted %s", name,
            extra={"entity_type": name, "upserted": count, "duration_s": round(elapsed, 3)},
        )
        return True

    def _retain(self, name: str) -> bool:
        rows = self._upserted.get(name)
        if rows is None:
            return False
        started = time.monotonic()
        try:
            count = self._reconciler.retain(self._target_for(name), rows)
        except Exception as exc:
            logger.error("Retain failed: %s", exc, exc_info=True, extra={"entity_type": name})
            self.stats.record_failure(name, exc)
            return False
        elapsed = time.monotonic() - started
        self.stats.record_retain(name, count, elapsed)
        logger.info(
            "Retained %s", name,
            extra={"entity_type": name, "deleted": count, "duration_s": round(elapsed, 3)},
        )
        return True
