from __future__ import annotations

import logging
import threading

import pytest

from scripts.membersync import tables
from scripts.membersync.pipeline import (
    ENTITY_GRAPH,
    DependencyScheduler,
    EntityStep,
    Reference,
    topological_order,
)
from scripts.membersync.reconciler import Reconciler


@pytest.fixture
def journal():
    return []


@pytest.fixture
def targets(make_target, journal):
    """Targets that append (phase, name) to a shared journal."""

    def build(names, **overrides):
        built = {}
        for name in names:
            target = make_target(name=name, **overrides.get(name, {}))
            upsert_rows, retain_keys = target.upsert_rows, target.retain_keys

            def logged_upsert(rows, _name=name, _fn=upsert_rows):
                journal.append(("upsert", _name))
                return _fn(rows)

            def logged_retain(keys, _name=name, _fn=retain_keys):
                journal.append(("retain", _name))
                return _fn(keys)

            target.upsert_rows = logged_upsert
            target.retain_keys = logged_retain
            built[name] = target
        return built

    return build


def _scheduler(targets, steps, **kwargs):
    return DependencyScheduler(targets.__getitem__, Reconciler(), steps=steps, max_workers=1, **kwargs)


CHAIN = (
    EntityStep("regions"),
    EntityStep("clubs", depends_on=("regions",)),
    EntityStep("members", depends_on=("clubs",)),
    EntityStep("committees"),
)


def test_entity_graph_orders_parents_first():
    order = topological_order(ENTITY_GRAPH)

    def before(parent, child):
        return order.index(parent) < order.index(child)

    assert before(tables.REGIONS.name, tables.CLUBS.name)
    assert before(tables.CLUBS.name, tables.MEMBERS.name)
    assert before(tables.USERS.name, tables.MEMBERS.name)
    assert before(tables.USERS.name, tables.ADDRESSES.name)
    assert before(tables.LEADERSHIP_ROLE.name, tables.LEADERSHIP_INTERNATIONAL.name)
    assert before(tables.STANDING_COMMITTEES.name, tables.LEADERSHIP_STANDING_COMMITTEE.name)
    assert set(order) == set(tables.ALL_TABLES)


def test_upserts_parents_first_and_retains_children_first(targets, journal):
    built = targets([s.name for s in CHAIN])
    snapshots = {s.name: [{"id": 1}] for s in CHAIN}

    report = _scheduler(built, CHAIN).run(snapshots)

    assert report.ok
    upserts = [name for phase, name in journal if phase == "upsert"]
    retains = [name for phase, name in journal if phase == "retain"]
    assert upserts.index("regions") < upserts.index("clubs") < upserts.index("members")
    assert retains.index("members") < retains.index("clubs") < retains.index("regions")
    # Every upsert happens before any retain
    assert journal.index(("retain", retains[0])) == len(upserts)


def test_dangling_reference_dropped_with_warning(targets, caplog):
    steps = (
        EntityStep("clubs"),
        EntityStep(
            "leadership_club",
            depends_on=("clubs",),
            references=(Reference("clubs", "club", "uid"),),
        ),
    )
    built = targets(["clubs", "leadership_club"])
    snapshots = {
        "clubs": [{"id": 1, "uid": 10}],
        "leadership_club": [{"id": "a", "club": 10}, {"id": "b", "club": 99}],
    }

    with caplog.at_level(logging.WARNING, logger="membersync.pipeline"):
        report = _scheduler(built, steps).run(snapshots)

    assert set(built["leadership_club"].rows) == {"a"}
    assert report.entities["leadership_club"].upserted == 1
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert warnings[0].entity_type == "leadership_club"
    assert warnings[0].missing_key == 99


def test_failed_upsert_skips_dependents_only(targets):
    built = targets(
        [s.name for s in CHAIN],
        regions={"fail_on_chunk": 0},
    )
    built["committees"].rows = {1: {"id": 1}, 2: {"id": 2}}
    snapshots = {s.name: [{"id": 1}] for s in CHAIN}

    report = _scheduler(built, CHAIN).run(snapshots)

    assert not report.ok
    assert "regions" in report.failures
    assert report.skipped["clubs"] == "upsert blocked by regions"
    assert report.skipped["members"] == "upsert blocked by clubs"
    assert built["clubs"].chunks == []
    # The unrelated branch still converges
    assert set(built["committees"].rows) == {1}
    assert report.entities["committees"].deleted == 1


def test_failed_child_retain_blocks_parent_retain(targets):
    steps = (EntityStep("clubs"), EntityStep("members", depends_on=("clubs",)))
    built = targets(["clubs", "members"], members={"fail_retain": True})
    built["clubs"].rows = {1: {"id": 1}, 2: {"id": 2}}
    snapshots = {"clubs": [{"id": 1}], "members": [{"id": 5}]}

    report = _scheduler(built, steps).run(snapshots)

    assert "members" in report.failures
    assert report.skipped["clubs"] == "retain blocked by members"
    assert set(built["clubs"].rows) == {1, 2}


def test_prefailed_snapshot_is_reported_and_blocks_dependents(targets):
    built = targets([s.name for s in CHAIN])
    built["regions"].rows = {7: {"id": 7}}
    snapshots = {s.name: [{"id": 1}] for s in CHAIN}

    report = _scheduler(built, CHAIN).run(
        snapshots, failed={"regions": "source fetch failed: regions"}
    )

    assert report.failures["regions"] == "source fetch failed: regions"
    assert "clubs" in report.skipped
    assert built["regions"].chunks == []
    assert built["regions"].retained == []
    assert set(built["regions"].rows) == {7}


def test_stop_event_skips_remaining_steps(targets):
    built = targets([s.name for s in CHAIN])
    stop = threading.Event()
    stop.set()

    report = _scheduler(built, CHAIN, stop_event=stop).run({s.name: [{"id": 1}] for s in CHAIN})

    assert set(report.skipped) == {s.name for s in CHAIN}
    assert all(reason == "shutdown requested" for reason in report.skipped.values())
    assert all(t.chunks == [] for t in built.values())


def test_unknown_dependency_rejected():
    with pytest.raises(ValueError):
        DependencyScheduler(lambda name: None, Reconciler(), steps=(EntityStep("a", ("b",)),))


def test_member_of_unknown_club_is_unlinked_not_dropped(targets, caplog):
    keys = {tables.CLUBS.name: {"key": "number"}, tables.MEMBERS.name: {"key": "primary_user"}}
    built = targets([s.name for s in ENTITY_GRAPH], **keys)
    snapshots = {
        tables.CLUBS.name: [{"number": 1, "uid": 10}],
        tables.MEMBERS.name: [
            {"primary_user": "u1", "local_club": 999},
            {"primary_user": "u2", "local_club": 1},
            {"primary_user": "u3", "local_club": None},
        ],
    }

    with caplog.at_level(logging.WARNING, logger="membersync.pipeline"):
        report = _scheduler(built, ENTITY_GRAPH).run(snapshots)

    members = built[tables.MEMBERS.name].rows
    assert {k: r["local_club"] for k, r in members.items()} == {"u1": None, "u2": 1, "u3": None}
    assert report.entities[tables.MEMBERS.name].upserted == 3
    assert tables.MEMBERS.name not in report.failures
    warnings = [r for r in caplog.records if r.name == "membersync.pipeline"]
    assert len(warnings) == 1
    assert warnings[0].entity_type == tables.MEMBERS.name
    assert warnings[0].missing_key == 999
