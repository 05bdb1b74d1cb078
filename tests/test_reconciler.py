from __future__ import annotations

import logging

import pytest

from scripts.membersync.errors import ChunkWriteError
from scripts.membersync.reconciler import Reconciler


def _rows(*ids):
    return [{"id": i, "value": f"v{i}"} for i in ids]


def test_reconcile_converges_target_onto_snapshot(make_target):
    target = make_target(rows=[{"id": 1, "value": "old"}, {"id": 9, "value": "stale"}])

    upserted, deleted = Reconciler(chunk_size=2).reconcile(target, _rows(1, 2, 3))

    assert upserted == 3
    assert deleted == 1
    assert target.rows == {i: {"id": i, "value": f"v{i}"} for i in (1, 2, 3)}


def test_reconcile_is_idempotent(make_target):
    target = make_target()
    reconciler = Reconciler()
    reconciler.reconcile(target, _rows(1, 2))
    first = dict(target.rows)

    _, deleted = reconciler.reconcile(target, _rows(1, 2))

    assert deleted == 0
    assert target.rows == first


def test_upsert_splits_into_chunks_and_dedupes_keys(make_target):
    target = make_target()
    snapshot = _rows(1, 2, 3, 4, 5) + [{"id": 1, "value": "dup"}]

    Reconciler(chunk_size=2).upsert(target, snapshot)

    assert [len(c) for c in target.chunks] == [2, 2, 1]
    assert target.rows[1]["value"] == "v1"


def test_empty_snapshot_never_deletes(make_target, caplog):
    target = make_target(rows=_rows(1, 2))

    with caplog.at_level(logging.WARNING, logger="membersync.reconciler"):
        deleted = Reconciler().retain(target, [])

    assert deleted == 0
    assert set(target.rows) == {1, 2}
    assert target.retained == []
    assert "Empty snapshot" in caplog.text


def test_failed_chunk_keeps_earlier_chunks(make_target):
    target = make_target(fail_on_chunk=1)

    with pytest.raises(ChunkWriteError) as excinfo:
        Reconciler(chunk_size=2).upsert(target, _rows(1, 2, 3, 4, 5))

    assert excinfo.value.entity_type == "things"
    assert excinfo.value.chunk_index == 1
    assert isinstance(excinfo.value.cause, RuntimeError)
    assert set(target.rows) == {1, 2}
    # The third chunk is never attempted
    assert len(target.chunks) == 2


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        Reconciler(chunk_size=0)
