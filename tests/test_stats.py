from __future__ import annotations

from scripts.membersync.stats import StatsAggregator


def test_aggregator_accumulates_per_entity():
    stats = StatsAggregator()
    stats.record_upsert("clubs", 10, 0.5)
    stats.record_retain("clubs", 2, 0.25)
    stats.record_upsert("users", 4, 0.1)

    report = stats.report()

    assert report.ok
    assert report.total_upserted == 14
    assert report.total_deleted == 2
    assert report.as_dict()["clubs"] == {"upserted": 10, "deleted": 2, "duration": 0.75}
    assert list(report.as_dict()) == ["clubs", "users"]


def test_failures_and_first_skip_reason_kept():
    stats = StatsAggregator()
    stats.record_failure("clubs", RuntimeError("db down"))
    stats.record_skip("members", "upsert blocked by clubs")
    stats.record_skip("members", "shutdown requested")

    report = stats.report()

    assert not report.ok
    assert report.failures == {"clubs": "db down"}
    assert report.skipped == {"members": "upsert blocked by clubs"}


def test_report_is_a_snapshot():
    stats = StatsAggregator()
    stats.record_upsert("clubs", 1, 0.0)
    report = stats.report()

    stats.record_upsert("clubs", 1, 0.0)

    assert report.entities["clubs"].upserted == 1
    assert stats.report().entities["clubs"].upserted == 2
