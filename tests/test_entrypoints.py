from __future__ import annotations

import json

import pytest

from scripts.membersync import jobs, sync
from scripts.membersync.entrypoints import aws_lambda, gcp_cloudrun
from scripts.membersync.jobs import JobResult
from scripts.membersync.stats import EntityStats, SyncReport


class FakeDatabase:
    closed = 0

    def __init__(self, config):
        pass

    def close(self):
        FakeDatabase.closed += 1


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    FakeDatabase.closed = 0
    for module in (aws_lambda, gcp_cloudrun):
        monkeypatch.setattr(module, "configure_logging", lambda level: None)
        monkeypatch.setattr(module, "load_config", lambda: type("C", (), {"database": None, "source": None})())
        monkeypatch.setattr(module, "Database", FakeDatabase)
        monkeypatch.setattr(module, "SourceDatabase", lambda config: None)


def test_lambda_rejects_unknown_pass():
    response = aws_lambda.handler({"pass": "everything"}, None)

    assert response["statusCode"] == 400


def test_lambda_database_pass(monkeypatch):
    report = SyncReport(entities={"clubs": EntityStats(2, 0, 0.1)})
    monkeypatch.setattr(sync, "run_database_pass", lambda config, db, source: report)

    response = aws_lambda.handler({"pass": "database"}, None)

    assert response["statusCode"] == 200
    assert json.loads(response["body"])["entities"]["clubs"]["upserted"] == 2
    assert FakeDatabase.closed == 1


def test_lambda_mailchimp_partial_failure(monkeypatch):
    seen = {}

    def fake_pass(config, db, source, job_id=None):
        seen["job_id"] = job_id
        return [JobResult(3, "Harbour", error="remote down")]

    monkeypatch.setattr(jobs, "run_mailchimp_pass", fake_pass)

    response = aws_lambda.handler({"pass": "mailchimp", "job": 3}, None)

    assert response["statusCode"] == 207
    assert seen["job_id"] == 3


def test_lambda_pass_exception_is_500(monkeypatch):
    def boom(config, db, source):
        raise RuntimeError("source unreachable")

    monkeypatch.setattr(sync, "run_database_pass", boom)

    response = aws_lambda.handler({"pass": "database"}, None)

    assert response["statusCode"] == 500
    assert "source unreachable" in response["body"]
    assert FakeDatabase.closed == 1


def test_cloudrun_requires_pass(monkeypatch):
    monkeypatch.delenv("SYNC_PASS", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        gcp_cloudrun.main()

    assert excinfo.value.code == 1


def test_cloudrun_exits_nonzero_on_partial(monkeypatch):
    monkeypatch.setenv("SYNC_PASS", "database")
    monkeypatch.setattr(
        sync, "run_database_pass",
        lambda config, db, source: SyncReport(skipped={"members": "shutdown requested"}),
    )

    with pytest.raises(SystemExit):
        gcp_cloudrun.main()


def test_cloudrun_success(monkeypatch):
    monkeypatch.setenv("SYNC_PASS", "database")
    monkeypatch.setattr(sync, "run_database_pass", lambda config, db, source: SyncReport())

    gcp_cloudrun.main()

    assert FakeDatabase.closed == 1
