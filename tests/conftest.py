from __future__ import annotations

import pytest

from scripts.membersync.reconciler import ReconcileTarget


class InMemoryTarget(ReconcileTarget):
    """Keyed dict target that can be told to fail on a given chunk."""

    def __init__(self, name="things", key="id", rows=None, fail_on_chunk=None, fail_retain=False):
        self.name = name
        self.key = key
        self.rows = {r[key]: dict(r) for r in rows or []}
        self.fail_on_chunk = fail_on_chunk
        self.fail_retain = fail_retain
        self.chunks = []
        self.retained = []

    def key_of(self, row):
        return row[self.key]

    def upsert_rows(self, rows):
        if self.fail_on_chunk is not None and len(self.chunks) == self.fail_on_chunk:
            self.chunks.append(list(rows))
            raise RuntimeError("boom")
        self.chunks.append(list(rows))
        for row in rows:
            self.rows[row[self.key]] = dict(row)
        return len(rows)

    def retain_keys(self, keys):
        if self.fail_retain:
            raise RuntimeError("retain boom")
        self.retained.append(set(keys))
        stale = [k for k in self.rows if k not in keys]
        for k in stale:
            del self.rows[k]
        return len(stale)


@pytest.fixture
def make_target():
    return InMemoryTarget


class FakeResponse:
    def __init__(self, *, status_code=200, json_data=None, text: str = ""):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text
        self.content = b"" if json_data is None and not text else b"x"

    def json(self):
        if self._json_data is None:
            raise ValueError("no json")
        return self._json_data


class FakeSession:
    """Replays queued responses (or exceptions) and records every call."""

    def __init__(self, responses=None, handler=None):
        self.headers = {}
        self.calls = []
        self._responses = list(responses or [])
        self._handler = handler

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        if self._handler is not None:
            result = self._handler(method, url, **kwargs)
        else:
            result = self._responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse
