from __future__ import annotations

import io
import json
import logging
import sys

from scripts.membersync.logging_config import JsonFormatter, configure_logging


def _record(**extra):
    record = logging.LogRecord("membersync.pipeline", logging.WARNING, __file__, 1,
                               "Dropping %s record", ("leadership_club",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_known_extras():
    line = JsonFormatter().format(_record(entity_type="leadership_club", missing_key=99, other="x"))

    payload = json.loads(line)
    assert payload["severity"] == "WARNING"
    assert payload["thread"]
    assert payload["logger"] == "membersync.pipeline"
    assert payload["message"] == "Dropping leadership_club record"
    assert payload["entity_type"] == "leadership_club"
    assert payload["missing_key"] == 99
    assert "other" not in payload


def test_json_formatter_serialises_exceptions():
    try:
        raise ValueError("bad row")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "ValueError: bad row" in payload["exception"]


def test_configure_logging_writes_json_lines():
    stream = io.StringIO()
    logger = configure_logging("debug", stream=stream)
    try:
        logging.getLogger("membersync.sync").info("done", extra={"run_id": "r1"})
    finally:
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "done"
    assert payload["run_id"] == "r1"
    assert logger.name == "membersync"
