"""AWS Lambda handler: one reconciliation pass per invocation.

Triggered by EventBridge schedule rules.

Event format:
  {"pass": "database"}
  {"pass": "mailchimp"}
  {"pass": "mailchimp", "job": 3}
"""

from __future__ import annotations

import json
import logging
import os

from scripts.membersync.config import load_config
from scripts.membersync.db import Database
from scripts.membersync.logging_config import configure_logging
from scripts.membersync.source import SourceDatabase

logger = logging.getLogger("membersync.lambda")


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    pass_name = event.get("pass", "")
    if pass_name not in ("database", "mailchimp"):
        return {"statusCode": 400, "body": "'pass' must be 'database' or 'mailchimp'"}

    logger.info("Lambda invoked for pass=%s", pass_name)

    config = load_config()
    db = Database(config.database)
    source = SourceDatabase(config.source)

    try:
        if pass_name == "database":
            from scripts.membersync.sync import run_database_pass
            report = run_database_pass(config, db, source)
            ok = report.ok
            body = {"entities": report.as_dict(), "failures": report.failures,
                    "skipped": report.skipped}
        else:
            from scripts.membersync.jobs import run_mailchimp_pass
            results = run_mailchimp_pass(config, db, source, job_id=event.get("job"))
            ok = all(r.ok for r in results)
            body = {"jobs": [{"id": r.job_id, "upserted": r.upserted,
                              "deleted": r.deleted, "error": r.error} for r in results]}

        logger.info("Pass %s complete", pass_name)
        return {
            "statusCode": 200 if ok else 207,
            "body": json.dumps({"pass": pass_name, **body}),
        }
    except Exception as exc:
        logger.error("Pass %s failed: %s", pass_name, exc, exc_info=True)
        return {
            "statusCode": 500,
            "body": json.dumps({"pass": pass_name, "error": str(exc)}),
        }
    finally:
        db.close()
