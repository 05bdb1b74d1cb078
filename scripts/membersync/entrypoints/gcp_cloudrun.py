"""GCP Cloud Run Job entry point, triggered by Cloud Scheduler.

Usage:
  SYNC_PASS=database python -m scripts.membersync.entrypoints.gcp_cloudrun
  SYNC_PASS=mailchimp python -m scripts.membersync.entrypoints.gcp_cloudrun
"""

from __future__ import annotations

import logging
import os
import sys

from scripts.membersync.config import load_config
from scripts.membersync.db import Database
from scripts.membersync.logging_config import configure_logging
from scripts.membersync.source import SourceDatabase

logger = logging.getLogger("membersync.cloudrun")


def main() -> None:
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    pass_name = os.environ.get("SYNC_PASS", "")
    if pass_name not in ("database", "mailchimp"):
        logger.error("SYNC_PASS must be 'database' or 'mailchimp'")
        sys.exit(1)

    logger.info("Cloud Run Job started for pass=%s", pass_name)

    config = load_config()
    db = Database(config.database)
    source = SourceDatabase(config.source)

    try:
        if pass_name == "database":
            from scripts.membersync.sync import run_database_pass
            ok = run_database_pass(config, db, source).ok
        else:
            from scripts.membersync.jobs import run_mailchimp_pass
            ok = all(r.ok for r in run_mailchimp_pass(config, db, source))
    except Exception as exc:
        logger.error("Pass %s failed: %s", pass_name, exc, exc_info=True)
        sys.exit(1)
    finally:
        db.close()

    if not ok:
        logger.warning("Pass %s finished with failures", pass_name)
        sys.exit(1)


if __name__ == "__main__":
    main()
