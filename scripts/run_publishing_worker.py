#!/usr/bin/env python3
"""Cron/systemd entry: publish due articles if there are any, then exit."""
import sys

from loguru import logger

from cmsflow.config import load_settings
from cmsflow.db.base import create_session_factory, utcnow
from cmsflow.jobs.publishing import build_publisher
from cmsflow.services.article_jobs import ArticleJobService

MAX_JOBS_PER_INVOCATION = 10


def has_due_jobs(session) -> bool:
    return bool(ArticleJobService.due_for_publishing(session, utcnow(), limit=1))


def main() -> int:
    # Setup logger to stdout for systemd
    logger.remove()
    logger.add(sys.stdout, level="INFO")

    settings = load_settings()
    session_factory = create_session_factory(settings.database)

    with session_factory() as session:
        if not has_due_jobs(session):
            logger.info("[worker] No due articles, exiting")
            return 0

    try:
        result = build_publisher(settings, session_factory).run_once(limit=MAX_JOBS_PER_INVOCATION)
        logger.info(f"[worker] Result: {result.to_dict()}")
    except Exception as exc:
        logger.exception(f"[worker] Worker failed: {exc}")
        return 1

    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
