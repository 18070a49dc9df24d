"""Scheduled publisher: advances due article jobs in one bounded batch."""
from __future__ import annotations

import argparse
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from cmsflow.config import Settings, load_settings
from cmsflow.db.base import create_session_factory, utcnow
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.article_jobs import ArticleJobService, ArticlePipeline, StepOutcome
from cmsflow.services.collaborators import build_content_generator

# Datastore unavailable: the only failures allowed to end a batch early
DATASTORE_ERRORS = (OperationalError, InterfaceError)


@dataclass
class BatchResult:
    success: bool = True
    processed: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScheduledPublisher:
    """Selects due jobs and runs each one inside its own failure boundary."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        pipeline: ArticlePipeline,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.sleep = sleep
        self.clock = clock

    def run_once(self, limit: Optional[int] = None) -> BatchResult:
        cfg = self.settings.publisher
        limit = limit if limit is not None else cfg.batch_limit
        started = self.clock()
        deadline = started + cfg.run_timeout_seconds
        result = BatchResult()

        logger.info("[PUBLISHER] Starting scheduled publishing run (limit {})", limit)
        try:
            with self.session_factory() as session:
                job_ids = ArticleJobService.due_for_publishing(session, utcnow(), limit)
        except DATASTORE_ERRORS as e:
            logger.error("[PUBLISHER] Could not query due jobs: {}", e)
            result.success = False
            result.aborted = True
            result.errors.append({"job_id": None, "error": f"Datastore unavailable: {e}"})
            return self._finish(result, started)

        if not job_ids:
            logger.info("[PUBLISHER] No articles scheduled for publishing")
            return self._finish(result, started)

        logger.info("[PUBLISHER] Found {} articles to publish", len(job_ids))

        for index, job_id in enumerate(job_ids):
            if self.clock() >= deadline:
                remaining = len(job_ids) - index
                logger.warning("[PUBLISHER] Run timeout reached; leaving {} jobs for the next run", remaining)
                result.skipped += remaining
                break

            if index > 0 and cfg.inter_job_delay_seconds:
                # Courtesy delay between provider calls
                self.sleep(cfg.inter_job_delay_seconds)

            try:
                with self.session_factory() as session:
                    outcome = self.pipeline.advance(session, job_id)
            except DATASTORE_ERRORS as e:
                logger.error("[PUBLISHER] Datastore unavailable while processing job {}: {}", job_id, e)
                result.success = False
                result.aborted = True
                result.errors.append({"job_id": job_id, "error": f"Datastore unavailable: {e}"})
                break
            except Exception as e:
                logger.exception("[PUBLISHER] Unexpected error processing job {}", job_id)
                result.processed += 1
                result.failed += 1
                result.errors.append({"job_id": job_id, "error": str(e)})
                continue

            self._tally(result, outcome)

        return self._finish(result, started)

    @staticmethod
    def _tally(result: BatchResult, outcome: StepOutcome) -> None:
        if outcome.status == "skipped":
            result.skipped += 1
            return
        result.processed += 1
        if outcome.status == "published":
            result.published += 1
        elif outcome.status == "failed":
            result.failed += 1
            result.errors.append({"job_id": outcome.job_id, "code": outcome.error_code, "error": outcome.error})

    def _finish(self, result: BatchResult, started: float) -> BatchResult:
        result.duration_ms = int((self.clock() - started) * 1000)
        logger.info(
            "[PUBLISHER] Run complete: processed={} published={} failed={} skipped={} aborted={}",
            result.processed, result.published, result.failed, result.skipped, result.aborted,
        )
        return result


def build_publisher(settings: Optional[Settings] = None, session_factory=None) -> ScheduledPublisher:
    settings = settings or load_settings()
    session_factory = session_factory or create_session_factory(settings.database)
    pipeline = ArticlePipeline(
        settings,
        ProviderRegistry(settings),
        generator=build_content_generator(settings.collaborators, settings.http_timeout_seconds),
        worker_id="publisher",
    )
    return ScheduledPublisher(settings, session_factory, pipeline)


def main():
    parser = argparse.ArgumentParser(description="Scheduled article publisher")
    parser.add_argument("--limit", type=int, default=None, help="Max jobs per run")
    parser.add_argument("--loop", action="store_true", help="Run in a loop")

    args = parser.parse_args()

    settings = load_settings()
    logger.remove()
    logger.add(sys.stdout, level=settings.log_level)

    publisher = build_publisher(settings)

    if args.loop:
        logger.info("Starting publishing loop...")
        while True:
            publisher.run_once(limit=args.limit)
            time.sleep(settings.publisher.loop_interval_seconds)
    else:
        result = publisher.run_once(limit=args.limit)
        return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
