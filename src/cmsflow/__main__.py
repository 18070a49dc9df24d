#!/usr/bin/env python3
"""CLI entrypoint for the publishing pipeline and verification loop."""

from __future__ import annotations

import argparse
import json
import sys
import time

from loguru import logger

from cmsflow.config import load_settings
from cmsflow.db.base import create_session_factory
from cmsflow.jobs.publishing import build_publisher
from cmsflow.jobs.verification import build_verification_loop
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.article_jobs import ArticlePipeline
from cmsflow.services.collaborators import build_content_generator
from cmsflow.services.oauth import OAuthHandshakeManager


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main() -> int:
    parser = argparse.ArgumentParser(description="CMSFlow CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    publish = sub.add_parser("publish", help="Run the scheduled publisher")
    publish.add_argument("--limit", type=int, default=None, help="Max jobs per run")
    publish.add_argument("--loop", action="store_true", help="Run in a loop")

    verify = sub.add_parser("verify", help="Run the remediation verification loop")
    verify.add_argument("--force", action="store_true", help="Ignore next_check_at")

    sub.add_parser("sweep", help="Release stale claims and expired OAuth states")

    advance = sub.add_parser("advance", help="Force one job forward")
    advance.add_argument("--job-id", type=int, required=True)
    advance.add_argument("--owner", type=str, required=True, help="Owner token")

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")

    args = parser.parse_args()

    settings = load_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("cmsflow.api.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    session_factory = create_session_factory(settings.database)

    if args.command == "publish":
        publisher = build_publisher(settings, session_factory)
        if args.loop:
            logger.info("Starting publishing loop...")
            while True:
                publisher.run_once(limit=args.limit)
                time.sleep(settings.publisher.loop_interval_seconds)
        result = publisher.run_once(limit=args.limit)
        _print(result.to_dict())
        return 0 if result.success else 1

    if args.command == "verify":
        summary = build_verification_loop(settings, session_factory).run_once(force=args.force)
        _print(summary.to_dict())
        return 0 if summary.success else 1

    registry = ProviderRegistry(settings)
    pipeline = ArticlePipeline(
        settings,
        registry,
        generator=build_content_generator(settings.collaborators, settings.http_timeout_seconds),
        worker_id="cli",
    )

    if args.command == "sweep":
        with session_factory() as session:
            released = pipeline.release_stale_claims(session)
            expired = OAuthHandshakeManager.sweep_expired(session)
        _print({"released_claims": released, "expired_states": expired})
        return 0

    with session_factory() as session:
        outcome = pipeline.advance(session, args.job_id, owner_token=args.owner)
    _print({"job_id": outcome.job_id, "status": outcome.status, "error_code": outcome.error_code, "error": outcome.error})
    return 0 if outcome.status != "failed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
