"""Remediation verification loop.

Completed fixes are re-checked until the verifier confirms them or the
attempt bound runs out. The attempt counter is compared *before* it is
incremented:

* attempts < bound: ``needs_recheck``, attempts + 1, next check after backoff
* attempts >= bound: ``failed``, attempts unchanged

So with a bound of 3 an item that never verifies is rescheduled exactly three
times and fails on the fourth negative result.
"""
from __future__ import annotations

import argparse
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from cmsflow.config import Settings, VerificationConfig, load_settings
from cmsflow.db.base import create_session_factory, utcnow
from cmsflow.db.models import RemediationItem, RemediationStatus, VerificationStatus
from cmsflow.services.collaborators import IssueVerifier, VerificationResult, build_issue_verifier

V = VerificationStatus

OPEN_VERIFICATION = (V.PENDING, V.NEEDS_RECHECK)


@dataclass
class VerificationSummary:
    success: bool = True
    processed: int = 0
    verified: int = 0
    rescheduled: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    aborted: bool = False
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RemediationVerificationLoop:
    def __init__(
        self,
        config: VerificationConfig,
        session_factory: sessionmaker[Session],
        verifier: IssueVerifier,
    ):
        self.config = config
        self.session_factory = session_factory
        self.verifier = verifier

    def due_items(self, session: Session, now: datetime, force: bool = False) -> List[int]:
        query = select(RemediationItem.id).where(
            RemediationItem.status == RemediationStatus.COMPLETED,
            RemediationItem.verification_status.in_(list(OPEN_VERIFICATION)),
        )
        if not force:
            query = query.where(
                or_(RemediationItem.next_check_at.is_(None), RemediationItem.next_check_at <= now)
            )
        query = query.order_by(RemediationItem.next_check_at.asc(), RemediationItem.id.asc()).limit(self.config.batch_limit)
        return list(session.execute(query).scalars().all())

    def run_once(self, force: bool = False) -> VerificationSummary:
        started = time.monotonic()
        summary = VerificationSummary()
        logger.info("[VERIFY] Starting verification run (force={})", force)

        try:
            with self.session_factory() as session:
                item_ids = self.due_items(session, utcnow(), force=force)

            for item_id in item_ids:
                with self.session_factory() as session:
                    try:
                        outcome = self.verify_item(session, item_id)
                    except (OperationalError, InterfaceError):
                        raise
                    except Exception as e:
                        session.rollback()
                        logger.exception("[VERIFY] Unexpected error checking item {}", item_id)
                        summary.processed += 1
                        summary.errors += 1
                        summary.error_details.append({"item_id": item_id, "error": str(e)})
                        continue
                self._tally(summary, item_id, outcome)
        except (OperationalError, InterfaceError) as e:
            logger.error("[VERIFY] Datastore unavailable, aborting run: {}", e)
            summary.success = False
            summary.aborted = True
            summary.error_details.append({"item_id": None, "error": f"Datastore unavailable: {e}"})

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "[VERIFY] Run complete: processed={} verified={} rescheduled={} failed={} errors={}",
            summary.processed, summary.verified, summary.rescheduled, summary.failed, summary.errors,
        )
        return summary

    def verify_item(self, session: Session, item_id: int) -> Dict[str, Any]:
        """Check one item and write the outcome. Returns {"outcome", ...}."""
        item = session.get(RemediationItem, item_id, populate_existing=True)
        if item is None or item.status != RemediationStatus.COMPLETED or item.verification_status not in OPEN_VERIFICATION:
            return {"outcome": "skipped"}

        observed_attempts = item.verification_attempts
        observed_status = item.verification_status
        error: Optional[str] = None

        try:
            result = self.verifier.verify(
                site_url=item.site_url,
                issue_category=item.issue_category,
                analysis=item.analysis,
            )
        except (OperationalError, InterfaceError):
            raise
        except Exception as e:
            # Counted as a failed check for this item only
            logger.warning("[VERIFY] Verifier raised for item {}: {}", item_id, e)
            error = str(e)
            result = VerificationResult(verified=False, details={"error": error[:500]})

        now = utcnow()
        details = dict(result.details or {})
        details["checked_at"] = now.isoformat()

        if result.verified:
            values = {
                "verification_status": V.VERIFIED,
                "verified_at": now,
                "next_check_at": None,
            }
            outcome = "verified"
        elif observed_attempts < self.config.max_attempts:
            attempts = observed_attempts + 1
            values = {
                "verification_status": V.NEEDS_RECHECK,
                "verification_attempts": attempts,
                "next_check_at": now + self.config.delay_for_attempt(attempts),
            }
            outcome = "rescheduled"
        else:
            values = {
                "verification_status": V.FAILED,
                "next_check_at": None,
            }
            outcome = "failed"

        values.update({"verification_details": details, "last_checked_at": now, "updated_at": now})

        # Lost race with an overlapping run: the other writer's result stands
        written = session.execute(
            update(RemediationItem)
            .where(
                RemediationItem.id == item_id,
                RemediationItem.verification_attempts == observed_attempts,
                RemediationItem.verification_status == observed_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if written.rowcount != 1:
            logger.info("[VERIFY] Item {} was updated by another run; skipping", item_id)
            return {"outcome": "skipped"}

        if outcome == "failed":
            logger.warning("[VERIFY] Item {} failed verification after {} attempts; needs manual review", item_id, observed_attempts)
        else:
            logger.info("[VERIFY] Item {} -> {}", item_id, outcome)
        return {"outcome": outcome, "error": error}

    @staticmethod
    def _tally(summary: VerificationSummary, item_id: int, outcome: Dict[str, Any]) -> None:
        kind = outcome["outcome"]
        if kind == "skipped":
            summary.skipped += 1
            return
        summary.processed += 1
        if kind == "verified":
            summary.verified += 1
        elif kind == "rescheduled":
            summary.rescheduled += 1
        elif kind == "failed":
            summary.failed += 1
        if outcome.get("error"):
            summary.errors += 1
            summary.error_details.append({"item_id": item_id, "error": outcome["error"]})


def verification_status(session: Session, owner_token: str, site_url: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """Counts of completed items by verification state, plus how many are due."""
    now = now or utcnow()
    base = [RemediationItem.owner_token == owner_token, RemediationItem.status == RemediationStatus.COMPLETED]
    if site_url:
        base.append(RemediationItem.site_url == site_url)

    rows = session.execute(
        select(RemediationItem.verification_status, func.count())
        .where(*base)
        .group_by(RemediationItem.verification_status)
    ).all()
    counts = {status.value: 0 for status in VerificationStatus}
    for status, count in rows:
        counts[VerificationStatus(status).value] = count

    counts["due"] = session.execute(
        select(func.count())
        .select_from(RemediationItem)
        .where(
            *base,
            RemediationItem.verification_status.in_(list(OPEN_VERIFICATION)),
            or_(RemediationItem.next_check_at.is_(None), RemediationItem.next_check_at <= now),
        )
    ).scalar_one()
    return counts


def build_verification_loop(settings: Optional[Settings] = None, session_factory=None, verifier=None) -> RemediationVerificationLoop:
    settings = settings or load_settings()
    verifier = verifier or build_issue_verifier(settings.collaborators, settings.http_timeout_seconds)
    if verifier is None:
        raise RuntimeError("ISSUE_VERIFIER_URL is not set; cannot run verification")
    return RemediationVerificationLoop(
        settings.verification,
        session_factory or create_session_factory(settings.database),
        verifier,
    )


def main():
    parser = argparse.ArgumentParser(description="Remediation verification loop")
    parser.add_argument("--force", action="store_true", help="Ignore next_check_at")

    args = parser.parse_args()

    settings = load_settings()
    logger.remove()
    logger.add(sys.stdout, level=settings.log_level)

    summary = build_verification_loop(settings).run_once(force=args.force)
    return 0 if summary.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
