"""Service for logging article job events."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from cmsflow.db.models import JobEvent


class JobEventService:
    """Appends rows to job_events. Callers own the transaction."""

    # Standard event types
    EVENT_CLAIMED = "CLAIMED"
    EVENT_GENERATED = "GENERATED"
    EVENT_GENERATION_FAILED = "GENERATION_FAILED"
    EVENT_PUBLISHED = "PUBLISHED"
    EVENT_PUBLISH_FAILED = "PUBLISH_FAILED"
    EVENT_CONNECTION_RESOLVED = "CONNECTION_RESOLVED"
    EVENT_RETRY_REQUESTED = "RETRY_REQUESTED"
    EVENT_STALE_CLAIM_RELEASED = "STALE_CLAIM_RELEASED"

    @staticmethod
    def log_event(
        session: Session,
        *,
        article_job_id: int,
        event_type: str,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> JobEvent:
        event = JobEvent(
            article_job_id=article_job_id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            error_code=error_code,
            message=message[:1000] if message else message,
            payload=payload,
            worker_id=worker_id,
        )
        session.add(event)
        session.flush()
        return event

    @staticmethod
    def log_transition(
        session: Session,
        article_job_id: int,
        event_type: str,
        old_status: str,
        new_status: str,
        worker_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> JobEvent:
        return JobEventService.log_event(
            session,
            article_job_id=article_job_id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            worker_id=worker_id,
            payload=payload,
        )

    @staticmethod
    def log_failure(
        session: Session,
        article_job_id: int,
        event_type: str,
        old_status: str,
        new_status: str,
        error_code: str,
        message: str,
        worker_id: Optional[str] = None,
    ) -> JobEvent:
        return JobEventService.log_event(
            session,
            article_job_id=article_job_id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            error_code=error_code,
            message=message,
            worker_id=worker_id,
        )

    @staticmethod
    def events_for_job(session: Session, article_job_id: int) -> List[JobEvent]:
        query = select(JobEvent).where(JobEvent.article_job_id == article_job_id).order_by(JobEvent.id.asc())
        return list(session.execute(query).scalars().all())
