"""Operator triggers for single article jobs."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from cmsflow.api.deps import get_db, get_pipeline
from cmsflow.api.schemas import AdvanceRequest, OwnerRequest, RunSummary
from cmsflow.jobs.verification import verification_status
from cmsflow.services.article_jobs import (
    ArticlePipeline,
    InvalidTransitionError,
    JobNotFoundError,
    RetryBudgetExhaustedError,
    StepOutcome,
)

router = APIRouter()


def _summary(outcome: StepOutcome) -> RunSummary:
    summary = RunSummary(success=outcome.status != "failed")
    if outcome.status == "skipped":
        summary.skipped = 1
        return summary
    summary.processed = 1
    if outcome.status == "published":
        summary.published = 1
    elif outcome.status == "failed":
        summary.failed = 1
        summary.errors = [{"job_id": outcome.job_id, "code": outcome.error_code, "error": outcome.error}]
    return summary


@router.post("/articles/advance", response_model=RunSummary)
def advance_article(
    payload: AdvanceRequest,
    db: Session = Depends(get_db),
    pipeline: ArticlePipeline = Depends(get_pipeline),
):
    """Force one job forward: generate if needed, then publish."""
    try:
        outcome = pipeline.advance(db, payload.job_id, owner_token=payload.owner_token)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _summary(outcome)


@router.post("/articles/{job_id}/retry", response_model=RunSummary)
def retry_article(
    job_id: int,
    payload: OwnerRequest,
    db: Session = Depends(get_db),
    pipeline: ArticlePipeline = Depends(get_pipeline),
):
    """Retry a failed job within its retry budget."""
    try:
        outcome = pipeline.retry(db, job_id, owner_token=payload.owner_token)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidTransitionError, RetryBudgetExhaustedError) as e:
        raise HTTPException(status_code=409, detail={"error": e.code, "message": str(e)})
    return _summary(outcome)


@router.get("/remediation/verification-status")
def get_verification_status(
    owner_token: str = Query(alias="ownerToken"),
    site_url: str | None = Query(default=None, alias="siteUrl"),
    db: Session = Depends(get_db),
):
    """Counts of completed remediation items by verification state."""
    return verification_status(db, owner_token, site_url)
