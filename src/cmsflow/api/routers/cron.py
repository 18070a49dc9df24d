"""Cron triggers. All routes require the shared-secret bearer token."""
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from cmsflow.api.deps import get_pipeline, get_settings, require_cron_secret
from cmsflow.api.schemas import RunSummary
from cmsflow.config import Settings
from cmsflow.jobs.publishing import ScheduledPublisher
from cmsflow.jobs.verification import RemediationVerificationLoop
from cmsflow.services.article_jobs import ArticlePipeline
from cmsflow.services.oauth import OAuthHandshakeManager

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.post("/publish-scheduled", response_model=RunSummary)
def publish_scheduled(
    request: Request,
    limit: int | None = Query(default=None, gt=0),
    settings: Settings = Depends(get_settings),
    pipeline: ArticlePipeline = Depends(get_pipeline),
):
    """Run one scheduled publishing batch."""
    publisher = ScheduledPublisher(settings, request.app.state.session_factory, pipeline)
    return publisher.run_once(limit=limit).to_dict()


@router.post("/verify-remediation")
def verify_remediation(
    request: Request,
    force: bool = Query(default=False),
    settings: Settings = Depends(get_settings),
):
    """Re-check completed remediation items that are due (or all, with force)."""
    verifier = request.app.state.verifier
    if verifier is None:
        raise HTTPException(status_code=503, detail="Issue verifier is not configured")
    loop = RemediationVerificationLoop(settings.verification, request.app.state.session_factory, verifier)
    return loop.run_once(force=force).to_dict()


@router.post("/sweep")
def sweep(request: Request, pipeline: ArticlePipeline = Depends(get_pipeline)):
    """Release stale job claims and delete expired handshake states."""
    with request.app.state.session_factory() as session:
        released = pipeline.release_stale_claims(session)
        expired = OAuthHandshakeManager.sweep_expired(session)
    return {"success": True, "released_claims": released, "expired_states": expired}
