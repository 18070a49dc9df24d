"""Article job pipeline: claims, generation and publishing.

Every move into ``generating`` or ``publishing`` is a compare-and-swap on the
row's status. A claim that affects zero rows means another worker owns the
job, and the caller walks away without side effects. The terminal writes of
each step are conditional on the job still being in that step, so a stale
claim released by the sweeper is never overwritten by a late worker.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cmsflow.config import Settings
from cmsflow.db.base import utcnow
from cmsflow.db.models import (
    ArticleJob,
    ArticleJobStatus,
    CMSConnection,
    ConnectionStatus,
    PublishRecord,
)
from cmsflow.errors import (
    CMSFlowError,
    CONFIGURATION_CODES,
    GENERATION_ERROR,
    NO_CMS_CONNECTION,
    NO_CONTENT,
    PROVIDER_ERROR,
    RECONNECT_REQUIRED,
    STALE_CLAIM,
)
from cmsflow.providers.base import (
    DRAFT,
    PUBLISHED,
    ArticlePayload,
    NormalizedArticle,
    ProviderAuthError,
    ProviderConfigError,
    ProviderError,
    ProviderNotConfiguredError,
)
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.collaborators import ContentGenerator
from cmsflow.services.connections import ConnectionService
from cmsflow.services.job_events import JobEventService

S = ArticleJobStatus

NO_CONNECTION_MESSAGE = "No CMS connection configured for this website. Please connect a CMS in Settings."

# new status -> statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[ArticleJobStatus, FrozenSet[ArticleJobStatus]] = {
    S.GENERATING: frozenset({S.PENDING, S.GENERATION_FAILED}),
    S.GENERATED: frozenset({S.GENERATING}),
    S.GENERATION_FAILED: frozenset({S.GENERATING}),
    S.PUBLISHING: frozenset({S.GENERATED, S.PUBLISHING_FAILED}),
    S.PUBLISHED: frozenset({S.PUBLISHING}),
    S.PUBLISHING_FAILED: frozenset({S.PUBLISHING}),
}

PUBLISH_MODES = {"publish": PUBLISHED, "published": PUBLISHED, "auto": PUBLISHED, "draft": DRAFT}


class InvalidTransitionError(CMSFlowError):
    code = "invalid_transition"


class JobNotFoundError(CMSFlowError):
    code = "job_not_found"


class RetryBudgetExhaustedError(CMSFlowError):
    code = "retry_budget_exhausted"


@dataclass
class StepOutcome:
    """What one generate/publish step did to one job."""

    job_id: int
    status: str  # published | generated | failed | skipped
    error_code: Optional[str] = None
    error: Optional[str] = None
    article: Optional[NormalizedArticle] = None

    @property
    def ok(self) -> bool:
        return self.status in ("published", "generated")


class ArticleJobService:
    """Row-level state transitions. All claims go through :meth:`transition`."""

    @staticmethod
    def get(session: Session, job_id: int, owner_token: Optional[str] = None) -> ArticleJob:
        job = session.get(ArticleJob, job_id, populate_existing=True)
        if job is None or (owner_token is not None and job.owner_token != owner_token):
            raise JobNotFoundError(f"Article job {job_id} not found")
        return job

    @staticmethod
    def transition(
        session: Session,
        job_id: int,
        new_status: ArticleJobStatus,
        *,
        expected: Optional[Iterable[ArticleJobStatus]] = None,
        values: Optional[Dict[str, Any]] = None,
        conditions: Iterable[Any] = (),
    ) -> bool:
        """Compare-and-swap ``status``. Returns False when no row matched."""
        allowed = ALLOWED_TRANSITIONS.get(new_status)
        if allowed is None:
            raise InvalidTransitionError(f"{new_status.value} cannot be entered by a transition")
        prior = frozenset(expected) if expected is not None else allowed
        if not prior <= allowed:
            bad = ", ".join(sorted(s.value for s in prior - allowed))
            raise InvalidTransitionError(f"{bad} -> {new_status.value} is not a legal transition")

        result = session.execute(
            update(ArticleJob)
            .where(ArticleJob.id == job_id, ArticleJob.status.in_(list(prior)), *conditions)
            .values(status=new_status, updated_at=utcnow(), **(values or {}))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def claim(session: Session, job_id: int, step: ArticleJobStatus) -> bool:
        """Claim a job for ``generating`` or ``publishing`` and commit at once."""
        if step not in (S.GENERATING, S.PUBLISHING):
            raise InvalidTransitionError(f"{step.value} is not a claimable step")
        claimed = ArticleJobService.transition(session, job_id, step, values={"claimed_at": utcnow()})
        session.commit()
        return claimed

    @staticmethod
    def due_for_publishing(session: Session, now: datetime, limit: int) -> List[int]:
        """Ids of scheduled jobs that are due, oldest schedule first."""
        query = (
            select(ArticleJob.id)
            .where(
                ArticleJob.status.in_([S.GENERATED, S.PENDING]),
                ArticleJob.scheduled_publish_at.is_not(None),
                ArticleJob.scheduled_publish_at <= now,
            )
            .order_by(ArticleJob.scheduled_publish_at.asc(), ArticleJob.id.asc())
            .limit(limit)
        )
        return list(session.execute(query).scalars().all())


class ArticlePipeline:
    """Drives one job at a time through generation and publishing."""

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        generator: Optional[ContentGenerator] = None,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.generator = generator
        self.worker_id = worker_id

    # Generation

    def generate(self, session: Session, job_id: int) -> StepOutcome:
        job = ArticleJobService.get(session, job_id)
        old_status = job.status
        if not ArticleJobService.claim(session, job_id, S.GENERATING):
            logger.info("[PIPELINE] Job {} already claimed or not generatable ({})", job_id, old_status.value)
            return StepOutcome(job_id, "skipped", error="already_claimed")
        JobEventService.log_transition(
            session, job_id, JobEventService.EVENT_CLAIMED, old_status.value, S.GENERATING.value, self.worker_id
        )
        session.commit()

        if self.generator is None:
            return self._fail_generation(session, job_id, "No content generator configured")

        try:
            content = self.generator.generate(
                title=job.title,
                keywords=list(job.target_keywords or []),
                domain=job.site_domain,
            )
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception("[PIPELINE] Generation failed for job {}", job_id)
            return self._fail_generation(session, job_id, str(e))

        if not content.content:
            return self._fail_generation(session, job_id, "Generator returned empty content")

        now = utcnow()
        stored = ArticleJobService.transition(
            session,
            job_id,
            S.GENERATED,
            values={
                "body": content.content,
                "meta_title": content.meta_title,
                "meta_description": content.meta_description,
                "content_outline": content.content_outline,
                "word_count": content.word_count,
                "generated_at": now,
                "claimed_at": None,
                "error_message": None,
                "error_code": None,
            },
        )
        if not stored:
            session.rollback()
            logger.warning("[PIPELINE] Job {} left 'generating' before its content was stored", job_id)
            return StepOutcome(job_id, "skipped", error="claim_lost")
        JobEventService.log_transition(
            session, job_id, JobEventService.EVENT_GENERATED, S.GENERATING.value, S.GENERATED.value,
            self.worker_id, payload={"word_count": content.word_count},
        )
        session.commit()
        logger.info("[PIPELINE] Job {} generated ({} words)", job_id, content.word_count)
        return StepOutcome(job_id, "generated")

    def _fail_generation(self, session: Session, job_id: int, message: str) -> StepOutcome:
        ArticleJobService.transition(
            session,
            job_id,
            S.GENERATION_FAILED,
            values={"error_message": message[:1000], "error_code": GENERATION_ERROR, "claimed_at": None},
        )
        JobEventService.log_failure(
            session, job_id, JobEventService.EVENT_GENERATION_FAILED, S.GENERATING.value,
            S.GENERATION_FAILED.value, GENERATION_ERROR, message, self.worker_id,
        )
        session.commit()
        logger.error("[PIPELINE] Job {} generation failed: {}", job_id, message)
        return StepOutcome(job_id, "failed", error_code=GENERATION_ERROR, error=message)

    # Publishing

    def publish(self, session: Session, job_id: int) -> StepOutcome:
        job = ArticleJobService.get(session, job_id)
        old_status = job.status
        if not ArticleJobService.claim(session, job_id, S.PUBLISHING):
            logger.info("[PIPELINE] Job {} already claimed or not publishable ({})", job_id, old_status.value)
            return StepOutcome(job_id, "skipped", error="already_claimed")
        JobEventService.log_transition(
            session, job_id, JobEventService.EVENT_CLAIMED, old_status.value, S.PUBLISHING.value, self.worker_id
        )
        session.commit()
        job = ArticleJobService.get(session, job_id)

        if not job.body:
            return self._fail_publish(session, job, NO_CONTENT, "Article has no generated content to publish")

        connection = self._resolve_connection(session, job)
        if connection is None:
            logger.error("[PIPELINE] Job {} has no CMS connection - cannot publish", job_id)
            return self._fail_publish(session, job, NO_CMS_CONNECTION, NO_CONNECTION_MESSAGE)

        if connection.status != ConnectionStatus.ACTIVE:
            return self._fail_publish(
                session, job, RECONNECT_REQUIRED,
                f"CMS connection {connection.id} is {connection.status.value}; reconnect it in Settings.",
            )

        try:
            provider = self.registry.get(connection.provider_type)
            skew = timedelta(seconds=self.settings.publisher.token_refresh_skew_seconds)
            bundle = ConnectionService.ensure_fresh_credentials(session, connection, provider, skew)
            config = connection.config or {}
            target = job.target_id or config.get("target_id")
            payload = self._payload(session, job, connection)
            article = provider.publish_article(
                bundle,
                target,
                payload,
                field_mapping=ConnectionService.field_mapping_for(connection),
            )
        except ProviderNotConfiguredError as e:
            return self._fail_publish(session, job, e.code, str(e))
        except ProviderAuthError as e:
            ConnectionService.mark_error(session, connection.id, str(e))
            return self._fail_publish(
                session, job, RECONNECT_REQUIRED,
                f"{connection.provider_type.value} rejected the stored credentials; reconnect the CMS in Settings.",
            )
        except ProviderConfigError as e:
            return self._fail_publish(session, job, e.code, str(e))
        except ProviderError as e:
            return self._fail_publish(session, job, e.code, str(e))
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception("[PIPELINE] Unexpected error publishing job {}", job_id)
            return self._fail_publish(session, job, PROVIDER_ERROR, str(e))

        return self._complete_publish(session, job, connection, target, article)

    def _resolve_connection(self, session: Session, job: ArticleJob) -> Optional[CMSConnection]:
        if job.cms_connection_id is not None:
            connection = session.get(CMSConnection, job.cms_connection_id)
            if connection is not None:
                return connection

        logger.info("[PIPELINE] Job {} missing cms_connection_id, looking up site {}", job.id, job.site_id)
        connection = ConnectionService.find_active_for_site(session, job.owner_token, job.site_id)
        if connection is None:
            return None

        # Pin it for future attempts
        session.execute(
            update(ArticleJob)
            .where(ArticleJob.id == job.id)
            .values(cms_connection_id=connection.id)
            .execution_options(synchronize_session=False)
        )
        JobEventService.log_event(
            session,
            article_job_id=job.id,
            event_type=JobEventService.EVENT_CONNECTION_RESOLVED,
            message=f"Using {connection.provider_type.value} connection {connection.id}",
            payload={"cms_connection_id": connection.id},
            worker_id=self.worker_id,
        )
        session.commit()
        logger.info("[PIPELINE] Found CMS connection {} for site {}", connection.id, job.site_id)
        return connection

    def _payload(self, session: Session, job: ArticleJob, connection: CMSConnection) -> ArticlePayload:
        mode = (connection.config or {}).get("publish_mode") or self.settings.publisher.publish_mode
        previous = session.execute(
            select(PublishRecord.external_id)
            .where(PublishRecord.article_job_id == job.id, PublishRecord.connection_id == connection.id)
            .order_by(PublishRecord.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return ArticlePayload(
            title=job.title,
            content=job.body,
            slug=job.slug,
            excerpt=job.meta_description,
            meta_title=job.meta_title,
            meta_description=job.meta_description,
            tags=list(job.target_keywords or []),
            status=PUBLISH_MODES.get(str(mode).lower(), DRAFT),
            # Re-publishing updates the remote entry instead of duplicating it
            external_id=previous,
        )

    def _complete_publish(
        self,
        session: Session,
        job: ArticleJob,
        connection: CMSConnection,
        target: Optional[str],
        article: NormalizedArticle,
    ) -> StepOutcome:
        now = utcnow()
        record = session.execute(
            select(PublishRecord).where(
                PublishRecord.connection_id == connection.id, PublishRecord.external_id == article.id
            )
        ).scalar_one_or_none()
        if record is None:
            record = PublishRecord(article_job_id=job.id, connection_id=connection.id, external_id=article.id)
            session.add(record)
        record.target_id = target
        record.title = article.title or job.title
        record.slug = article.slug
        record.status = article.status
        record.url = article.url
        record.remote_published_at = article.published_at

        stored = ArticleJobService.transition(
            session,
            job.id,
            S.PUBLISHED,
            values={
                "cms_connection_id": connection.id,
                "cms_article_id": article.id,
                "cms_article_url": article.url,
                "remote_status": article.status,
                "published_at": now,
                "claimed_at": None,
                "error_message": None,
                "error_code": None,
            },
        )
        if not stored:
            # The remote entry exists; keep its history even though the claim was lost
            logger.warning("[PIPELINE] Job {} left 'publishing' before completion was stored", job.id)
            session.commit()
            return StepOutcome(job.id, "skipped", error="claim_lost", article=article)

        JobEventService.log_transition(
            session, job.id, JobEventService.EVENT_PUBLISHED, S.PUBLISHING.value, S.PUBLISHED.value,
            self.worker_id, payload={"external_id": article.id, "remote_status": article.status, "url": article.url},
        )
        session.commit()
        ConnectionService.mark_synced(session, connection.id)
        logger.success("[PIPELINE] Job {} published to {} as {} ({})", job.id, connection.provider_type.value, article.id, article.status)
        return StepOutcome(job.id, "published", article=article)

    def _fail_publish(self, session: Session, job: ArticleJob, code: str, message: str) -> StepOutcome:
        values: Dict[str, Any] = {"error_message": message[:1000], "error_code": code, "claimed_at": None}
        if code not in CONFIGURATION_CODES:
            values["retry_count"] = ArticleJob.retry_count + 1
        # body is never written on failure
        stored = ArticleJobService.transition(session, job.id, S.PUBLISHING_FAILED, values=values)
        if stored:
            JobEventService.log_failure(
                session, job.id, JobEventService.EVENT_PUBLISH_FAILED, S.PUBLISHING.value,
                S.PUBLISHING_FAILED.value, code, message, self.worker_id,
            )
        session.commit()
        logger.error("[PIPELINE] Job {} publishing failed [{}]: {}", job.id, code, message)
        return StepOutcome(job.id, "failed", error_code=code, error=message)

    # Operator triggers

    def advance(self, session: Session, job_id: int, owner_token: Optional[str] = None) -> StepOutcome:
        """Take a job as far as it can go right now: generate if needed, then publish."""
        job = ArticleJobService.get(session, job_id, owner_token)
        if job.status in (S.PENDING, S.GENERATION_FAILED):
            outcome = self.generate(session, job_id)
            if not outcome.ok:
                return outcome
            job = ArticleJobService.get(session, job_id)
        if job.status in (S.GENERATED, S.PUBLISHING_FAILED):
            return self.publish(session, job_id)
        if job.status == S.PUBLISHED:
            return StepOutcome(job_id, "skipped", error="already_published")
        return StepOutcome(job_id, "skipped", error=f"in_progress:{job.status.value}")

    def retry(self, session: Session, job_id: int, owner_token: Optional[str] = None) -> StepOutcome:
        job = ArticleJobService.get(session, job_id, owner_token)
        if job.status not in (S.GENERATION_FAILED, S.PUBLISHING_FAILED):
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value}; only failed jobs can be retried")
        if job.retry_count >= self.settings.publisher.max_publish_retries:
            raise RetryBudgetExhaustedError(
                f"Job {job_id} already failed {job.retry_count} times (limit {self.settings.publisher.max_publish_retries})"
            )
        JobEventService.log_event(
            session,
            article_job_id=job_id,
            event_type=JobEventService.EVENT_RETRY_REQUESTED,
            old_status=job.status.value,
            payload={"retry_count": job.retry_count},
            worker_id=self.worker_id,
        )
        session.commit()
        return self.advance(session, job_id)

    # Maintenance

    def release_stale_claims(self, session: Session, now: Optional[datetime] = None) -> int:
        """Move jobs whose claim outlived the stale timeout to their failure state."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.publisher.stale_claim_seconds)
        released = 0
        for step, failed in ((S.GENERATING, S.GENERATION_FAILED), (S.PUBLISHING, S.PUBLISHING_FAILED)):
            stale_ids = session.execute(
                select(ArticleJob.id).where(ArticleJob.status == step, ArticleJob.claimed_at < cutoff)
            ).scalars().all()
            for job_id in stale_ids:
                message = f"Worker did not finish '{step.value}' within {self.settings.publisher.stale_claim_seconds}s"
                ok = ArticleJobService.transition(
                    session,
                    job_id,
                    failed,
                    expected=[step],
                    values={"error_message": message, "error_code": STALE_CLAIM, "claimed_at": None},
                    conditions=[ArticleJob.claimed_at < cutoff],
                )
                if ok:
                    JobEventService.log_failure(
                        session, job_id, JobEventService.EVENT_STALE_CLAIM_RELEASED, step.value,
                        failed.value, STALE_CLAIM, message, self.worker_id,
                    )
                    released += 1
            session.commit()
        if released:
            logger.warning("[PIPELINE] Released {} stale claims", released)
        return released
