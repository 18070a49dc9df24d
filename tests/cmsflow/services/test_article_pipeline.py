from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from cmsflow.db.base import utcnow
from cmsflow.db.models import (
    ArticleJob,
    ArticleJobStatus,
    ConnectionStatus,
    ProviderType,
    PublishRecord,
)
from cmsflow.providers.base import (
    NormalizedArticle,
    ProviderAuthError,
    ProviderNotConfiguredError,
    ProviderTransientError,
)
from cmsflow.services.article_jobs import (
    ALLOWED_TRANSITIONS,
    ArticleJobService,
    ArticlePipeline,
    InvalidTransitionError,
    RetryBudgetExhaustedError,
)
from cmsflow.services.collaborators import GeneratedContent
from cmsflow.services.job_events import JobEventService

S = ArticleJobStatus


def _article(external_id="remote-1", status="draft"):
    return NormalizedArticle(
        id=external_id,
        title="Ten Ways to Fix Crawl Errors",
        content="<p>Generated body</p>",
        excerpt="How to fix crawl errors",
        slug="ten-ways",
        status=status,
        published_at=None if status == "draft" else datetime(2024, 5, 1, tzinfo=timezone.utc),
        url="https://blog.example.com/ten-ways/",
    )


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.publish_article.return_value = _article()
    return provider


@pytest.fixture
def registry(provider):
    registry = MagicMock()
    registry.get.return_value = provider
    return registry


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.generate.return_value = GeneratedContent(
        content="<p>Fresh body</p>", meta_title="Ten Ways", meta_description="Fix them", word_count=2
    )
    return generator


@pytest.fixture
def pipeline(settings, registry, generator):
    return ArticlePipeline(settings, registry, generator=generator, worker_id="test")


def _reload(db, job_id):
    return ArticleJobService.get(db, job_id)


def _event_types(db, job_id):
    return [e.event_type for e in JobEventService.events_for_job(db, job_id)]


# Claims and transitions

def test_concurrent_claims_only_one_wins(session_factory, make_job):
    make_job(id=7, status=S.GENERATED)

    with session_factory() as first, session_factory() as second:
        won = ArticleJobService.claim(first, 7, S.PUBLISHING)
        lost = ArticleJobService.claim(second, 7, S.PUBLISHING)

    assert won is True
    assert lost is False
    with session_factory() as check:
        job = ArticleJobService.get(check, 7)
        assert job.status == S.PUBLISHING
        assert job.claimed_at is not None


def test_illegal_transitions_raise(db, make_job):
    job = make_job(status=S.GENERATED)
    with pytest.raises(InvalidTransitionError):
        ArticleJobService.transition(db, job.id, S.PUBLISHED, expected=[S.GENERATED])
    with pytest.raises(InvalidTransitionError):
        ArticleJobService.transition(db, job.id, S.PENDING)
    with pytest.raises(InvalidTransitionError):
        ArticleJobService.claim(db, job.id, S.GENERATED)


def test_published_is_terminal():
    assert all(S.PUBLISHED not in prior for prior in ALLOWED_TRANSITIONS.values())
    assert S.PENDING not in ALLOWED_TRANSITIONS


def test_due_for_publishing_selection(db, make_job):
    past = utcnow() - timedelta(hours=2)
    generated = make_job(status=S.GENERATED, scheduled_publish_at=past)
    pending = make_job(status=S.PENDING, body=None, scheduled_publish_at=past + timedelta(minutes=5))
    make_job(status=S.GENERATED, scheduled_publish_at=utcnow() + timedelta(hours=1))
    make_job(status=S.PUBLISHED, scheduled_publish_at=past)
    make_job(status=S.GENERATED, scheduled_publish_at=None)

    assert ArticleJobService.due_for_publishing(db, utcnow(), limit=10) == [generated.id, pending.id]
    assert ArticleJobService.due_for_publishing(db, utcnow(), limit=1) == [generated.id]


# Publishing

def test_publish_success_records_remote_entry(db, pipeline, provider, make_job, make_connection):
    connection = make_connection()
    job = make_job(cms_connection_id=connection.id)

    outcome = pipeline.publish(db, job.id)

    assert outcome.status == "published"
    job = _reload(db, job.id)
    assert job.status == S.PUBLISHED
    assert job.cms_article_id == "remote-1"
    assert job.remote_status == "draft"
    assert job.claimed_at is None
    record = db.execute(select(PublishRecord)).scalar_one()
    assert (record.article_job_id, record.connection_id, record.external_id) == (job.id, connection.id, "remote-1")
    assert _event_types(db, job.id) == ["CLAIMED", "PUBLISHED"]

    payload = provider.publish_article.call_args.args[2]
    assert payload.status == "draft"
    assert payload.external_id is None
    assert payload.tags == ["crawl errors", "seo"]


def test_publish_respects_connection_publish_mode(db, pipeline, provider, make_job, make_connection):
    connection = make_connection(config={"site_url": "https://blog.example.com", "publish_mode": "publish"})
    job = make_job(cms_connection_id=connection.id)
    pipeline.publish(db, job.id)
    assert provider.publish_article.call_args.args[2].status == "published"


def test_publish_falls_back_to_newest_active_connection(db, pipeline, registry, make_job, make_connection):
    make_connection(provider_type=ProviderType.WORDPRESS, created_at=utcnow() - timedelta(days=3))
    newest = make_connection(
        provider_type=ProviderType.STRAPI, created_at=utcnow() - timedelta(days=1), config={"site_url": "https://cms.example.com"}
    )
    make_connection(provider_type=ProviderType.WEBFLOW, status=ConnectionStatus.INACTIVE, created_at=utcnow())
    job = make_job()

    outcome = pipeline.publish(db, job.id)

    assert outcome.status == "published"
    assert registry.get.call_args.args[0] == ProviderType.STRAPI
    assert _reload(db, job.id).cms_connection_id == newest.id
    assert "CONNECTION_RESOLVED" in _event_types(db, job.id)


def test_publish_without_connection_fails_and_keeps_body(db, pipeline, registry, make_job):
    job = make_job()

    outcome = pipeline.publish(db, job.id)

    assert outcome.status == "failed"
    assert outcome.error_code == "no_cms_connection"
    job = _reload(db, job.id)
    assert job.status == S.PUBLISHING_FAILED
    assert "no cms connection" in job.error_message.lower()
    assert job.body == "<p>Generated body</p>"
    assert job.retry_count == 0
    registry.get.assert_not_called()


def test_publish_auth_error_marks_connection(db, pipeline, provider, make_job, make_connection):
    connection = make_connection()
    job = make_job(cms_connection_id=connection.id)
    provider.publish_article.side_effect = ProviderAuthError("401 Unauthorized", status_code=401)

    outcome = pipeline.publish(db, job.id)

    assert outcome.error_code == "reconnect_required"
    db.refresh(connection)
    assert connection.status == ConnectionStatus.ERROR
    assert "401" in connection.last_error
    assert _reload(db, job.id).retry_count == 0


def test_publish_with_errored_connection_needs_reconnect(db, pipeline, provider, make_job, make_connection):
    connection = make_connection(status=ConnectionStatus.ERROR)
    job = make_job(cms_connection_id=connection.id)

    outcome = pipeline.publish(db, job.id)

    assert outcome.error_code == "reconnect_required"
    provider.publish_article.assert_not_called()


def test_publish_transient_error_spends_retry_budget(db, pipeline, provider, make_job, make_connection):
    connection = make_connection()
    job = make_job(cms_connection_id=connection.id)
    provider.publish_article.side_effect = ProviderTransientError("503 Service Unavailable", status_code=503)

    outcome = pipeline.publish(db, job.id)

    assert outcome.error_code == "provider_transient"
    job = _reload(db, job.id)
    assert job.status == S.PUBLISHING_FAILED
    assert job.retry_count == 1
    assert job.body == "<p>Generated body</p>"
    assert _event_types(db, job.id) == ["CLAIMED", "PUBLISH_FAILED"]


def test_publish_unconfigured_provider(db, pipeline, registry, make_job, make_connection):
    connection = make_connection(provider_type=ProviderType.SHOPIFY)
    job = make_job(cms_connection_id=connection.id)
    registry.get.side_effect = ProviderNotConfiguredError("shopify is not configured")

    outcome = pipeline.publish(db, job.id)

    assert outcome.error_code == "provider_not_configured"


def test_republish_updates_existing_remote_entry(db, pipeline, provider, make_job, make_connection):
    connection = make_connection()
    job = make_job(cms_connection_id=connection.id, status=S.PUBLISHING_FAILED, retry_count=1)
    db.add(PublishRecord(
        article_job_id=job.id, connection_id=connection.id, external_id="remote-1", title=job.title, status="draft"
    ))
    db.commit()

    outcome = pipeline.publish(db, job.id)

    assert outcome.status == "published"
    assert provider.publish_article.call_args.args[2].external_id == "remote-1"
    assert db.execute(select(func.count()).select_from(PublishRecord)).scalar_one() == 1


def test_publish_skips_job_claimed_elsewhere(db, pipeline, provider, make_job):
    job = make_job(status=S.PUBLISHING, claimed_at=utcnow())
    outcome = pipeline.publish(db, job.id)
    assert outcome.status == "skipped"
    provider.publish_article.assert_not_called()


# Generation

def test_generate_stores_content(db, pipeline, generator, make_job):
    job = make_job(status=S.PENDING, body=None, meta_description=None)

    outcome = pipeline.generate(db, job.id)

    assert outcome.status == "generated"
    generator.generate.assert_called_once_with(
        title=job.title, keywords=["crawl errors", "seo"], domain="blog.example.com"
    )
    job = _reload(db, job.id)
    assert job.status == S.GENERATED
    assert job.body == "<p>Fresh body</p>"
    assert job.meta_description == "Fix them"
    assert job.generated_at is not None


def test_generate_failure_leaves_body_empty(db, pipeline, generator, make_job):
    job = make_job(status=S.PENDING, body=None)
    generator.generate.side_effect = RuntimeError("model overloaded")

    outcome = pipeline.generate(db, job.id)

    assert outcome.error_code == "generation_error"
    job = _reload(db, job.id)
    assert job.status == S.GENERATION_FAILED
    assert job.body is None
    assert "overloaded" in job.error_message


def test_generate_without_generator(db, settings, registry, make_job):
    job = make_job(status=S.PENDING, body=None)
    outcome = ArticlePipeline(settings, registry).generate(db, job.id)
    assert outcome.status == "failed"
    assert _reload(db, job.id).status == S.GENERATION_FAILED


def test_advance_generates_then_publishes(db, pipeline, provider, make_job, make_connection):
    connection = make_connection()
    job = make_job(status=S.PENDING, body=None, cms_connection_id=connection.id)

    outcome = pipeline.advance(db, job.id, owner_token="owner-1")

    assert outcome.status == "published"
    assert provider.publish_article.call_args.args[2].content == "<p>Fresh body</p>"
    assert _event_types(db, job.id) == ["CLAIMED", "GENERATED", "CLAIMED", "PUBLISHED"]


def test_advance_published_job_is_noop(db, pipeline, make_job):
    job = make_job(status=S.PUBLISHED)
    assert pipeline.advance(db, job.id).error == "already_published"


# Retry and maintenance

def test_retry_within_budget(db, pipeline, make_job, make_connection):
    connection = make_connection()
    job = make_job(status=S.PUBLISHING_FAILED, retry_count=2, cms_connection_id=connection.id)

    outcome = pipeline.retry(db, job.id, owner_token="owner-1")

    assert outcome.status == "published"
    assert _event_types(db, job.id)[0] == "RETRY_REQUESTED"


def test_retry_budget_exhausted(db, pipeline, make_job):
    job = make_job(status=S.PUBLISHING_FAILED, retry_count=3)
    with pytest.raises(RetryBudgetExhaustedError):
        pipeline.retry(db, job.id)


def test_retry_rejects_non_failed_job(db, pipeline, make_job):
    job = make_job(status=S.PUBLISHED)
    with pytest.raises(InvalidTransitionError):
        pipeline.retry(db, job.id)


def test_release_stale_claims(db, pipeline, make_job):
    stale = make_job(status=S.PUBLISHING, claimed_at=utcnow() - timedelta(hours=1))
    fresh = make_job(status=S.GENERATING, claimed_at=utcnow() - timedelta(minutes=1))

    assert pipeline.release_stale_claims(db) == 1

    stale_job = _reload(db, stale.id)
    assert stale_job.status == S.PUBLISHING_FAILED
    assert stale_job.error_code == "stale_claim"
    assert _reload(db, fresh.id).status == S.GENERATING

    # A late worker can no longer complete the released job
    assert ArticleJobService.transition(db, stale.id, S.PUBLISHED) is False
