import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from cmsflow.config import (
    OAuthConfig,
    ProviderCredentialsConfig,
    PublisherConfig,
    Settings,
    VerificationConfig,
)
from cmsflow.db import models  # noqa: F401
from cmsflow.db.base import Base, create_db_engine, create_session_factory, utcnow
from cmsflow.db.models import (
    ArticleJob,
    ArticleJobStatus,
    CMSConnection,
    ConnectionStatus,
    ProviderType,
    RemediationItem,
    RemediationStatus,
    VerificationStatus,
)


@pytest.fixture
def settings():
    return Settings(
        providers={"webflow": ProviderCredentialsConfig(client_id="wf-client", client_secret="wf-secret")},
        strapi_base_url="https://strapi.example.com",
        publisher=PublisherConfig(
            inter_job_delay_seconds=0,
            run_timeout_seconds=300,
            stale_claim_seconds=900,
            max_publish_retries=3,
        ),
        verification=VerificationConfig(max_attempts=3, base_delay_seconds=3600, backoff_multiplier=2.0),
        oauth=OAuthConfig(state_ttl_seconds=600, redirect_base_url="https://app.example.com"),
        cron_secret="cron-secret",
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'cmsflow.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def make_connection(db):
    def _make(**overrides):
        values = dict(
            owner_token="owner-1",
            site_id=1,
            name="Blog",
            provider_type=ProviderType.WORDPRESS,
            access_token="app-password",
            status=ConnectionStatus.ACTIVE,
            config={"site_url": "https://blog.example.com", "username": "editor"},
        )
        values.update(overrides)
        connection = CMSConnection(**values)
        db.add(connection)
        db.commit()
        return connection
    return _make


@pytest.fixture
def make_job(db):
    def _make(**overrides):
        values = dict(
            owner_token="owner-1",
            site_id=1,
            site_domain="blog.example.com",
            title="Ten Ways to Fix Crawl Errors",
            target_keywords=["crawl errors", "seo"],
            status=ArticleJobStatus.GENERATED,
            body="<p>Generated body</p>",
            meta_description="How to fix crawl errors",
            scheduled_publish_at=utcnow() - timedelta(hours=1),
        )
        values.update(overrides)
        job = ArticleJob(**values)
        db.add(job)
        db.commit()
        return job
    return _make


@pytest.fixture
def make_item(db):
    def _make(**overrides):
        values = dict(
            owner_token="owner-1",
            site_url="https://blog.example.com",
            issue_category="sitemap",
            title="Sitemap missing",
            status=RemediationStatus.COMPLETED,
            verification_status=VerificationStatus.PENDING,
            verification_attempts=0,
        )
        values.update(overrides)
        item = RemediationItem(**values)
        db.add(item)
        db.commit()
        return item
    return _make


@pytest.fixture
def make_response():
    """Build a stand-in for ``requests.Response``."""
    def _make(status_code=200, json_data=None, text=None):
        resp = MagicMock()
        resp.status_code = status_code
        resp.json.return_value = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        resp.text = text
        resp.content = text.encode()
        return resp
    return _make


@pytest.fixture
def http():
    return MagicMock()
