"""FastAPI application factory."""
from typing import Optional

from fastapi import FastAPI
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from cmsflow import __version__
from cmsflow.config import Settings, load_settings
from cmsflow.db.base import create_session_factory
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.article_jobs import ArticlePipeline
from cmsflow.services.collaborators import (
    ContentGenerator,
    IssueVerifier,
    build_content_generator,
    build_issue_verifier,
)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker[Session]] = None,
    registry: Optional[ProviderRegistry] = None,
    generator: Optional[ContentGenerator] = None,
    verifier: Optional[IssueVerifier] = None,
) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(
        title="CMSFlow API",
        description="Article publishing pipeline and remediation verification triggers",
        version=__version__,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory or create_session_factory(settings.database)
    app.state.registry = registry or ProviderRegistry(settings)
    app.state.pipeline = ArticlePipeline(
        settings,
        app.state.registry,
        generator=generator or build_content_generator(settings.collaborators, settings.http_timeout_seconds),
        worker_id="api",
    )
    app.state.verifier = verifier or build_issue_verifier(settings.collaborators, settings.http_timeout_seconds)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__, "providers": app.state.registry.available()}

    # Import and include routers
    from cmsflow.api.routers import articles, cms, cron

    app.include_router(cron.router, prefix="/api/cron", tags=["cron"])
    app.include_router(articles.router, prefix="/api", tags=["articles"])
    app.include_router(cms.router, prefix="/api/cms", tags=["cms"])

    logger.info("[API] App created with providers {}", app.state.registry.available())
    return app
