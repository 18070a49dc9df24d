"""Request-scoped dependencies. Everything hangs off ``app.state``; nothing is global."""
import hmac
from typing import Iterator

from fastapi import Header, HTTPException, Request
from sqlalchemy.orm import Session

from cmsflow.config import Settings
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.article_jobs import ArticlePipeline


def get_db(request: Request) -> Iterator[Session]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_pipeline(request: Request) -> ArticlePipeline:
    return request.app.state.pipeline


def require_cron_secret(request: Request, authorization: str = Header(default="")) -> None:
    secret = request.app.state.settings.cron_secret
    # Unset secret means the cron surface is closed, not open
    # Headers arrive latin-1 decoded; compare_digest only accepts ASCII str
    if not secret or not hmac.compare_digest(authorization.encode("latin-1"), f"Bearer {secret}".encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
