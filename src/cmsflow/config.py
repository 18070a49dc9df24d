"""Configuration models for the publishing pipeline and verification loop."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class DatabaseConfig(BaseModel):
    """Connection settings for the datastore."""

    url: str = "sqlite:///cmsflow.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle: int = 3600
    ssl_mode: Optional[str] = "prefer"


class ProviderCredentialsConfig(BaseModel):
    """OAuth client registration for one CMS platform."""

    client_id: str
    client_secret: str
    api_base_url: Optional[str] = None


class PublisherConfig(BaseModel):
    """Scheduled publisher tuning."""

    batch_limit: int = Field(default=50, gt=0)
    inter_job_delay_seconds: float = Field(default=2.0, ge=0)
    run_timeout_seconds: int = Field(default=300, gt=0)
    stale_claim_seconds: int = Field(default=900, gt=0)
    max_publish_retries: int = Field(default=3, ge=0)
    token_refresh_skew_seconds: int = Field(default=300, ge=0)
    loop_interval_seconds: int = Field(default=1800, gt=0)
    publish_mode: str = "draft"  # draft | publish, when a connection does not say


class VerificationConfig(BaseModel):
    """Bound and backoff for remediation verification.

    A failing item is rescheduled ``max_attempts`` times. The delay before
    recheck ``n`` (1-based) is ``base_delay * multiplier ** (n - 1)``, capped
    at ``max_delay``.
    """

    max_attempts: int = Field(default=5, gt=0)
    base_delay_seconds: int = Field(default=3600, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    batch_limit: int = Field(default=100, gt=0)

    def delay_for_attempt(self, attempt: int) -> timedelta:
        seconds = self.base_delay_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


class OAuthConfig(BaseModel):
    """Handshake settings."""

    state_ttl_seconds: int = Field(default=600, gt=0)
    redirect_base_url: str = "http://localhost:3000"


class CollaboratorConfig(BaseModel):
    """External services consumed by the pipeline."""

    generator_url: Optional[str] = None
    generator_api_key: Optional[str] = None
    verifier_url: Optional[str] = None
    verifier_api_key: Optional[str] = None


class Settings(BaseModel):
    """Global settings."""

    database: DatabaseConfig = DatabaseConfig()
    providers: Dict[str, ProviderCredentialsConfig] = {}  # provider type -> OAuth client
    strapi_base_url: str = "http://localhost:1337"
    publisher: PublisherConfig = PublisherConfig()
    verification: VerificationConfig = VerificationConfig()
    oauth: OAuthConfig = OAuthConfig()
    collaborators: CollaboratorConfig = CollaboratorConfig()
    cron_secret: Optional[str] = None
    http_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    def get_provider_credentials(self, provider_type: str) -> Optional[ProviderCredentialsConfig]:
        """Return the OAuth client for a platform, or None if not configured."""
        return self.providers.get(provider_type)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _oauth_client(prefix: str) -> Optional[ProviderCredentialsConfig]:
    client_id = os.getenv(f"{prefix}_CLIENT_ID")
    client_secret = os.getenv(f"{prefix}_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return ProviderCredentialsConfig(
        client_id=client_id,
        client_secret=client_secret,
        api_base_url=os.getenv(f"{prefix}_API_BASE_URL") or None,
    )


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", "sqlite:///cmsflow.db"),
            pool_size=_env_int("DB_POOL_SIZE", 10),
            max_overflow=_env_int("DB_MAX_OVERFLOW", 20),
            pool_recycle=_env_int("DB_POOL_RECYCLE", 3600),
            ssl_mode=os.getenv("DB_SSL_MODE", "prefer") or None,
        )

        # Only platforms with a registered OAuth client are offered
        providers = {}
        for provider_type, prefix in (("webflow", "WEBFLOW"), ("shopify", "SHOPIFY")):
            client = _oauth_client(prefix)
            if client:
                providers[provider_type] = client

        publisher = PublisherConfig(
            batch_limit=_env_int("PUBLISH_BATCH_LIMIT", 50),
            inter_job_delay_seconds=_env_float("PUBLISH_INTER_JOB_DELAY", 2.0),
            run_timeout_seconds=_env_int("PUBLISH_RUN_TIMEOUT", 300),
            stale_claim_seconds=_env_int("STALE_CLAIM_SECONDS", 900),
            max_publish_retries=_env_int("MAX_PUBLISH_RETRIES", 3),
            token_refresh_skew_seconds=_env_int("TOKEN_REFRESH_SKEW", 300),
            loop_interval_seconds=_env_int("PUBLISH_LOOP_INTERVAL", 1800),
            publish_mode=os.getenv("DEFAULT_PUBLISH_MODE", "draft"),
        )

        verification = VerificationConfig(
            max_attempts=_env_int("VERIFY_MAX_ATTEMPTS", 5),
            base_delay_seconds=_env_int("VERIFY_BASE_DELAY", 3600),
            backoff_multiplier=_env_float("VERIFY_BACKOFF_MULTIPLIER", 2.0),
            max_delay_seconds=_env_int("VERIFY_MAX_DELAY", 7 * 24 * 3600),
            batch_limit=_env_int("VERIFY_BATCH_LIMIT", 100),
        )

        oauth = OAuthConfig(
            state_ttl_seconds=_env_int("OAUTH_STATE_TTL", 600),
            redirect_base_url=os.getenv("APP_URL", "http://localhost:3000"),
        )

        collaborators = CollaboratorConfig(
            generator_url=os.getenv("CONTENT_GENERATOR_URL") or None,
            generator_api_key=os.getenv("CONTENT_GENERATOR_API_KEY") or None,
            verifier_url=os.getenv("ISSUE_VERIFIER_URL") or None,
            verifier_api_key=os.getenv("ISSUE_VERIFIER_API_KEY") or None,
        )

        return Settings(
            database=database,
            providers=providers,
            strapi_base_url=os.getenv("STRAPI_URL", "http://localhost:1337"),
            publisher=publisher,
            verification=verification,
            oauth=oauth,
            collaborators=collaborators,
            cron_secret=os.getenv("CRON_SECRET") or None,
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 30.0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid settings: {e}") from e
