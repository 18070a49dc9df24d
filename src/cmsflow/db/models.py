"""ORM models for the publishing pipeline and remediation tracking."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cmsflow.db.base import Base, utcnow

# Utility for cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Stored as plain strings so new members never need a native type migration
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class ArticleJobStatus(str, enum.Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    GENERATION_FAILED = "generation_failed"
    PUBLISHING_FAILED = "publishing_failed"


class ProviderType(str, enum.Enum):
    """Supported CMS platforms, one adapter each."""

    WORDPRESS = "wordpress"  # form-auth (application passwords)
    WEBFLOW = "webflow"  # OAuth + site/collection hierarchy
    SHOPIFY = "shopify"  # OAuth + shop domain
    STRAPI = "strapi"  # token-only


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    ERROR = "error"
    INACTIVE = "inactive"


class RemediationStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    NEEDS_RECHECK = "needs_recheck"
    FAILED = "failed"


class CMSConnection(Base):
    """One authorized link between a site and one external CMS account."""

    __tablename__ = "cms_connections"

    __table_args__ = (
        Index("idx_cms_connections_owner", "owner_token"),
        Index("idx_cms_connections_site_status", "site_id", "status", "created_at"),
        # Exactly one active connection per (site, provider)
        Index(
            "uq_cms_connections_active_site_provider",
            "site_id",
            "provider_type",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_token: Mapped[str] = mapped_column(String(255), nullable=False)
    site_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_type: Mapped[ProviderType] = mapped_column(_enum_column(ProviderType), nullable=False)

    # Credential bundle
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scopes: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)

    # target_id, field_mapping, publish_mode, site_url, shop_domain, username
    config: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    status: Mapped[ConnectionStatus] = mapped_column(
        _enum_column(ConnectionStatus), default=ConnectionStatus.ACTIVE, nullable=False
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    # Relationships
    article_jobs: Mapped[List["ArticleJob"]] = relationship(back_populates="cms_connection")
    publish_records: Mapped[List["PublishRecord"]] = relationship(back_populates="connection")

    def __repr__(self) -> str:
        return f"<CMSConnection id={self.id} site={self.site_id} provider={self.provider_type} status={self.status}>"


class ArticleJob(Base):
    """One unit of content to be produced and published."""

    __tablename__ = "article_jobs"

    __table_args__ = (
        Index("idx_article_jobs_status_scheduled", "status", "scheduled_publish_at"),
        Index("idx_article_jobs_owner_site", "owner_token", "site_id"),
        Index("idx_article_jobs_claimed", "status", "claimed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_token: Mapped[str] = mapped_column(String(255), nullable=False)
    site_id: Mapped[int] = mapped_column(Integer, nullable=False)
    site_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    target_keywords: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)

    # Generated content
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    meta_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_outline: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    word_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[ArticleJobStatus] = mapped_column(
        _enum_column(ArticleJobStatus), default=ArticleJobStatus.PENDING, nullable=False
    )
    scheduled_publish_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cms_connection_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cms_connections.id", ondelete="SET NULL"), nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # overrides the connection's target

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Normalized remote result
    cms_article_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cms_article_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remote_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    # Relationships
    cms_connection: Mapped[Optional["CMSConnection"]] = relationship(back_populates="article_jobs")
    publish_records: Mapped[List["PublishRecord"]] = relationship(back_populates="article_job", passive_deletes="all")
    events: Mapped[List["JobEvent"]] = relationship(back_populates="article_job", order_by="JobEvent.id")

    def __repr__(self) -> str:
        return f"<ArticleJob id={self.id} status={self.status} title={self.title!r}>"


class PublishRecord(Base):
    """History of remote entries created for a job."""

    __tablename__ = "publish_records"

    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uq_publish_records_connection_external"),
        Index("idx_publish_records_job", "article_job_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # RESTRICT keeps jobs from being hard-deleted while referenced
    article_job_id: Mapped[int] = mapped_column(ForeignKey("article_jobs.id", ondelete="RESTRICT"), nullable=False)
    connection_id: Mapped[int] = mapped_column(ForeignKey("cms_connections.id", ondelete="RESTRICT"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)  # draft | published
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remote_published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    # Relationships
    article_job: Mapped["ArticleJob"] = relationship(back_populates="publish_records")
    connection: Mapped["CMSConnection"] = relationship(back_populates="publish_records")


class JobEvent(Base):
    """Append-only log of pipeline transitions and failures."""

    __tablename__ = "job_events"

    __table_args__ = (
        Index("idx_job_events_job_created", "article_job_id", "created_at"),
        Index("idx_job_events_type", "event_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_job_id: Mapped[int] = mapped_column(ForeignKey("article_jobs.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    article_job: Mapped["ArticleJob"] = relationship(back_populates="events")


class OAuthState(Base):
    """Ephemeral single-use CSRF token for one in-flight handshake."""

    __tablename__ = "oauth_states"

    __table_args__ = (
        Index("idx_oauth_states_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    state: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    provider_type: Mapped[ProviderType] = mapped_column(_enum_column(ProviderType), nullable=False)
    owner_token: Mapped[str] = mapped_column(String(255), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)  # site_id, site_url, shop_domain
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RemediationItem(Base):
    """A detected site issue and the record of its fix verification."""

    __tablename__ = "remediation_items"

    __table_args__ = (
        Index("idx_remediation_due", "status", "verification_status", "next_check_at"),
        Index("idx_remediation_owner_site", "owner_token", "site_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_token: Mapped[str] = mapped_column(String(255), nullable=False)
    site_url: Mapped[str] = mapped_column(String(500), nullable=False)
    issue_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    issue_category: Mapped[str] = mapped_column(String(50), nullable=False)  # indexing, sitemap, robots, schema, ...
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    severity: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    status: Mapped[RemediationStatus] = mapped_column(
        _enum_column(RemediationStatus), default=RemediationStatus.OPEN, nullable=False
    )
    verification_status: Mapped[VerificationStatus] = mapped_column(
        _enum_column(VerificationStatus), default=VerificationStatus.PENDING, nullable=False
    )
    next_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    analysis: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    verification_details: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
