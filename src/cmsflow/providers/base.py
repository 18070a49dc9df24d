"""Capability interface shared by every CMS adapter."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import requests
from loguru import logger

from cmsflow.db.models import ProviderType
from cmsflow.errors import (
    CMSFlowError,
    MISSING_FIELD_MAPPING,
    MISSING_PUBLISH_TARGET,
    PROVIDER_ERROR,
    PROVIDER_NOT_CONFIGURED,
    PROVIDER_TRANSIENT,
    RECONNECT_REQUIRED,
)

DRAFT = "draft"
PUBLISHED = "published"


class ProviderError(CMSFlowError):
    code = PROVIDER_ERROR

    def __init__(
        self,
        msg: str,
        code: Optional[str] = None,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(msg, code)
        self.provider = provider
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Timeouts, connection resets, 429 and 5xx responses."""

    code = PROVIDER_TRANSIENT


class ProviderAuthError(ProviderError):
    """Stored credentials were rejected (expired, revoked, missing scope)."""

    code = RECONNECT_REQUIRED


class ProviderRejectedError(ProviderError):
    """The platform refused the request itself (bad code, validation error)."""

    code = "provider_rejected"


class ProviderConfigError(ProviderError):
    """Connection configuration is insufficient to complete the call."""

    code = MISSING_PUBLISH_TARGET


class ProviderNotConfiguredError(ProviderError):
    code = PROVIDER_NOT_CONFIGURED


@dataclass
class CredentialBundle:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    # Provider-specific identity: site_url, shop_domain, username
    extra: Dict[str, Any] = field(default_factory=dict)

    def masked_token(self) -> str:
        if not self.access_token:
            return "<empty>"
        return self.access_token[:4] + "..."

    def expires_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - now <= window


@dataclass
class PublishTarget:
    id: str
    name: str
    url: Optional[str] = None
    description: Optional[str] = None


@dataclass
class ArticlePayload:
    """What the pipeline asks an adapter to create or update."""

    title: str
    content: str
    slug: Optional[str] = None
    excerpt: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    featured_image_url: Optional[str] = None
    status: str = DRAFT
    external_id: Optional[str] = None  # set to update an existing remote entry


@dataclass
class NormalizedArticle:
    """The single canonical shape every adapter returns."""

    id: str
    title: str
    content: str
    excerpt: str
    slug: Optional[str]
    status: str  # draft | published
    published_at: Optional[datetime]
    url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in (DRAFT, PUBLISHED):
            raise ValueError(f"Unnormalized article status: {self.status!r}")


@dataclass
class FieldMapping:
    """Which remote field receives each article attribute."""

    title: Optional[str] = None
    slug: Optional[str] = None
    body: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    featured_image: Optional[str] = None

    def missing_required(self) -> List[str]:
        return [name for name in ("title", "slug", "body") if not getattr(self, name)]

    def with_overrides(self, overrides: Optional[Mapping[str, Optional[str]]]) -> "FieldMapping":
        values = self.to_dict()
        for key, value in (overrides or {}).items():
            if key in values:
                values[key] = value
        return FieldMapping(**values)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "title": self.title,
            "slug": self.slug,
            "body": self.body,
            "meta_title": self.meta_title,
            "meta_description": self.meta_description,
            "featured_image": self.featured_image,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["FieldMapping"]:
        if not data:
            return None
        return cls(**{k: data.get(k) for k in cls().to_dict()})


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the ISO-8601 variants platforms return (``Z`` suffix included)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable timestamp from provider: {}", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def generate_slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", (title or "").lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:96] or "untitled"


def strip_html(html: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", " ", html or "")).strip()


class CMSProvider(ABC):
    """One implementation per platform; callers never branch on provider type."""

    provider_type: ProviderType
    display_name: str = ""
    supports_field_mapping: bool = False

    def __init__(self, *, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.http = session or requests.Session()
        self.timeout = timeout

    @property
    def code(self) -> str:
        return self.provider_type.value

    @abstractmethod
    def build_authorization_url(self, redirect_uri: str, state: str, context: Optional[Mapping[str, Any]] = None) -> str:
        """Return the URL the user is sent to; pure, no network."""

    @abstractmethod
    def exchange_code(
        self, code: str, redirect_uri: str, context: Optional[Mapping[str, Any]] = None
    ) -> CredentialBundle:
        """Trade an authorization code for credentials.

        Raises:
            ProviderRejectedError: the platform refused the code (expired, reused).
        """

    def refresh_token(self, bundle: CredentialBundle) -> CredentialBundle:
        """Rotate the access token. Platforms without refresh tokens return the bundle as is."""
        return bundle

    @abstractmethod
    def validate_credentials(self, bundle: CredentialBundle) -> bool:
        """Cheap authenticated call; False when the platform rejects the credentials."""

    @abstractmethod
    def list_publish_targets(self, bundle: CredentialBundle) -> List[PublishTarget]:
        ...

    @abstractmethod
    def publish_article(
        self,
        bundle: CredentialBundle,
        target: Optional[str],
        article: ArticlePayload,
        *,
        field_mapping: Optional[FieldMapping] = None,
    ) -> NormalizedArticle:
        ...

    # Shared HTTP plumbing

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        auth: Any = None,
    ) -> Any:
        """Issue a request and map failures onto the provider error taxonomy."""
        try:
            resp = self.http.request(
                method,
                url,
                headers=dict(headers or {}),
                json=json,
                params=params,
                auth=auth,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ProviderTransientError(f"{self.display_name} request timed out: {e}", provider=self.code) from e
        except requests.ConnectionError as e:
            raise ProviderTransientError(f"{self.display_name} connection failed: {e}", provider=self.code) from e

        status = resp.status_code
        if status >= 400:
            detail = (resp.text or "")[:300]
            msg = f"{self.display_name} {method} {_endpoint(url)} returned {status}: {detail}"
            if status in (401, 403):
                raise ProviderAuthError(msg, provider=self.code, status_code=status)
            if status == 429 or status >= 500:
                raise ProviderTransientError(msg, provider=self.code, status_code=status)
            raise ProviderRejectedError(msg, provider=self.code, status_code=status)

        if status == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderTransientError(
                f"{self.display_name} returned a non-JSON body from {_endpoint(url)}", provider=self.code
            ) from e

    def _exchange(self, method: str, url: str, **kwargs: Any) -> Any:
        """Token endpoint call: any 4xx means the code itself was refused."""
        try:
            return self._request(method, url, **kwargs)
        except ProviderAuthError as e:
            raise ProviderRejectedError(str(e), provider=self.code, status_code=e.status_code) from e

    def _missing_target(self, detail: str) -> ProviderConfigError:
        return ProviderConfigError(detail, code=MISSING_PUBLISH_TARGET, provider=self.code)

    def _missing_mapping(self, detail: str) -> ProviderConfigError:
        return ProviderConfigError(detail, code=MISSING_FIELD_MAPPING, provider=self.code)


def _endpoint(url: str) -> str:
    # Query strings may carry credentials
    return url.split("?", 1)[0]
