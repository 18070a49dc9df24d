"""Strapi adapter: static API tokens, no OAuth.

The "authorization code" is the API token itself. Targets are content-type
plural names; ``articles`` when none is chosen.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

import requests
from loguru import logger

from cmsflow.db.models import ProviderType
from cmsflow.providers.base import (
    DRAFT,
    PUBLISHED,
    ArticlePayload,
    CMSProvider,
    CredentialBundle,
    FieldMapping,
    NormalizedArticle,
    ProviderAuthError,
    ProviderConfigError,
    ProviderRejectedError,
    PublishTarget,
    generate_slug,
    parse_timestamp,
    strip_html,
)

DEFAULT_CONTENT_TYPE = "articles"


def _unwrap(entry: Mapping[str, Any]) -> Mapping[str, Any]:
    """Strapi v4 nests fields under ``attributes``; v5 returns them flat."""
    attributes = entry.get("attributes")
    return attributes if isinstance(attributes, Mapping) else entry


class StrapiProvider(CMSProvider):
    provider_type = ProviderType.STRAPI
    display_name = "Strapi"

    def __init__(self, base_url: Optional[str] = None, *, session: Optional[requests.Session] = None, timeout: float = 30.0):
        super().__init__(session=session, timeout=timeout)
        self.base_url = base_url.rstrip("/") if base_url else None

    def build_authorization_url(self, redirect_uri: str, state: str, context: Optional[Mapping[str, Any]] = None) -> str:
        # Token paste form; the admin login just helps the user find a token
        return f"{self._base_from(context)}/admin/settings/api-tokens"

    def exchange_code(self, code: str, redirect_uri: str, context: Optional[Mapping[str, Any]] = None) -> CredentialBundle:
        base_url = self._base_from(context)
        if not code:
            raise ProviderRejectedError("Strapi API token is empty", provider=self.code)
        bundle = CredentialBundle(access_token=code, scopes=["full-access"], extra={"site_url": base_url})
        try:
            self._api("GET", f"/api/{DEFAULT_CONTENT_TYPE}", bundle, params={"pagination[limit]": 1})
        except ProviderAuthError as e:
            raise ProviderRejectedError(
                f"Strapi rejected the API token: {e}", provider=self.code, status_code=e.status_code
            ) from e
        return bundle

    def validate_credentials(self, bundle: CredentialBundle) -> bool:
        try:
            self._api("GET", f"/api/{DEFAULT_CONTENT_TYPE}", bundle, params={"pagination[limit]": 1})
            return True
        except ProviderAuthError as e:
            logger.warning("[STRAPI] Token validation failed: {}", e)
            return False

    def list_publish_targets(self, bundle: CredentialBundle) -> List[PublishTarget]:
        return [
            PublishTarget(
                id=DEFAULT_CONTENT_TYPE,
                name="Articles",
                url=self._base_from(bundle.extra),
                description="Default Strapi article collection",
            )
        ]

    def publish_article(
        self,
        bundle: CredentialBundle,
        target: Optional[str],
        article: ArticlePayload,
        *,
        field_mapping: Optional[FieldMapping] = None,
    ) -> NormalizedArticle:
        content_type = target or DEFAULT_CONTENT_TYPE
        data = {
            "title": article.title,
            "content": article.content,
            "excerpt": article.excerpt,
            "slug": article.slug or generate_slug(article.title),
            "metaTitle": article.meta_title,
            "metaDescription": article.meta_description,
            "publishedAt": datetime.now(timezone.utc).isoformat() if article.status == PUBLISHED else None,
        }
        if article.external_id:
            resp = self._api("PUT", f"/api/{content_type}/{article.external_id}", bundle, {"data": data})
        else:
            resp = self._api("POST", f"/api/{content_type}", bundle, {"data": data})
        return self._normalize(resp.get("data") or {}, bundle, content_type)

    # Strapi-specific helpers

    def _base_from(self, context: Optional[Mapping[str, Any]]) -> str:
        base_url = (context or {}).get("site_url") or self.base_url
        if not base_url:
            raise ProviderConfigError("Strapi connections need a base URL", provider=self.code)
        return base_url.rstrip("/")

    def _api(self, method: str, path: str, bundle: CredentialBundle, body: Any = None, params: Any = None) -> Any:
        return self._request(
            method,
            f"{self._base_from(bundle.extra)}{path}",
            headers={"Authorization": f"Bearer {bundle.access_token}"},
            json=body if method in ("POST", "PUT") else None,
            params=params,
        )

    def _normalize(self, entry: Mapping[str, Any], bundle: CredentialBundle, content_type: str) -> NormalizedArticle:
        fields = _unwrap(entry)
        published_at = parse_timestamp(fields.get("publishedAt"))
        content = fields.get("content") or ""
        slug = fields.get("slug")
        entry_id = entry.get("documentId") or entry.get("id")
        return NormalizedArticle(
            id=str(entry_id),
            title=fields.get("title") or "",
            content=content,
            excerpt=fields.get("excerpt") or strip_html(content)[:160],
            slug=slug,
            status=PUBLISHED if published_at else DRAFT,
            published_at=published_at,
            url=f"{self._base_from(bundle.extra)}/{content_type}/{slug}" if slug else None,
        )
