"""WordPress adapter using Application Passwords.

There is no code exchange: the site's authorize-application screen redirects
back with ``site_url``, ``user_login`` and ``password``. The password is the
"code" handed to :meth:`WordPressProvider.exchange_code`.
"""

from __future__ import annotations

import uuid
from typing import Any, List, Mapping, Optional
from urllib.parse import urlencode

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

APP_NAME = "CMSFlow"
DEFAULT_TARGET = "main"


def _rendered(value: Any) -> str:
    if isinstance(value, Mapping):
        return value.get("rendered") or ""
    return value or ""


class WordPressProvider(CMSProvider):
    provider_type = ProviderType.WORDPRESS
    display_name = "WordPress"

    def __init__(self, *, app_name: str = APP_NAME, session: Optional[requests.Session] = None, timeout: float = 30.0):
        super().__init__(session=session, timeout=timeout)
        self.app_name = app_name

    def build_authorization_url(self, redirect_uri: str, state: str, context: Optional[Mapping[str, Any]] = None) -> str:
        site_url = self._site_from(context)
        sep = "&" if "?" in redirect_uri else "?"
        params = {
            "app_name": self.app_name,
            "success_url": f"{redirect_uri}{sep}{urlencode({'state': state})}",
            "reject_url": f"{redirect_uri}{sep}{urlencode({'error': 'access_denied', 'state': state})}",
            # Stable per attempt, so the same state yields the same URL
            "app_id": str(uuid.uuid5(uuid.NAMESPACE_URL, state)),
        }
        return f"{site_url}/wp-admin/authorize-application.php?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, context: Optional[Mapping[str, Any]] = None) -> CredentialBundle:
        context = context or {}
        site_url = self._site_from(context)
        username = context.get("user_login") or context.get("username")
        if not username or not code:
            raise ProviderRejectedError("Invalid WordPress authorization response", provider=self.code)

        bundle = CredentialBundle(
            access_token=code,
            scopes=["read", "write"],
            extra={"site_url": site_url, "username": username},
        )
        try:
            self._api("GET", "/wp/v2/users/me", bundle)
        except ProviderAuthError as e:
            raise ProviderRejectedError(
                f"WordPress authentication failed: {e}", provider=self.code, status_code=e.status_code
            ) from e
        return bundle

    def validate_credentials(self, bundle: CredentialBundle) -> bool:
        if not bundle.extra.get("site_url") or not bundle.extra.get("username") or not bundle.access_token:
            return False
        try:
            self._api("GET", "/wp/v2/users/me", bundle)
            return True
        except ProviderAuthError as e:
            logger.warning("[WORDPRESS] Token validation failed: {}", e)
            return False

    def list_publish_targets(self, bundle: CredentialBundle) -> List[PublishTarget]:
        # A WordPress site is a single blog
        info = self._api("GET", "/", bundle)
        return [
            PublishTarget(
                id=DEFAULT_TARGET,
                name=info.get("name") or "WordPress Blog",
                url=bundle.extra.get("site_url"),
                description=info.get("description") or "",
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
        post = {
            "title": article.title,
            "content": article.content,
            "slug": article.slug or generate_slug(article.title),
            "status": "publish" if article.status == PUBLISHED else "draft",
            "excerpt": article.excerpt or "",
            "meta": {
                "_yoast_wpseo_title": article.meta_title or article.title,
                "_yoast_wpseo_metadesc": article.meta_description or article.excerpt or "",
            },
        }
        if article.tags:
            post["tags"] = self._tag_ids(bundle, article.tags)

        if article.external_id:
            data = self._api("POST", f"/wp/v2/posts/{article.external_id}", bundle, post)
        else:
            data = self._api("POST", "/wp/v2/posts", bundle, post)
        return self._normalize(data)

    # WordPress-specific helpers

    def _site_from(self, context: Optional[Mapping[str, Any]]) -> str:
        site_url = (context or {}).get("site_url")
        if not site_url:
            raise ProviderConfigError("WordPress connections need a site_url", provider=self.code)
        site_url = site_url.strip().rstrip("/")
        if not site_url.startswith(("http://", "https://")):
            site_url = f"https://{site_url}"
        return site_url

    def _api(self, method: str, path: str, bundle: CredentialBundle, body: Any = None, params: Any = None) -> Any:
        site_url = self._site_from(bundle.extra)
        return self._request(
            method,
            f"{site_url}/wp-json{path}",
            auth=(bundle.extra.get("username") or "", bundle.access_token),
            json=body if method in ("POST", "PUT") else None,
            params=params,
        )

    def _tag_ids(self, bundle: CredentialBundle, names: List[str]) -> List[int]:
        ids = []
        for name in names:
            existing = self._api("GET", "/wp/v2/tags", bundle, params={"search": name})
            if existing:
                ids.append(existing[0]["id"])
            else:
                ids.append(self._api("POST", "/wp/v2/tags", bundle, {"name": name})["id"])
        return ids

    @staticmethod
    def _normalize(post: Mapping[str, Any]) -> NormalizedArticle:
        # future, pending and private all collapse to draft
        published = post.get("status") == "publish"
        content = _rendered(post.get("content"))
        excerpt = strip_html(_rendered(post.get("excerpt")))
        published_at = None
        if published:
            published_at = parse_timestamp(post.get("date_gmt") or post.get("date"))
        return NormalizedArticle(
            id=str(post["id"]),
            title=_rendered(post.get("title")),
            content=content,
            excerpt=excerpt,
            slug=post.get("slug"),
            status=PUBLISHED if published else DRAFT,
            published_at=published_at,
            url=post.get("link"),
        )
