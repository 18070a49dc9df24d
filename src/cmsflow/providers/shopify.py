"""Shopify adapter: OAuth against the shop's own admin host."""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
from typing import Any, List, Mapping, Optional
from urllib.parse import urlencode

import requests
from loguru import logger

from cmsflow.db.models import ProviderType
from cmsflow.errors import MISSING_PUBLISH_TARGET
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
    PublishTarget,
    generate_slug,
    parse_timestamp,
    strip_html,
)

API_VERSION = "2024-10"
SCOPES = "read_content,write_content"

SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$", re.I)


def clean_shop_domain(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"^https?://", "", value.strip()).rstrip("/").lower()


class ShopifyProvider(CMSProvider):
    provider_type = ProviderType.SHOPIFY
    display_name = "Shopify"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        api_version: str = API_VERSION,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        super().__init__(session=session, timeout=timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_version = api_version

    def build_authorization_url(self, redirect_uri: str, state: str, context: Optional[Mapping[str, Any]] = None) -> str:
        shop = self._shop_from(context)
        params = {
            "client_id": self.client_id,
            "scope": SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, context: Optional[Mapping[str, Any]] = None) -> CredentialBundle:
        shop = self._shop_from(context)
        token_data = self._exchange(
            "POST",
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
            },
        )
        scope = token_data.get("scope") or ""
        # Offline tokens: no refresh token and no expiry
        return CredentialBundle(
            access_token=token_data["access_token"],
            scopes=[s for s in scope.split(",") if s],
            extra={"shop_domain": shop},
        )

    def validate_credentials(self, bundle: CredentialBundle) -> bool:
        try:
            self._api("GET", "/shop.json", bundle)
            return True
        except ProviderAuthError as e:
            logger.warning("[SHOPIFY] Token validation failed: {}", e)
            return False

    def list_publish_targets(self, bundle: CredentialBundle) -> List[PublishTarget]:
        shop = self._shop_from(bundle.extra)
        blogs = self._api("GET", "/blogs.json", bundle).get("blogs") or []
        return [
            PublishTarget(
                id=str(blog["id"]),
                name=blog.get("title") or f"Blog {blog['id']}",
                url=f"https://{shop}/blogs/{blog.get('handle')}",
                description="Comments enabled" if blog.get("commentable") not in (None, "no") else "Comments disabled",
            )
            for blog in blogs
        ]

    def publish_article(
        self,
        bundle: CredentialBundle,
        target: Optional[str],
        article: ArticlePayload,
        *,
        field_mapping: Optional[FieldMapping] = None,
    ) -> NormalizedArticle:
        blog_id = target
        if not blog_id:
            blogs = self.list_publish_targets(bundle)
            if not blogs:
                raise self._missing_target("No blogs found in Shopify store")
            blog_id = blogs[0].id
            logger.info("[SHOPIFY] No blog selected; using first blog {}", blog_id)

        payload = {
            "article": {
                "title": article.title,
                "body_html": article.content,
                "handle": article.slug or generate_slug(article.title),
                "summary_html": article.excerpt or "",
                "tags": ", ".join(article.tags),
                "published": article.status == PUBLISHED,
            }
        }
        if article.meta_title or article.meta_description:
            payload["article"]["metafields"] = [
                {"namespace": "global", "key": key, "value": value, "type": "single_line_text_field"}
                for key, value in (("title_tag", article.meta_title), ("description_tag", article.meta_description))
                if value
            ]
        if article.featured_image_url:
            payload["article"]["image"] = {"src": article.featured_image_url}

        if article.external_id:
            data = self._api("PUT", f"/blogs/{blog_id}/articles/{article.external_id}.json", bundle, payload)
        else:
            data = self._api("POST", f"/blogs/{blog_id}/articles.json", bundle, payload)

        return self._normalize(data.get("article") or {}, bundle)

    def verify_webhook(self, body: bytes, hmac_header: str) -> bool:
        """Check a webhook's X-Shopify-Hmac-Sha256 header."""
        digest = hmac.new(self.client_secret.encode(), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, hmac_header or "")

    # Shopify-specific helpers

    def _shop_from(self, context: Optional[Mapping[str, Any]]) -> str:
        shop = clean_shop_domain((context or {}).get("shop_domain"))
        if not shop or not SHOP_DOMAIN_RE.match(shop):
            raise ProviderConfigError(
                f"A valid *.myshopify.com shop domain is required, got {shop!r}",
                code=MISSING_PUBLISH_TARGET,
                provider=self.code,
            )
        return shop

    def _api(self, method: str, path: str, bundle: CredentialBundle, body: Any = None) -> Any:
        shop = self._shop_from(bundle.extra)
        return self._request(
            method,
            f"https://{shop}/admin/api/{self.api_version}{path}",
            headers={"X-Shopify-Access-Token": bundle.access_token},
            json=body if method in ("POST", "PUT") else None,
        )

    def _normalize(self, data: Mapping[str, Any], bundle: CredentialBundle) -> NormalizedArticle:
        # Shopify has no status field: a null published_at means draft
        published_at = parse_timestamp(data.get("published_at"))
        body = data.get("body_html") or ""
        handle = data.get("handle")
        url = None
        if handle and data.get("blog_id"):
            url = f"https://{self._shop_from(bundle.extra)}/blogs/{data['blog_id']}/{handle}"
        return NormalizedArticle(
            id=str(data["id"]),
            title=data.get("title") or "",
            content=body,
            excerpt=data.get("summary_html") or strip_html(body)[:160],
            slug=handle,
            status=PUBLISHED if published_at else DRAFT,
            published_at=published_at,
            url=url,
        )
