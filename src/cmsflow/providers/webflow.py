"""Webflow adapter: OAuth with a site -> collection hierarchy.

Targets are composite ``siteId:collectionId`` strings. Item fields are
schema-defined per collection, so publishing goes through a FieldMapping.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple
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
    ProviderError,
    PublishTarget,
    generate_slug,
    parse_timestamp,
)
from cmsflow.providers.field_mapping import infer_field_mapping

AUTHORIZE_URL = "https://webflow.com/oauth/authorize"
TOKEN_URL = "https://api.webflow.com/oauth/access_token"
API_BASE = "https://api.webflow.com"
SCOPES = "cms:read cms:write sites:read sites:write"

BLOG_COLLECTION_RE = re.compile(r"blog|post|article|news", re.I)


def split_target(target: str) -> Tuple[str, str]:
    site_id, sep, collection_id = target.partition(":")
    if not sep or not site_id or not collection_id:
        raise ValueError(f"Expected 'siteId:collectionId', got {target!r}")
    return site_id, collection_id


class WebflowProvider(CMSProvider):
    provider_type = ProviderType.WEBFLOW
    display_name = "Webflow"
    supports_field_mapping = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        api_base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        super().__init__(session=session, timeout=timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = (api_base_url or API_BASE).rstrip("/")

    def build_authorization_url(self, redirect_uri: str, state: str, context: Optional[Mapping[str, Any]] = None) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": SCOPES,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, context: Optional[Mapping[str, Any]] = None) -> CredentialBundle:
        token_data = self._exchange(
            "POST",
            TOKEN_URL,
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._bundle_from_token(token_data)

    def refresh_token(self, bundle: CredentialBundle) -> CredentialBundle:
        if not bundle.refresh_token:
            # Webflow site tokens do not expire unless revoked
            return bundle
        token_data = self._request(
            "POST",
            TOKEN_URL,
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": bundle.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        refreshed = self._bundle_from_token(token_data, previous=bundle)
        logger.info("[WEBFLOW] Rotated access token ({} -> {})", bundle.masked_token(), refreshed.masked_token())
        return refreshed

    def validate_credentials(self, bundle: CredentialBundle) -> bool:
        try:
            self._api("GET", "/v2/sites", bundle)
            return True
        except ProviderAuthError as e:
            logger.warning("[WEBFLOW] Token validation failed: {}", e)
            return False

    def list_publish_targets(self, bundle: CredentialBundle) -> List[PublishTarget]:
        sites = self._api("GET", "/v2/sites", bundle).get("sites") or []
        targets: List[PublishTarget] = []

        for site in sites:
            collections = self._api("GET", f"/v2/sites/{site['id']}/collections", bundle).get("collections") or []
            for collection in collections:
                label = collection.get("displayName") or collection.get("singularName") or ""
                if not BLOG_COLLECTION_RE.search(label):
                    continue
                site_name = site.get("displayName") or site.get("shortName") or site["id"]
                targets.append(PublishTarget(
                    id=f"{site['id']}:{collection['id']}",
                    name=f"{site_name} - {label}",
                    url=_site_url(site),
                    description=f"{label} collection in {site_name}",
                ))

        return targets

    def get_collection_schema(self, bundle: CredentialBundle, target: str) -> Dict[str, Any]:
        _, collection_id = split_target(target)
        return self._api("GET", f"/v2/collections/{collection_id}", bundle)

    def infer_field_mapping(self, schema: Mapping[str, Any]) -> FieldMapping:
        return infer_field_mapping(schema)

    def publish_article(
        self,
        bundle: CredentialBundle,
        target: Optional[str],
        article: ArticlePayload,
        *,
        field_mapping: Optional[FieldMapping] = None,
    ) -> NormalizedArticle:
        if not target:
            raise self._missing_target("Webflow publishing requires a 'siteId:collectionId' target")
        try:
            site_id, collection_id = split_target(target)
        except ValueError as e:
            raise self._missing_target(str(e)) from e

        schema: Optional[Dict[str, Any]] = None
        if field_mapping is None:
            schema = self._api("GET", f"/v2/collections/{collection_id}", bundle)
            field_mapping = self.infer_field_mapping(schema)
            logger.info("[WEBFLOW] Inferred field mapping for collection {}: {}", collection_id, field_mapping.to_dict())

        missing = field_mapping.missing_required()
        if missing:
            raise self._missing_mapping(
                f"Webflow collection {collection_id} has no field mapped for: {', '.join(missing)}"
            )

        is_draft = article.status != PUBLISHED
        item_data = {
            "isArchived": False,
            "isDraft": is_draft,
            "fieldData": self._field_data(article, field_mapping),
        }

        if article.external_id:
            item = self._api("PATCH", f"/v2/collections/{collection_id}/items/{article.external_id}", bundle, item_data)
        else:
            item = self._api("POST", f"/v2/collections/{collection_id}/items", bundle, item_data)

        url = None
        if not is_draft:
            try:
                self._api("POST", f"/v2/sites/{site_id}/publish", bundle, {"publishToWebflowSubdomain": True})
            except ProviderError as e:
                # The item exists either way; the next site publish picks it up
                logger.warning("[WEBFLOW] Site publish after item write failed: {}", e)
            url = self._item_url(bundle, site_id, collection_id, schema, item, field_mapping)

        return self._normalize(item, article, field_mapping, url)

    # Webflow-specific helpers

    def _api(self, method: str, path: str, bundle: CredentialBundle, body: Any = None) -> Any:
        return self._request(
            method,
            f"{self.api_base_url}{path}",
            headers={
                "Authorization": f"Bearer {bundle.access_token}",
                "accept-version": "2.0.0",
            },
            json=body if method in ("POST", "PATCH", "PUT") else None,
        )

    def _bundle_from_token(self, token_data: Mapping[str, Any], previous: Optional[CredentialBundle] = None) -> CredentialBundle:
        expires_in = token_data.get("expires_in")
        scope = token_data.get("scope")
        return CredentialBundle(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=scope.split(" ") if scope else (list(previous.scopes) if previous else []),
            extra=dict(previous.extra) if previous else {},
        )

    @staticmethod
    def _field_data(article: ArticlePayload, mapping: FieldMapping) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            mapping.title: article.title,
            mapping.slug: article.slug or generate_slug(article.title),
            mapping.body: article.content,
        }
        if mapping.meta_title and article.meta_title:
            data[mapping.meta_title] = article.meta_title
        if mapping.meta_description and (article.meta_description or article.excerpt):
            data[mapping.meta_description] = article.meta_description or article.excerpt
        if mapping.featured_image and article.featured_image_url:
            data[mapping.featured_image] = {"url": article.featured_image_url}
        return data

    def _item_url(
        self,
        bundle: CredentialBundle,
        site_id: str,
        collection_id: str,
        schema: Optional[Mapping[str, Any]],
        item: Mapping[str, Any],
        mapping: FieldMapping,
    ) -> Optional[str]:
        """Live URL as ``<site domain>/<collection slug>/<item slug>``, when resolvable."""
        item_slug = (item.get("fieldData") or {}).get(mapping.slug)
        if not item_slug:
            return None
        try:
            if schema is None:
                schema = self._api("GET", f"/v2/collections/{collection_id}", bundle)
            site = self._api("GET", f"/v2/sites/{site_id}", bundle)
        except ProviderError as e:
            logger.warning("[WEBFLOW] Could not resolve URL for item {}: {}", item.get("id"), e)
            return None
        base = _site_url(site)
        collection_slug = schema.get("slug")
        if not base or not collection_slug:
            return None
        return f"{base}/{collection_slug}/{item_slug}"

    @staticmethod
    def _normalize(
        item: Mapping[str, Any],
        article: ArticlePayload,
        mapping: FieldMapping,
        url: Optional[str] = None,
    ) -> NormalizedArticle:
        field_data = item.get("fieldData") or {}
        is_draft = bool(item.get("isDraft") or item.get("isArchived"))
        published_at = None
        if not is_draft:
            published_at = parse_timestamp(item.get("lastPublished")) or datetime.now(timezone.utc)
        return NormalizedArticle(
            id=str(item["id"]),
            title=field_data.get(mapping.title) or article.title,
            content=field_data.get(mapping.body) or article.content,
            excerpt=(field_data.get(mapping.meta_description) if mapping.meta_description else None) or article.excerpt or "",
            slug=field_data.get(mapping.slug) or article.slug,
            status=DRAFT if is_draft else PUBLISHED,
            published_at=published_at,
            url=url,
        )


def _site_url(site: Mapping[str, Any]) -> Optional[str]:
    domains = site.get("customDomains") or []
    if domains:
        return f"https://{domains[0].get('url')}"
    if site.get("shortName"):
        return f"https://{site['shortName']}.webflow.io"
    return None
