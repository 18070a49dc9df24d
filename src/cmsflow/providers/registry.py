from typing import Dict, List, Optional

import requests
from loguru import logger

from cmsflow.config import Settings
from cmsflow.db.models import ProviderType
from cmsflow.providers.base import CMSProvider, ProviderNotConfiguredError
from cmsflow.providers.shopify import ShopifyProvider
from cmsflow.providers.strapi import StrapiProvider
from cmsflow.providers.webflow import WebflowProvider
from cmsflow.providers.wordpress import WordPressProvider


class ProviderRegistry:
    """Maps a provider type to its adapter.

    WordPress and Strapi need no app registration and are always present.
    OAuth platforms are registered only when their client credentials are set.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        timeout = settings.http_timeout_seconds
        self.providers: Dict[ProviderType, CMSProvider] = {
            ProviderType.WORDPRESS: WordPressProvider(session=session, timeout=timeout),
            ProviderType.STRAPI: StrapiProvider(settings.strapi_base_url, session=session, timeout=timeout),
        }

        webflow = settings.get_provider_credentials(ProviderType.WEBFLOW.value)
        if webflow:
            self.providers[ProviderType.WEBFLOW] = WebflowProvider(
                webflow.client_id,
                webflow.client_secret,
                api_base_url=webflow.api_base_url,
                session=session,
                timeout=timeout,
            )

        shopify = settings.get_provider_credentials(ProviderType.SHOPIFY.value)
        if shopify:
            self.providers[ProviderType.SHOPIFY] = ShopifyProvider(
                shopify.client_id,
                shopify.client_secret,
                session=session,
                timeout=timeout,
            )

        logger.debug("[REGISTRY] Providers available: {}", [p.value for p in self.providers])

    def get(self, provider_type) -> CMSProvider:
        try:
            key = ProviderType(provider_type)
        except ValueError as e:
            raise ProviderNotConfiguredError(f"Unknown provider type: {provider_type}", provider=str(provider_type)) from e
        provider = self.providers.get(key)
        if provider is None:
            raise ProviderNotConfiguredError(
                f"{key.value} is not configured (missing OAuth client credentials)", provider=key.value
            )
        return provider

    def available(self) -> List[str]:
        return [p.value for p in self.providers]
