import base64
import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

import pytest

from cmsflow.providers.base import (
    ArticlePayload,
    CredentialBundle,
    ProviderConfigError,
    ProviderNotConfiguredError,
    ProviderRejectedError,
)
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.providers.shopify import ShopifyProvider, clean_shop_domain
from cmsflow.providers.strapi import StrapiProvider
from cmsflow.providers.wordpress import WordPressProvider


# Shopify

@pytest.fixture
def shopify(http):
    return ShopifyProvider("shop-client", "shop-secret", session=http)


@pytest.fixture
def shop_bundle():
    return CredentialBundle(access_token="shpat_123", extra={"shop_domain": "demo-shop.myshopify.com"})


def test_shopify_authorization_url_targets_shop_host(shopify):
    url = shopify.build_authorization_url(
        "https://app.example.com/cb", "state-1", {"shop_domain": "https://Demo-Shop.myshopify.com/"}
    )
    parsed = urlparse(url)
    assert parsed.netloc == "demo-shop.myshopify.com"
    assert parsed.path == "/admin/oauth/authorize"
    assert parse_qs(parsed.query)["state"] == ["state-1"]


def test_shopify_rejects_foreign_shop_domain(shopify):
    with pytest.raises(ProviderConfigError):
        shopify.build_authorization_url("https://app.example.com/cb", "s", {"shop_domain": "evil.example.com"})
    assert clean_shop_domain(" https://a.myshopify.com/ ") == "a.myshopify.com"


def test_shopify_exchange_keeps_shop_domain(shopify, http, make_response):
    http.request.return_value = make_response(200, {"access_token": "shpat_new", "scope": "read_content,write_content"})
    bundle = shopify.exchange_code("code", "https://app.example.com/cb", {"shop_domain": "demo-shop.myshopify.com"})
    assert bundle.extra == {"shop_domain": "demo-shop.myshopify.com"}
    assert bundle.scopes == ["read_content", "write_content"]
    assert http.request.call_args.args[1] == "https://demo-shop.myshopify.com/admin/oauth/access_token"


def test_shopify_publish_defaults_to_first_blog(shopify, shop_bundle, http, make_response):
    http.request.side_effect = [
        make_response(200, {"blogs": [{"id": 11, "title": "News", "handle": "news"}]}),
        make_response(200, {"article": {
            "id": 99, "title": "Ten Ways", "body_html": "<p>Hi there</p>", "handle": "ten-ways",
            "blog_id": 11, "published_at": None,
        }}),
    ]
    result = shopify.publish_article(shop_bundle, None, ArticlePayload(title="Ten Ways", content="<p>Hi there</p>"))

    write = http.request.call_args
    assert write.args[0] == "POST"
    assert write.args[1].endswith("/admin/api/2024-10/blogs/11/articles.json")
    assert write.kwargs["json"]["article"]["published"] is False
    assert write.kwargs["headers"]["X-Shopify-Access-Token"] == "shpat_123"
    assert result.id == "99"
    assert result.status == "draft"
    assert result.excerpt == "Hi there"
    assert result.url == "https://demo-shop.myshopify.com/blogs/11/ten-ways"


def test_shopify_publish_update_uses_put(shopify, shop_bundle, http, make_response):
    http.request.return_value = make_response(200, {"article": {
        "id": 99, "title": "Ten Ways", "body_html": "", "published_at": "2024-05-01T10:00:00-04:00",
    }})
    result = shopify.publish_article(
        shop_bundle, "11", ArticlePayload(title="Ten Ways", content="x", status="published", external_id="99")
    )
    assert http.request.call_args.args[0] == "PUT"
    assert result.status == "published"
    assert result.published_at.utcoffset().total_seconds() == -4 * 3600


def test_shopify_publish_without_blogs(shopify, shop_bundle, http, make_response):
    http.request.return_value = make_response(200, {"blogs": []})
    with pytest.raises(ProviderConfigError) as exc:
        shopify.publish_article(shop_bundle, None, ArticlePayload(title="T", content="x"))
    assert exc.value.code == "missing_publish_target"


def test_shopify_webhook_hmac(shopify):
    body = b'{"id": 1}'
    header = base64.b64encode(hmac.new(b"shop-secret", body, hashlib.sha256).digest()).decode()
    assert shopify.verify_webhook(body, header) is True
    assert shopify.verify_webhook(body, "forged") is False


# WordPress

@pytest.fixture
def wordpress(http):
    return WordPressProvider(session=http)


@pytest.fixture
def wp_bundle():
    return CredentialBundle(
        access_token="abcd efgh ijkl", extra={"site_url": "https://blog.example.com", "username": "editor"}
    )


def test_wordpress_authorization_url_is_stable_per_state(wordpress):
    context = {"site_url": "blog.example.com/"}
    url = wordpress.build_authorization_url("https://app.example.com/cb", "state-1", context)
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert url.startswith("https://blog.example.com/wp-admin/authorize-application.php?")
    assert "state=state-1" in query["success_url"][0]
    assert "error=access_denied" in query["reject_url"][0]
    assert url == wordpress.build_authorization_url("https://app.example.com/cb", "state-1", context)
    assert url != wordpress.build_authorization_url("https://app.example.com/cb", "state-2", context)


def test_wordpress_exchange_validates_password(wordpress, http, make_response):
    http.request.return_value = make_response(200, {"id": 1, "name": "editor"})
    bundle = wordpress.exchange_code(
        "abcd efgh ijkl", "https://app.example.com/cb", {"site_url": "https://blog.example.com", "user_login": "editor"}
    )
    assert bundle.extra == {"site_url": "https://blog.example.com", "username": "editor"}
    assert http.request.call_args.kwargs["auth"] == ("editor", "abcd efgh ijkl")


def test_wordpress_exchange_refused(wordpress, http, make_response):
    http.request.return_value = make_response(401, {"code": "invalid_username"})
    with pytest.raises(ProviderRejectedError):
        wordpress.exchange_code("bad", "https://app.example.com/cb", {"site_url": "https://blog.example.com", "user_login": "x"})


def test_wordpress_publish_normalizes_status(wordpress, wp_bundle, http, make_response):
    http.request.side_effect = [
        make_response(200, [{"id": 3, "name": "seo"}]),
        make_response(200, []),
        make_response(201, {"id": 7}),
        make_response(201, {
            "id": 42,
            "status": "publish",
            "date_gmt": "2024-05-01T10:00:00",
            "slug": "ten-ways",
            "link": "https://blog.example.com/ten-ways/",
            "title": {"rendered": "Ten Ways"},
            "content": {"rendered": "<p>Body</p>"},
            "excerpt": {"rendered": "<p>Short</p>"},
        }),
    ]
    result = wordpress.publish_article(
        wp_bundle, None, ArticlePayload(title="Ten Ways", content="<p>Body</p>", tags=["seo", "crawl"], status="published")
    )

    post = http.request.call_args.kwargs["json"]
    assert post["status"] == "publish"
    assert post["tags"] == [3, 7]
    assert result.id == "42"
    assert result.status == "published"
    assert result.excerpt == "Short"
    assert result.url == "https://blog.example.com/ten-ways/"


@pytest.mark.parametrize("remote_status", ["future", "pending", "private", "draft"])
def test_wordpress_non_public_statuses_are_drafts(wordpress, wp_bundle, http, make_response, remote_status):
    http.request.return_value = make_response(201, {"id": 42, "status": remote_status, "date_gmt": "2030-01-01T00:00:00"})
    result = wordpress.publish_article(wp_bundle, None, ArticlePayload(title="T", content="x"))
    assert result.status == "draft"
    assert result.published_at is None


# Strapi

@pytest.fixture
def strapi(http):
    return StrapiProvider("https://strapi.example.com", session=http)


@pytest.fixture
def strapi_bundle():
    return CredentialBundle(access_token="strapi-token", extra={"site_url": "https://strapi.example.com"})


def test_strapi_token_is_the_code(strapi, http, make_response):
    http.request.return_value = make_response(200, {"data": []})
    bundle = strapi.exchange_code("strapi-token", "https://app.example.com/cb")
    assert bundle.access_token == "strapi-token"
    assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer strapi-token"

    http.request.return_value = make_response(403, {"error": "Forbidden"})
    with pytest.raises(ProviderRejectedError):
        strapi.exchange_code("wrong", "https://app.example.com/cb")


def test_strapi_v4_entry(strapi, strapi_bundle, http, make_response):
    http.request.return_value = make_response(200, {"data": {
        "id": 5,
        "attributes": {"title": "Ten Ways", "content": "<p>Body</p>", "slug": "ten-ways", "publishedAt": "2024-05-01T10:00:00.000Z"},
    }})
    result = strapi.publish_article(strapi_bundle, None, ArticlePayload(title="Ten Ways", content="<p>Body</p>", status="published"))

    assert http.request.call_args.args[1] == "https://strapi.example.com/api/articles"
    assert http.request.call_args.kwargs["json"]["data"]["publishedAt"] is not None
    assert result.id == "5"
    assert result.status == "published"
    assert result.url == "https://strapi.example.com/articles/ten-ways"


def test_strapi_v5_draft_entry(strapi, strapi_bundle, http, make_response):
    http.request.return_value = make_response(200, {"data": {
        "id": 5, "documentId": "doc-abc", "title": "Ten Ways", "content": "x", "slug": "ten-ways", "publishedAt": None,
    }})
    result = strapi.publish_article(strapi_bundle, "posts", ArticlePayload(title="Ten Ways", content="x", external_id="doc-abc"))

    assert http.request.call_args.args[0] == "PUT"
    assert http.request.call_args.args[1] == "https://strapi.example.com/api/posts/doc-abc"
    assert result.id == "doc-abc"
    assert result.status == "draft"


# Registry

def test_registry_only_offers_configured_oauth_platforms(settings):
    registry = ProviderRegistry(settings)
    assert sorted(registry.available()) == ["strapi", "webflow", "wordpress"]
    assert registry.get("webflow").display_name == "Webflow"

    with pytest.raises(ProviderNotConfiguredError):
        registry.get("shopify")
    with pytest.raises(ProviderNotConfiguredError):
        registry.get("ghost")
