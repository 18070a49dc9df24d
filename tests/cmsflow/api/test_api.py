from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from cmsflow.api.app import create_app
from cmsflow.db.models import ArticleJobStatus, ProviderType
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.collaborators import VerificationResult

AUTH = {"Authorization": "Bearer cron-secret"}


@pytest.fixture
def http(make_response):
    http = MagicMock()
    http.request.return_value = make_response(200, {"id": 1, "name": "editor"})
    return http


@pytest.fixture
def verifier():
    verifier = MagicMock()
    verifier.verify.return_value = VerificationResult(verified=True)
    return verifier


@pytest.fixture
def client(settings, session_factory, http, verifier):
    app = create_app(settings, session_factory, registry=ProviderRegistry(settings, session=http), verifier=verifier)
    return TestClient(app)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert "wordpress" in resp.json()["providers"]


# Cron triggers

@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Bearer wrong"},
    {"Authorization": "cron-secret"},
    {"Authorization": "Bearer café".encode("latin-1")},
])
def test_cron_requires_secret(client, headers):
    assert client.post("/api/cron/publish-scheduled", headers=headers).status_code == 401


def test_cron_closed_without_configured_secret(settings, session_factory):
    settings.cron_secret = None
    client = TestClient(create_app(settings, session_factory))
    resp = client.post("/api/cron/publish-scheduled", headers={"Authorization": "Bearer None"})
    assert resp.status_code == 401


def test_publish_scheduled(client, make_job):
    make_job()
    resp = client.post("/api/cron/publish-scheduled", headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1
    assert body["failed"] == 1
    assert body["errors"][0]["code"] == "no_cms_connection"


def test_verify_remediation(client, make_item):
    make_item()
    resp = client.post("/api/cron/verify-remediation", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["verified"] == 1


def test_verify_remediation_without_verifier(settings, session_factory):
    client = TestClient(create_app(settings, session_factory))
    assert client.post("/api/cron/verify-remediation", headers=AUTH).status_code == 503


def test_sweep(client):
    resp = client.post("/api/cron/sweep", headers=AUTH)
    assert resp.json() == {"success": True, "released_claims": 0, "expired_states": 0}


# Article triggers

def test_advance_unknown_job(client):
    resp = client.post("/api/articles/advance", json={"ownerToken": "owner-1", "jobId": 404})
    assert resp.status_code == 404


def test_advance_reports_failure(client, make_job):
    job = make_job()
    resp = client.post("/api/articles/advance", json={"ownerToken": "owner-1", "jobId": job.id})
    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["failed"] == 1


def test_advance_checks_owner(client, make_job):
    job = make_job()
    resp = client.post("/api/articles/advance", json={"ownerToken": "intruder", "jobId": job.id})
    assert resp.status_code == 404


def test_retry_published_job_conflicts(client, make_job):
    job = make_job(status=ArticleJobStatus.PUBLISHED)
    resp = client.post(f"/api/articles/{job.id}/retry", json={"ownerToken": "owner-1"})
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "invalid_transition"


def test_verification_status_endpoint(client, make_item):
    make_item()
    resp = client.get("/api/remediation/verification-status", params={"ownerToken": "owner-1"})
    assert resp.json()["pending"] == 1
    assert resp.json()["due"] == 1


# CMS handshake

def _start_wordpress(client):
    resp = client.post("/api/cms/oauth/wordpress/start", json={
        "ownerToken": "owner-1", "siteId": 1, "siteUrl": "https://blog.example.com",
    })
    assert resp.status_code == 200
    return resp.json()


def test_wordpress_handshake_round_trip(client, http):
    started = _start_wordpress(client)
    assert started["authUrl"].startswith("https://blog.example.com/wp-admin/authorize-application.php?")

    resp = client.get("/api/cms/oauth/wordpress/callback", params={
        "state": started["state"],
        "site_url": "https://blog.example.com",
        "user_login": "editor",
        "password": "abcd efgh ijkl",
    })

    assert resp.status_code == 200
    connection = resp.json()["connection"]
    assert connection["provider_type"] == "wordpress"
    assert connection["status"] == "active"
    assert http.request.call_args.kwargs["auth"] == ("editor", "abcd efgh ijkl")

    listed = client.get("/api/cms/connections", params={"ownerToken": "owner-1"}).json()
    assert [c["id"] for c in listed] == [connection["id"]]
    assert "abcd efgh ijkl" not in str(listed)

    replay = client.get("/api/cms/oauth/wordpress/callback", params={
        "state": started["state"], "user_login": "editor", "password": "abcd efgh ijkl",
    })
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_state"


def test_callback_for_site_owned_by_another_account(client, http, make_connection):
    make_connection(owner_token="owner-2")
    started = _start_wordpress(client)

    resp = client.get("/api/cms/oauth/wordpress/callback", params={
        "state": started["state"], "user_login": "editor", "password": "abcd efgh ijkl",
    })

    assert resp.status_code == 409
    assert resp.json()["error"] == "site_owned_elsewhere"
    http.request.assert_not_called()


def test_callback_with_forged_state(client, http):
    resp = client.post("/api/cms/oauth/wordpress/callback", json={"code": "x", "state": "forged"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "invalid_state", "message": "Unknown or already used state"}
    http.request.assert_not_called()


def test_callback_with_user_denial(client):
    started = _start_wordpress(client)
    resp = client.get("/api/cms/oauth/wordpress/callback", params={"state": started["state"], "error": "access_denied"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "provider_rejected"


def test_start_unconfigured_provider(client):
    resp = client.post("/api/cms/oauth/shopify/start", json={
        "ownerToken": "owner-1", "siteId": 1, "shopDomain": "demo.myshopify.com",
    })
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "provider_not_configured"


def test_connection_targets_and_deactivate(client, make_connection, make_response, http):
    connection = make_connection()
    http.request.return_value = make_response(200, {"name": "Acme Blog", "description": "News"})

    targets = client.get(f"/api/cms/connections/{connection.id}/targets", params={"ownerToken": "owner-1"})
    assert targets.json() == [{"id": "main", "name": "Acme Blog", "url": "https://blog.example.com", "description": "News"}]

    assert client.delete(f"/api/cms/connections/{connection.id}", params={"ownerToken": "intruder"}).status_code == 404
    assert client.delete(f"/api/cms/connections/{connection.id}", params={"ownerToken": "owner-1"}).json() == {"success": True}


def test_save_field_mapping_requires_core_fields(client, make_connection):
    connection = make_connection(provider_type=ProviderType.WEBFLOW, config={})
    resp = client.put(f"/api/cms/connections/{connection.id}/field-mapping", json={
        "ownerToken": "owner-1", "targetId": "site1:col1", "mapping": {"title": "name"},
    })
    assert resp.status_code == 422
    assert resp.json()["detail"]["missing"] == ["slug", "body"]

    resp = client.put(f"/api/cms/connections/{connection.id}/field-mapping", json={
        "ownerToken": "owner-1", "targetId": "site1:col1", "mapping": {"title": "name", "slug": "slug", "body": "post-body"},
    })
    assert resp.status_code == 200
    assert resp.json()["source"] == "saved"

    saved = client.get(f"/api/cms/connections/{connection.id}/field-mapping", params={"ownerToken": "owner-1"})
    assert saved.json()["mapping"]["body"] == "post-body"
    assert saved.json()["target_id"] == "site1:col1"
