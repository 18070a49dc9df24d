from datetime import timedelta

import pytest

from cmsflow.config import VerificationConfig, load_settings


def test_defaults(monkeypatch):
    for name in ("WEBFLOW_CLIENT_ID", "WEBFLOW_CLIENT_SECRET", "SHOPIFY_CLIENT_ID", "SHOPIFY_CLIENT_SECRET", "CRON_SECRET"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.providers == {}
    assert settings.cron_secret is None
    assert settings.verification.max_attempts == 5
    assert settings.publisher.publish_mode == "draft"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/cmsflow")
    monkeypatch.setenv("WEBFLOW_CLIENT_ID", "wf-id")
    monkeypatch.setenv("WEBFLOW_CLIENT_SECRET", "wf-secret")
    monkeypatch.setenv("SHOPIFY_CLIENT_ID", "only-id")
    monkeypatch.delenv("SHOPIFY_CLIENT_SECRET", raising=False)
    monkeypatch.setenv("VERIFY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("PUBLISH_INTER_JOB_DELAY", "0.5")
    monkeypatch.setenv("CRON_SECRET", "s3cret")

    settings = load_settings()

    assert settings.database.url.startswith("postgresql://")
    assert settings.get_provider_credentials("webflow").client_id == "wf-id"
    assert settings.get_provider_credentials("shopify") is None
    assert settings.verification.max_attempts == 3
    assert settings.publisher.inter_job_delay_seconds == 0.5
    assert settings.cron_secret == "s3cret"


def test_invalid_values_raise(monkeypatch):
    monkeypatch.setenv("VERIFY_MAX_ATTEMPTS", "0")
    with pytest.raises(RuntimeError):
        load_settings()
    monkeypatch.setenv("VERIFY_MAX_ATTEMPTS", "many")
    with pytest.raises(RuntimeError):
        load_settings()


def test_backoff_doubles_and_caps():
    config = VerificationConfig(base_delay_seconds=3600, backoff_multiplier=2.0, max_delay_seconds=4 * 3600)
    assert config.delay_for_attempt(1) == timedelta(hours=1)
    assert config.delay_for_attempt(2) == timedelta(hours=2)
    assert config.delay_for_attempt(3) == timedelta(hours=4)
    assert config.delay_for_attempt(6) == timedelta(hours=4)
