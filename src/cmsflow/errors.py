"""Shared exception root and job reason codes."""

from __future__ import annotations

from typing import Optional


class CMSFlowError(Exception):
    """Base error carrying a machine-readable reason code."""

    code: str = "error"

    def __init__(self, msg: str, code: Optional[str] = None):
        super().__init__(msg)
        if code is not None:
            self.code = code


# Reason codes persisted on article_jobs.error_code
NO_CMS_CONNECTION = "no_cms_connection"
RECONNECT_REQUIRED = "reconnect_required"
MISSING_FIELD_MAPPING = "missing_field_mapping"
MISSING_PUBLISH_TARGET = "missing_publish_target"
PROVIDER_NOT_CONFIGURED = "provider_not_configured"
NO_CONTENT = "no_content"
PROVIDER_ERROR = "provider_error"
PROVIDER_TRANSIENT = "provider_transient"
GENERATION_ERROR = "generation_error"
STALE_CLAIM = "stale_claim"

# Failures that cannot succeed on retry without a configuration change.
CONFIGURATION_CODES = frozenset(
    {
        NO_CMS_CONNECTION,
        RECONNECT_REQUIRED,
        MISSING_FIELD_MAPPING,
        MISSING_PUBLISH_TARGET,
        PROVIDER_NOT_CONFIGURED,
        NO_CONTENT,
    }
)
