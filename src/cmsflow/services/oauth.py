"""OAuth handshake: issue single-use state, validate callbacks, store the connection.

Every state check happens before the adapter is touched, so a forged,
expired or replayed callback never reaches the provider's token endpoint.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from cmsflow.config import OAuthConfig
from cmsflow.db.base import as_utc, utcnow
from cmsflow.db.models import CMSConnection, OAuthState, ProviderType
from cmsflow.errors import CMSFlowError
from cmsflow.providers.base import ProviderError, ProviderRejectedError
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.connections import ConnectionService, SiteOwnedElsewhereError

# Context keys an adapter may need on the way back in
CONTEXT_KEYS = ("site_id", "site_url", "shop_domain", "user_login", "name")


class HandshakeError(CMSFlowError):
    code = "handshake_error"


class InvalidStateError(HandshakeError):
    """Unknown, already-consumed, or mismatched state."""

    code = "invalid_state"


class ExpiredStateError(HandshakeError):
    code = "expired_state"


class HandshakeProviderError(HandshakeError):
    """The platform refused the authorization code."""

    code = "provider_rejected"


class HandshakeConflictError(HandshakeError):
    """Another owner already holds the site's connection for this platform."""

    code = "site_owned_elsewhere"


@dataclass
class HandshakeStart:
    auth_url: str
    state: str
    expires_at: datetime


class OAuthHandshakeManager:
    def __init__(self, registry: ProviderRegistry, config: OAuthConfig):
        self.registry = registry
        self.config = config

    def default_redirect_uri(self, provider_type: ProviderType) -> str:
        return f"{self.config.redirect_base_url.rstrip('/')}/api/cms/oauth/{provider_type.value}/callback"

    def start(
        self,
        session: Session,
        provider_type: ProviderType,
        owner_token: str,
        redirect_uri: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> HandshakeStart:
        provider = self.registry.get(provider_type)
        redirect_uri = redirect_uri or self.default_redirect_uri(provider_type)
        stored_context = {k: v for k, v in (context or {}).items() if k in CONTEXT_KEYS and v is not None}
        if "site_id" not in stored_context:
            raise ValueError("A site_id is required to start a CMS handshake")

        state_value = secrets.token_urlsafe(32)
        now = utcnow()
        expires_at = now + timedelta(seconds=self.config.state_ttl_seconds)

        # Build the URL first so a bad context never leaves a dangling state
        auth_url = provider.build_authorization_url(redirect_uri, state_value, stored_context)

        session.add(OAuthState(
            state=state_value,
            provider_type=provider_type,
            owner_token=owner_token,
            redirect_uri=redirect_uri,
            context=stored_context,
            issued_at=now,
            expires_at=expires_at,
        ))
        session.commit()
        logger.info("[OAUTH] Started {} handshake for owner {}", provider_type.value, _mask(owner_token))
        return HandshakeStart(auth_url=auth_url, state=state_value, expires_at=expires_at)

    def complete(
        self,
        session: Session,
        provider_type: ProviderType,
        code: str,
        state: str,
        owner_token: Optional[str] = None,
        extra_context: Optional[Dict[str, Any]] = None,
    ) -> CMSConnection:
        """Consume the state, exchange the code and upsert the active connection.

        Raises:
            InvalidStateError: unknown, consumed, or mismatched state.
            ExpiredStateError: the state outlived its TTL.
            HandshakeProviderError: the platform refused the code.
            HandshakeConflictError: another owner holds the site's connection.
        """
        row = session.execute(select(OAuthState).where(OAuthState.state == state)).scalar_one_or_none()
        if row is None:
            logger.warning("[OAUTH] Callback with unknown or consumed state")
            raise InvalidStateError("Unknown or already used state")

        if as_utc(row.expires_at) <= utcnow():
            logger.warning("[OAUTH] Callback with expired state for {}", row.provider_type.value)
            raise ExpiredStateError("Authorization state expired; start the connection again")

        if row.provider_type != provider_type:
            raise InvalidStateError("State was issued for a different provider")
        if owner_token is not None and row.owner_token != owner_token:
            raise InvalidStateError("State was issued to a different owner")

        owner = row.owner_token
        redirect_uri = row.redirect_uri
        context = dict(row.context or {})
        if extra_context:
            # Callback-supplied values may not replace what was bound at start
            context.update({k: v for k, v in extra_context.items() if k in CONTEXT_KEYS and k not in context})
        site_id = context.get("site_id")
        if site_id is None:
            raise InvalidStateError("State carries no site reference")

        # Consume: only one concurrent callback can delete the row
        result = session.execute(
            delete(OAuthState)
            .where(OAuthState.id == row.id, OAuthState.state == state)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount != 1:
            logger.warning("[OAUTH] State consumed by a concurrent callback")
            raise InvalidStateError("Unknown or already used state")

        try:
            ConnectionService.ensure_site_available(session, owner, int(site_id), provider_type)
        except SiteOwnedElsewhereError as e:
            raise HandshakeConflictError(str(e)) from e

        provider = self.registry.get(provider_type)
        try:
            bundle = provider.exchange_code(code, redirect_uri, context)
        except ProviderRejectedError as e:
            logger.warning("[OAUTH] {} rejected the authorization code: {}", provider.display_name, e)
            raise HandshakeProviderError(str(e)) from e
        except ProviderError as e:
            logger.error("[OAUTH] {} token exchange failed: {}", provider.display_name, e)
            raise HandshakeProviderError(str(e)) from e

        try:
            connection = ConnectionService.upsert_active(
                session,
                owner_token=owner,
                site_id=int(site_id),
                provider_type=provider_type,
                bundle=bundle,
                name=context.get("name") or f"{provider.display_name} ({_site_label(context)})",
            )
        except SiteOwnedElsewhereError as e:
            raise HandshakeConflictError(str(e)) from e
        logger.success("[OAUTH] {} connected for site {} ({})", provider.display_name, site_id, bundle.masked_token())
        return connection

    @staticmethod
    def sweep_expired(session: Session, now: Optional[datetime] = None) -> int:
        result = session.execute(
            delete(OAuthState)
            .where(OAuthState.expires_at <= (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount:
            logger.info("[OAUTH] Swept {} expired states", result.rowcount)
        return result.rowcount


def _mask(value: str) -> str:
    return value[:4] + "..." if value else "<empty>"


def _site_label(context: Dict[str, Any]) -> str:
    return context.get("shop_domain") or context.get("site_url") or f"site {context.get('site_id')}"
