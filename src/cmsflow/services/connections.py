"""Service for persisted CMS connections."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cmsflow.db.base import as_utc, utcnow
from cmsflow.db.models import CMSConnection, ConnectionStatus, ProviderType
from cmsflow.errors import CMSFlowError
from cmsflow.providers.base import CMSProvider, CredentialBundle, FieldMapping, ProviderAuthError

# Config keys that identify the remote account rather than tune publishing
IDENTITY_KEYS = ("site_url", "shop_domain", "username")


class SiteOwnedElsewhereError(CMSFlowError):
    """The site's active connection for this platform belongs to another owner."""

    code = "site_owned_elsewhere"


class ConnectionService:
    """Reads and writes cms_connections. Credentials never reach the logs."""

    @staticmethod
    def get(session: Session, connection_id: int, owner_token: Optional[str] = None) -> Optional[CMSConnection]:
        connection = session.get(CMSConnection, connection_id)
        if connection is None:
            return None
        if owner_token is not None and connection.owner_token != owner_token:
            return None
        return connection

    @staticmethod
    def find_active_for_site(session: Session, owner_token: str, site_id: int) -> Optional[CMSConnection]:
        """Most recently created active connection for a site, any provider."""
        query = (
            select(CMSConnection)
            .where(
                CMSConnection.owner_token == owner_token,
                CMSConnection.site_id == site_id,
                CMSConnection.status == ConnectionStatus.ACTIVE,
            )
            .order_by(desc(CMSConnection.created_at), desc(CMSConnection.id))
            .limit(1)
        )
        return session.execute(query).scalar_one_or_none()

    @staticmethod
    def list_for_owner(session: Session, owner_token: str, site_id: Optional[int] = None) -> List[CMSConnection]:
        query = select(CMSConnection).where(CMSConnection.owner_token == owner_token)
        if site_id is not None:
            query = query.where(CMSConnection.site_id == site_id)
        query = query.order_by(desc(CMSConnection.created_at), desc(CMSConnection.id))
        return list(session.execute(query).scalars().all())

    @staticmethod
    def upsert_active(
        session: Session,
        *,
        owner_token: str,
        site_id: int,
        provider_type: ProviderType,
        bundle: CredentialBundle,
        name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> CMSConnection:
        """Create or refresh the single active connection for (site, provider).

        Raises:
            SiteOwnedElsewhereError: the active row belongs to another owner.
        """
        merged = dict(config or {})
        merged.update({k: v for k, v in bundle.extra.items() if k in IDENTITY_KEYS and v})

        existing = ConnectionService.ensure_site_available(session, owner_token, site_id, provider_type)
        if existing is None:
            connection = CMSConnection(
                owner_token=owner_token,
                site_id=site_id,
                name=name or f"{provider_type.value.title()} connection",
                provider_type=provider_type,
                status=ConnectionStatus.ACTIVE,
            )
            ConnectionService._apply_bundle(connection, bundle)
            connection.config = merged
            session.add(connection)
            try:
                session.commit()
                logger.info("[CONNECTIONS] Created {} connection {} for site {}", provider_type.value, connection.id, site_id)
                return connection
            except IntegrityError:
                # Another handshake created the active row first
                session.rollback()
                existing = ConnectionService.ensure_site_available(session, owner_token, site_id, provider_type)
                if existing is None:
                    raise

        if name:
            existing.name = name
        ConnectionService._apply_bundle(existing, bundle)
        existing.config = {**(existing.config or {}), **merged}
        existing.last_error = None
        session.commit()
        logger.info("[CONNECTIONS] Refreshed {} connection {} for site {}", provider_type.value, existing.id, site_id)
        return existing

    @staticmethod
    def to_bundle(connection: CMSConnection) -> CredentialBundle:
        config = connection.config or {}
        return CredentialBundle(
            access_token=connection.access_token,
            refresh_token=connection.refresh_token,
            expires_at=as_utc(connection.token_expires_at),
            scopes=list(connection.scopes or []),
            extra={k: config[k] for k in IDENTITY_KEYS if config.get(k)},
        )

    @staticmethod
    def ensure_fresh_credentials(
        session: Session,
        connection: CMSConnection,
        provider: CMSProvider,
        skew: timedelta,
    ) -> CredentialBundle:
        """Refresh tokens close to expiry.

        The write only lands if the stored token is still the one read, so two
        workers refreshing at once cannot clobber the newer token.
        """
        bundle = ConnectionService.to_bundle(connection)
        if not bundle.refresh_token or not bundle.expires_within(skew):
            return bundle

        refreshed = provider.refresh_token(bundle)
        if refreshed.access_token == bundle.access_token:
            return bundle

        result = session.execute(
            update(CMSConnection)
            .where(CMSConnection.id == connection.id, CMSConnection.access_token == bundle.access_token)
            .values(
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token,
                token_expires_at=refreshed.expires_at,
                scopes=refreshed.scopes or connection.scopes,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()

        if result.rowcount == 0:
            logger.info("[CONNECTIONS] Connection {} was refreshed by another worker; using stored token", connection.id)
        else:
            logger.info("[CONNECTIONS] Refreshed token for connection {} ({})", connection.id, refreshed.masked_token())

        current = session.get(CMSConnection, connection.id, populate_existing=True)
        return ConnectionService.to_bundle(current)

    @staticmethod
    def mark_error(session: Session, connection_id: int, message: str) -> None:
        session.execute(
            update(CMSConnection)
            .where(CMSConnection.id == connection_id)
            .values(status=ConnectionStatus.ERROR, last_error=message[:1000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        logger.warning("[CONNECTIONS] Connection {} marked error: {}", connection_id, message[:200])

    @staticmethod
    def mark_synced(session: Session, connection_id: int) -> None:
        now = utcnow()
        session.execute(
            update(CMSConnection)
            .where(CMSConnection.id == connection_id)
            .values(last_sync_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()

    @staticmethod
    def deactivate(session: Session, connection_id: int, owner_token: str) -> bool:
        result = session.execute(
            update(CMSConnection)
            .where(CMSConnection.id == connection_id, CMSConnection.owner_token == owner_token)
            .values(status=ConnectionStatus.INACTIVE, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    @staticmethod
    def test_connection(session: Session, connection: CMSConnection, provider: CMSProvider) -> bool:
        """Validate stored credentials; flip the connection to error when rejected."""
        try:
            valid = provider.validate_credentials(ConnectionService.to_bundle(connection))
        except ProviderAuthError as e:
            valid = False
            logger.warning("[CONNECTIONS] Validation for {} raised: {}", connection.id, e)

        if not valid:
            ConnectionService.mark_error(session, connection.id, f"{provider.display_name} rejected the stored credentials")
            return False

        if connection.status == ConnectionStatus.ERROR:
            other = ConnectionService._active_for_provider(session, connection.site_id, connection.provider_type)
            if other is None:
                connection.status = ConnectionStatus.ACTIVE
                connection.last_error = None
        connection.last_sync_at = utcnow()
        session.commit()
        return True

    @staticmethod
    def save_field_mapping(
        session: Session,
        connection: CMSConnection,
        mapping: FieldMapping,
        target_id: Optional[str] = None,
    ) -> CMSConnection:
        config = dict(connection.config or {})
        config["field_mapping"] = mapping.to_dict()
        if target_id:
            config["target_id"] = target_id
        # Reassign so the JSON column is flagged dirty
        connection.config = config
        session.commit()
        return connection

    @staticmethod
    def field_mapping_for(connection: CMSConnection) -> Optional[FieldMapping]:
        return FieldMapping.from_dict((connection.config or {}).get("field_mapping"))

    @staticmethod
    def ensure_site_available(
        session: Session, owner_token: str, site_id: int, provider_type: ProviderType
    ) -> Optional[CMSConnection]:
        """Return the owner's active row for (site, provider), refusing another owner's."""
        existing = ConnectionService._active_for_provider(session, site_id, provider_type)
        if existing is not None and existing.owner_token != owner_token:
            logger.warning(
                "[CONNECTIONS] Refused {} connection for site {}: owned by another account",
                provider_type.value,
                site_id,
            )
            raise SiteOwnedElsewhereError(f"Site {site_id} already has an active {provider_type.value} connection")
        return existing

    @staticmethod
    def _active_for_provider(session: Session, site_id: int, provider_type: ProviderType) -> Optional[CMSConnection]:
        query = select(CMSConnection).where(
            CMSConnection.site_id == site_id,
            CMSConnection.provider_type == provider_type,
            CMSConnection.status == ConnectionStatus.ACTIVE,
        )
        return session.execute(query).scalar_one_or_none()

    @staticmethod
    def _apply_bundle(connection: CMSConnection, bundle: CredentialBundle) -> None:
        connection.access_token = bundle.access_token
        connection.refresh_token = bundle.refresh_token
        connection.token_expires_at = bundle.expires_at
        connection.scopes = list(bundle.scopes)
        connection.status = ConnectionStatus.ACTIVE
