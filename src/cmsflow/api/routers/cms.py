"""CMS connection endpoints: OAuth handshake, targets, field mapping."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cmsflow.api.deps import get_db, get_registry
from cmsflow.api.schemas import (
    ConnectionSummary,
    FieldMappingResponse,
    FieldMappingSchema,
    FieldMappingUpdate,
    HandshakeCallbackRequest,
    HandshakeStartRequest,
    HandshakeStartResponse,
    TargetSchema,
)
from cmsflow.db.models import CMSConnection, ProviderType
from cmsflow.providers.base import FieldMapping, ProviderAuthError, ProviderError, ProviderNotConfiguredError
from cmsflow.providers.registry import ProviderRegistry
from cmsflow.services.connections import ConnectionService
from cmsflow.services.oauth import HandshakeConflictError, HandshakeError, OAuthHandshakeManager

router = APIRouter()


def _handshake(request: Request) -> OAuthHandshakeManager:
    return OAuthHandshakeManager(request.app.state.registry, request.app.state.settings.oauth)


def _handshake_error(e: HandshakeError) -> JSONResponse:
    status_code = 409 if isinstance(e, HandshakeConflictError) else 400
    return JSONResponse(status_code=status_code, content={"error": e.code, "message": str(e)})


def _owned_connection(db: Session, connection_id: int, owner_token: str) -> CMSConnection:
    connection = ConnectionService.get(db, connection_id, owner_token)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection


@router.post("/oauth/{provider}/start", response_model=HandshakeStartResponse)
def start_handshake(
    provider: ProviderType,
    payload: HandshakeStartRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Issue a state token and return the platform's authorization URL."""
    context = {
        "site_id": payload.site_id,
        "site_url": payload.site_url,
        "shop_domain": payload.shop_domain,
        "name": payload.name,
    }
    try:
        started = _handshake(request).start(db, provider, payload.owner_token, payload.redirect_uri, context)
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=404, detail={"error": e.code, "message": str(e)})
    except ProviderError as e:
        raise HTTPException(status_code=400, detail={"error": e.code, "message": str(e)})
    return HandshakeStartResponse(auth_url=started.auth_url, state=started.state, expires_at=started.expires_at)


def _complete(request: Request, db: Session, provider: ProviderType, code: str, state: str,
              owner_token: Optional[str] = None, extra_context: Optional[dict] = None):
    try:
        connection = _handshake(request).complete(db, provider, code, state, owner_token, extra_context)
    except HandshakeError as e:
        return _handshake_error(e)
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=404, detail={"error": e.code, "message": str(e)})
    return {"success": True, "connection": ConnectionSummary.from_row(connection).model_dump(mode="json")}


@router.get("/oauth/{provider}/callback")
def handshake_callback_get(
    provider: ProviderType,
    request: Request,
    state: str = Query(...),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    site_url: Optional[str] = Query(default=None),
    user_login: Optional[str] = Query(default=None),
    password: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Browser redirect target. WordPress sends the application password instead of a code."""
    if error:
        return JSONResponse(status_code=400, content={"error": "provider_rejected", "message": error})
    code = code or password
    if not code:
        return JSONResponse(status_code=400, content={"error": "provider_rejected", "message": "No authorization code"})
    extra = {"user_login": user_login, "site_url": site_url} if user_login else None
    return _complete(request, db, provider, code, state, extra_context=extra)


@router.post("/oauth/{provider}/callback")
def handshake_callback_post(
    provider: ProviderType,
    payload: HandshakeCallbackRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    return _complete(request, db, provider, payload.code, payload.state, payload.owner_token)


@router.get("/connections", response_model=list[ConnectionSummary])
def list_connections(
    owner_token: str = Query(alias="ownerToken"),
    site_id: Optional[int] = Query(default=None, alias="siteId"),
    db: Session = Depends(get_db),
):
    return [ConnectionSummary.from_row(c) for c in ConnectionService.list_for_owner(db, owner_token, site_id)]


@router.post("/connections/{connection_id}/test")
def test_connection(
    connection_id: int,
    owner_token: str = Query(alias="ownerToken"),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
):
    connection = _owned_connection(db, connection_id, owner_token)
    try:
        provider = registry.get(connection.provider_type)
        valid = ConnectionService.test_connection(db, connection, provider)
    except ProviderError as e:
        return {"success": False, "error": e.code, "message": str(e)}
    return {"success": valid, "connection": ConnectionSummary.from_row(ConnectionService.get(db, connection_id)).model_dump(mode="json")}


@router.delete("/connections/{connection_id}")
def deactivate_connection(
    connection_id: int,
    owner_token: str = Query(alias="ownerToken"),
    db: Session = Depends(get_db),
):
    if not ConnectionService.deactivate(db, connection_id, owner_token):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True}


@router.get("/connections/{connection_id}/targets", response_model=list[TargetSchema])
def list_targets(
    connection_id: int,
    owner_token: str = Query(alias="ownerToken"),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
):
    """Destinations the connection can publish into."""
    connection = _owned_connection(db, connection_id, owner_token)
    try:
        provider = registry.get(connection.provider_type)
        targets = provider.list_publish_targets(ConnectionService.to_bundle(connection))
    except ProviderAuthError as e:
        ConnectionService.mark_error(db, connection.id, str(e))
        raise HTTPException(status_code=409, detail={"error": e.code, "message": "Reconnect required"})
    except ProviderError as e:
        raise HTTPException(status_code=502, detail={"error": e.code, "message": str(e)})
    return [TargetSchema(id=t.id, name=t.name, url=t.url, description=t.description) for t in targets]


@router.get("/connections/{connection_id}/field-mapping", response_model=FieldMappingResponse)
def get_field_mapping(
    connection_id: int,
    owner_token: str = Query(alias="ownerToken"),
    target_id: Optional[str] = Query(default=None, alias="targetId"),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
):
    """Saved mapping if any; otherwise one inferred from the target's schema."""
    connection = _owned_connection(db, connection_id, owner_token)
    config = connection.config or {}
    target = target_id or config.get("target_id")

    saved = ConnectionService.field_mapping_for(connection)
    if saved is not None and (target_id is None or target_id == config.get("target_id")):
        return _mapping_response(target, saved, "saved")

    provider = registry.get(connection.provider_type)
    if not provider.supports_field_mapping:
        raise HTTPException(status_code=400, detail=f"{provider.display_name} uses a fixed schema")
    if not target:
        raise HTTPException(status_code=400, detail="targetId is required")
    try:
        schema = provider.get_collection_schema(ConnectionService.to_bundle(connection), target)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail={"error": e.code, "message": str(e)})
    return _mapping_response(target, provider.infer_field_mapping(schema), "inferred")


@router.put("/connections/{connection_id}/field-mapping", response_model=FieldMappingResponse)
def save_field_mapping(
    connection_id: int,
    payload: FieldMappingUpdate,
    db: Session = Depends(get_db),
):
    """Store a caller-reviewed mapping on the connection."""
    connection = _owned_connection(db, connection_id, payload.owner_token)
    mapping = FieldMapping(**payload.mapping.model_dump())
    missing = mapping.missing_required()
    if missing:
        raise HTTPException(status_code=422, detail={"error": "missing_field_mapping", "missing": missing})
    ConnectionService.save_field_mapping(db, connection, mapping, payload.target_id)
    return _mapping_response(payload.target_id or (connection.config or {}).get("target_id"), mapping, "saved")


def _mapping_response(target: Optional[str], mapping: FieldMapping, source: str) -> FieldMappingResponse:
    return FieldMappingResponse(
        target_id=target,
        mapping=FieldMappingSchema(**mapping.to_dict()),
        missing_required=mapping.missing_required(),
        source=source,
    )
