"""Request and response schemas for the trigger and handshake endpoints."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cmsflow.db.models import CMSConnection


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AdvanceRequest(CamelModel):
    owner_token: str = Field(alias="ownerToken")
    job_id: int = Field(alias="jobId")


class OwnerRequest(CamelModel):
    owner_token: str = Field(alias="ownerToken")


class RunSummary(BaseModel):
    """Shape shared by every pipeline trigger."""

    success: bool
    processed: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: List[Dict[str, Any]] = []
    duration_ms: Optional[int] = None


class HandshakeStartRequest(CamelModel):
    owner_token: str = Field(alias="ownerToken")
    site_id: int = Field(alias="siteId")
    site_url: Optional[str] = Field(default=None, alias="siteUrl")
    shop_domain: Optional[str] = Field(default=None, alias="shopDomain")
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri")
    name: Optional[str] = None


class HandshakeStartResponse(CamelModel):
    auth_url: str = Field(serialization_alias="authUrl")
    state: str
    expires_at: datetime = Field(serialization_alias="expiresAt")


class HandshakeCallbackRequest(CamelModel):
    code: str
    state: str
    owner_token: Optional[str] = Field(default=None, alias="ownerToken")


class ConnectionSummary(BaseModel):
    id: int
    name: str
    site_id: int
    provider_type: str
    status: str
    target_id: Optional[str] = None
    publish_mode: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, connection: CMSConnection) -> "ConnectionSummary":
        # Tokens stay server-side
        config = connection.config or {}
        return cls(
            id=connection.id,
            name=connection.name,
            site_id=connection.site_id,
            provider_type=connection.provider_type.value,
            status=connection.status.value,
            target_id=config.get("target_id"),
            publish_mode=config.get("publish_mode"),
            last_sync_at=connection.last_sync_at,
            last_error=connection.last_error,
        )


class TargetSchema(BaseModel):
    id: str
    name: str
    url: Optional[str] = None
    description: Optional[str] = None


class FieldMappingSchema(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    body: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    featured_image: Optional[str] = None


class FieldMappingResponse(BaseModel):
    target_id: Optional[str] = None
    mapping: FieldMappingSchema
    missing_required: List[str] = []
    source: str  # inferred | saved


class FieldMappingUpdate(CamelModel):
    owner_token: str = Field(alias="ownerToken")
    target_id: Optional[str] = Field(default=None, alias="targetId")
    mapping: FieldMappingSchema
