# © [2025] EDT&Partners. Licensed under CC BY 4.0.

from datetime import datetime
from typing import Any, List, Optional, Dict
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, model_validator

from database.models import ContextSyncStatus, SyncLogStatus
from lti.config import PlatformPresets

class LTIPlatformCreate(BaseModel):
    name: str
    platform_type: str
    issuer: str
    client_id: str
    auth_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    jwks_endpoint: Optional[str] = None
    deployment_id: Optional[str] = None
    nrps_endpoint: Optional[str] = None
    auto_provision_users: bool = True

    @model_validator(mode="after")
    def fill_platform_endpoints(self):
        """Known LMS families only need the issuer; the endpoints follow from it"""
        presets = PlatformPresets.build_endpoints(self.platform_type, self.issuer)
        for field_name, url in presets.items():
            if not getattr(self, field_name):
                setattr(self, field_name, url)

        missing = [name for name in ("auth_endpoint", "token_endpoint", "jwks_endpoint") if not getattr(self, name)]
        if missing:
            raise ValueError(f"Missing endpoints for platform type '{self.platform_type}': {', '.join(missing)}")
        return self

class LTIPlatformUpdate(BaseModel):
    name: Optional[str] = None
    auth_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    jwks_endpoint: Optional[str] = None
    deployment_id: Optional[str] = None
    nrps_endpoint: Optional[str] = None
    auto_provision_users: Optional[bool] = None
    is_active: Optional[bool] = None

class LTIPlatformResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    platform_type: str
    issuer: str
    client_id: str
    auth_endpoint: str
    token_endpoint: str
    jwks_endpoint: str
    deployment_id: Optional[str] = None
    nrps_endpoint: Optional[str] = None
    auto_provision_users: bool
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class LTIKeyMetadata(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key_id: str
    algorithm: str
    public_key: str
    is_active: bool
    created_at: Optional[datetime] = None

class LTIContextResponse(BaseModel):
    id: UUID
    platform_id: UUID
    platform_name: str
    platform_type: str
    context_id: str
    label: Optional[str] = None
    title: Optional[str] = None
    sync_status: ContextSyncStatus
    sync_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    enrollment_count: int = 0

class LTISyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    platform_id: UUID
    context_id: Optional[UUID] = None
    sync_type: str
    status: SyncLogStatus
    items_processed: int
    items_created: int
    items_updated: int
    items_failed: int
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

class NRPSSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context_id: UUID = Field(alias="contextId")
    platform_id: UUID = Field(alias="platformId")

class SessionExchangeRequest(BaseModel):
    code: str = Field(min_length=1)

class SessionTokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

class UserProfileHints(BaseModel):
    """Profile data the launch knows about a user before the account exists"""
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    role: Optional[str] = None
    platform_id: Optional[UUID] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

class NRPSMember(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    status: Optional[str] = "Active"
    email: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
