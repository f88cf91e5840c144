"""
Connection and token health Pydantic schemas.
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel


class Provider(str, Enum):
    """Supported accounting providers."""
    GOOGLE = "google"
    XERO = "xero"
    QUICKBOOKS = "quickbooks"


class ConnectionRead(BaseModel):
    """Schema for reading connection data. Never carries token values."""
    id: str
    provider: Provider
    tenant_id: str
    tenant_name: str | None
    scopes: list[str]
    is_active: bool
    last_synced_at: datetime | None
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True


class OAuthURL(BaseModel):
    """OAuth authorization URL response."""
    auth_url: str
    state: str


class TokenHealthRead(BaseModel):
    """Token freshness diagnostic."""
    provider: Provider
    workspace_id: str | None = None
    status: str  # missing, expired, expiring_soon, healthy
    minutes_until_expiry: int | None = None
    has_refresh_token: bool
    expires_at: datetime | None = None
    refresh_count: int = 0
    unrecoverable: bool = False
    connection_id: str | None = None
    recommendations: list[str] = []


class TokenRefreshRequest(BaseModel):
    """Force refresh request."""
    provider: Provider
    workspace_id: str | None = None


class TokenRefreshResponse(BaseModel):
    success: bool
    expires_at: datetime
