"""
Pydantic schemas package.
"""
from statementdesk.schemas.user import (
    UserCreate,
    UserRead,
    UserProfile,
    Token,
    LoginRequest,
    RefreshRequest,
)
from statementdesk.schemas.connection import (
    ConnectionRead,
    OAuthURL,
    Provider,
    TokenHealthRead,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from statementdesk.schemas.sync import (
    BulkImportRequest,
    BulkImportResponse,
    SyncJobRead,
    SyncJobSummary,
)
from statementdesk.schemas.mapping import (
    AutoSuggestRequest,
    AutoSuggestResponse,
    CategoryMappingRead,
    MerchantMappingRead,
    MappingStats,
    RemoteDirectory,
    ValidateRequest,
    ValidateResponse,
)

__all__ = [
    "UserCreate",
    "UserRead",
    "UserProfile",
    "Token",
    "LoginRequest",
    "RefreshRequest",
    "ConnectionRead",
    "OAuthURL",
    "Provider",
    "TokenHealthRead",
    "TokenRefreshRequest",
    "TokenRefreshResponse",
    "BulkImportRequest",
    "BulkImportResponse",
    "SyncJobRead",
    "SyncJobSummary",
    "AutoSuggestRequest",
    "AutoSuggestResponse",
    "CategoryMappingRead",
    "MerchantMappingRead",
    "MappingStats",
    "RemoteDirectory",
    "ValidateRequest",
    "ValidateResponse",
]
