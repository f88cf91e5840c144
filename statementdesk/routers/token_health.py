"""
Token health router.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.database import get_db
from statementdesk.models.user import User
from statementdesk.schemas.connection import (
    Provider,
    TokenHealthRead,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from statementdesk.services.auth import get_current_user
from statementdesk.services.integrations import get_adapter_factory
from statementdesk.services.oauth import AdapterFactory
from statementdesk.services.token_service import TokenService, recommendations_for

router = APIRouter(prefix="/auth", tags=["Token Health"])


@router.get("/token-health", response_model=TokenHealthRead)
async def get_token_health(
    provider: Annotated[Provider, Query()] = Provider.GOOGLE,
    workspace_id: Annotated[str | None, Query()] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> TokenHealthRead:
    """Report token freshness without refreshing it."""
    service = TokenService(db, adapter_factory)
    health = await service.check_token_health(current_user.id, provider.value, workspace_id)
    return TokenHealthRead(
        provider=provider,
        workspace_id=workspace_id,
        recommendations=recommendations_for(health, provider.value),
        **health.to_dict(),
    )


@router.post("/token-health", response_model=TokenRefreshResponse)
async def force_token_refresh(
    request: TokenRefreshRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> TokenRefreshResponse:
    """Refresh the access token now."""
    service = TokenService(db, adapter_factory)
    expires_at = await service.force_refresh(current_user.id, request.provider.value, request.workspace_id)
    return TokenRefreshResponse(success=True, expires_at=expires_at)
