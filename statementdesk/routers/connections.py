"""
Provider OAuth router: authorization, callback and connection management.
"""
from typing import Annotated
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.database import get_db
from statementdesk.models.connection import Connection
from statementdesk.models.user import User
from statementdesk.schemas.connection import ConnectionRead, OAuthURL, Provider
from statementdesk.services.auth import get_current_user
from statementdesk.services.errors import IntegrationError
from statementdesk.services.integrations import get_adapter_factory
from statementdesk.services.oauth import AdapterFactory, OAuthService

logger = structlog.get_logger(__name__)

settings = get_settings()

router = APIRouter(prefix="/auth", tags=["Connections"])


def _settings_redirect(params: dict[str, str]) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.frontend_url}/settings?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/{provider}", response_model=OAuthURL)
async def get_oauth_url(
    provider: Provider,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> OAuthURL:
    """Get OAuth authorization URL for a provider."""
    service = OAuthService(db, adapter_factory)
    auth_url, state = await service.build_authorization_url(current_user.id, provider.value)
    return OAuthURL(auth_url=auth_url, state=state)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: Provider,
    request: Request,
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> RedirectResponse:
    """Handle OAuth callback from provider and send the browser back to settings."""
    if error or not code or not state:
        logger.info("oauth_callback_rejected", provider=provider.value, error=error or "missing_code")
        return _settings_redirect({f"{provider.value}_error": error or "missing_code"})

    callback_params = {
        key: value
        for key, value in request.query_params.items()
        if key not in ("code", "state")
    }

    service = OAuthService(db, adapter_factory)
    try:
        await service.handle_callback(provider.value, code, state, callback_params)
    except IntegrationError as e:
        logger.warning("oauth_callback_failed", provider=provider.value, error_code=e.code, error=e.message)
        return _settings_redirect({f"{provider.value}_error": e.code})

    return _settings_redirect({f"{provider.value}_success": "connected"})


@router.get("/{provider}/connections", response_model=list[ConnectionRead])
async def list_connections(
    provider: Provider,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[Connection]:
    """List active connections for a provider."""
    return await OAuthService(db).list_connections(current_user.id, provider.value)


@router.delete("/{provider}/connections", response_model=ConnectionRead)
async def disconnect(
    provider: Provider,
    tenant_id: Annotated[str | None, Query()] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> Connection:
    """Deactivate a connection (soft delete)."""
    service = OAuthService(db, adapter_factory)
    return await service.disconnect(current_user.id, provider.value, tenant_id)
