"""
Token health and refresh service.

The single entry point other components use to get a currently valid access
token. Refreshes for the same grant are serialized in-process with an
``asyncio.Lock``; across processes the token row's version counter detects a
lost update.
"""
import asyncio
import math
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.models.connection import Connection, TokenRecord
from statementdesk.services.errors import AuthExpired, AuthRevoked, ConnectionNotFound
from statementdesk.services.oauth import AdapterFactory, OAuthService
from statementdesk.services.integrations import get_adapter
from statementdesk.utils.dates import as_utc, utcnow

logger = structlog.get_logger(__name__)

HEALTH_MISSING = "missing"
HEALTH_EXPIRED = "expired"
HEALTH_EXPIRING_SOON = "expiring_soon"
HEALTH_HEALTHY = "healthy"

# Refresh count after which a reconnect is suggested
HEAVY_REFRESH_COUNT = 50

# Entries vanish once no caller holds or waits on the lock
_refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _refresh_lock(key: str) -> asyncio.Lock:
    lock = _refresh_locks.get(key)
    if lock is None:
        lock = _refresh_locks[key] = asyncio.Lock()
    return lock


@dataclass
class TokenHealth:
    status: str
    minutes_until_expiry: int | None = None
    has_refresh_token: bool = False
    expires_at: datetime | None = None
    refresh_count: int = 0
    unrecoverable: bool = False
    connection_id: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def recommendations_for(health: TokenHealth, provider: str) -> list[str]:
    """User-facing advice for a health status."""
    name = provider.capitalize() if provider != "quickbooks" else "QuickBooks"
    if health.status == HEALTH_MISSING:
        return [f"Connect your {name} account to enable syncing"]
    if health.unrecoverable:
        return [f"Reconnect your {name} account; access was revoked or can no longer be renewed"]
    if health.status == HEALTH_EXPIRED:
        if health.has_refresh_token:
            return ["Your token will be automatically refreshed on next use"]
        return [f"Reconnect your {name} account to continue syncing"]
    if health.status == HEALTH_EXPIRING_SOON:
        return [
            f"Token expires in {health.minutes_until_expiry} minutes. It will be automatically refreshed."
        ]
    if health.refresh_count > HEAVY_REFRESH_COUNT:
        return [f"Consider reconnecting your {name} account for optimal performance"]
    return []


class TokenService:
    """Hands out valid access tokens, refreshing them when needed."""

    def __init__(self, db: AsyncSession, adapter_factory: AdapterFactory = get_adapter):
        self.db = db
        self.adapter_factory = adapter_factory
        self.oauth = OAuthService(db, adapter_factory)
        self.store = self.oauth.store
        self.margin = timedelta(minutes=get_settings().token_refresh_margin_minutes)

    def _is_fresh(self, record: TokenRecord) -> bool:
        return as_utc(record.expires_at) > utcnow() + self.margin

    def _lock_key(self, connection: Connection) -> str:
        adapter = self.adapter_factory(connection.provider)
        if adapter.shares_grant_across_tenants:
            return f"{connection.user_id}:{connection.provider}"
        return connection.id

    async def _require_connection(self, user_id: str, provider: str, tenant_id: str | None) -> Connection:
        connection = await self.store.find_connection(user_id, provider, tenant_id)
        if connection is None:
            raise ConnectionNotFound(f"No active {provider} connection", provider=provider)
        return connection

    async def get_valid_access_token(
        self,
        user_id: str,
        provider: str,
        tenant_id: str | None = None,
        *,
        force: bool = False,
    ) -> str:
        """
        Return a usable access token for the user's connection.

        Raises:
            ConnectionNotFound: No active connection
            AuthExpired: Token cannot be renewed (AuthRevoked, NoRefreshToken)
            NetworkError: Provider unreachable during refresh
        """
        connection = await self._require_connection(user_id, provider, tenant_id)
        return await self.access_token_for(connection, force=force)

    async def access_token_for(self, connection: Connection, *, force: bool = False) -> str:
        record = connection.token
        if record is None:
            raise AuthExpired("No credentials stored for this connection", provider=connection.provider)
        if record.is_unrecoverable:
            raise AuthRevoked(record.last_error or "Connection must be re-authorized", provider=connection.provider)
        if not force and self._is_fresh(record):
            return self.store.read_tokens(record).access_token

        seen_version = record.version
        async with _refresh_lock(self._lock_key(connection)):
            record = await self.store.reload_token(connection.id)
            if record is None:
                raise AuthExpired("No credentials stored for this connection", provider=connection.provider)
            if record.is_unrecoverable:
                raise AuthRevoked(record.last_error or "Connection must be re-authorized", provider=connection.provider)

            # A concurrent caller refreshed while we waited
            if self._is_fresh(record) and (not force or record.version != seen_version):
                logger.debug("token_refresh_skipped", provider=connection.provider, connection_id=connection.id)
                return self.store.read_tokens(record).access_token

            record = await self.oauth.refresh(connection, record)
            return self.store.read_tokens(record).access_token

    async def force_refresh(self, user_id: str, provider: str, tenant_id: str | None = None) -> datetime:
        """Refresh regardless of expiry and return the new expiry."""
        connection = await self._require_connection(user_id, provider, tenant_id)
        await self.access_token_for(connection, force=True)
        record = await self.store.reload_token(connection.id)
        return as_utc(record.expires_at)

    async def check_token_health(
        self,
        user_id: str,
        provider: str,
        tenant_id: str | None = None,
    ) -> TokenHealth:
        """Classify token freshness. Never refreshes."""
        connection = await self.store.find_connection(user_id, provider, tenant_id)
        if connection is None or connection.token is None:
            return TokenHealth(status=HEALTH_MISSING)

        record = connection.token
        now = utcnow()
        expires_at = as_utc(record.expires_at)
        remaining = expires_at - now

        if remaining <= timedelta(0):
            status = HEALTH_EXPIRED
        elif remaining <= self.margin:
            status = HEALTH_EXPIRING_SOON
        else:
            status = HEALTH_HEALTHY

        return TokenHealth(
            status=status,
            minutes_until_expiry=max(0, math.floor(remaining.total_seconds() / 60)),
            has_refresh_token=record.has_refresh_token,
            expires_at=expires_at,
            refresh_count=record.refresh_count or 0,
            unrecoverable=record.is_unrecoverable,
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
        )
