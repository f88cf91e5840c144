"""
Persistence for connections, encrypted OAuth tokens and CSRF state.

Token values are encrypted on write and decrypted on read here and nowhere
else; callers receive plain values only through ``TokenPair``.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.models.connection import TOKEN_ACTIVE, TOKEN_UNRECOVERABLE, Connection, TokenRecord
from statementdesk.models.oauth_state import OAuthState
from statementdesk.services.errors import InvalidState
from statementdesk.services.integrations.base import DEFAULT_EXPIRES_IN, RemoteTenant, TokenResponse
from statementdesk.utils.dates import as_utc, utcnow
from statementdesk.utils.encryption import decrypt_token, encrypt_token

logger = structlog.get_logger(__name__)


@dataclass
class TokenPair:
    """Decrypted credentials for a single provider call."""
    access_token: str
    refresh_token: str | None
    expires_at: datetime


def _future_expiry(tokens: TokenResponse) -> datetime:
    now = utcnow()
    expires_at = as_utc(tokens.expires_at)
    if expires_at is None or expires_at <= now:
        return now + timedelta(seconds=DEFAULT_EXPIRES_IN)
    return expires_at


class TokenStore:
    """Data access for the OAuth lifecycle. Never commits; callers own the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def upsert_connection(
        self,
        user_id: str,
        provider: str,
        tenant: RemoteTenant,
        tokens: TokenResponse,
    ) -> Connection:
        """Create or overwrite the connection and token for (user, provider, tenant)."""
        result = await self.db.execute(
            select(Connection).where(
                Connection.user_id == user_id,
                Connection.provider == provider,
                Connection.tenant_id == tenant.tenant_id,
            )
        )
        connection = result.scalar_one_or_none()

        if connection is None:
            connection = Connection(
                user_id=user_id,
                provider=provider,
                tenant_id=tenant.tenant_id,
            )
            self.db.add(connection)

        connection.tenant_name = tenant.tenant_name
        connection.scopes = tokens.scopes or []
        connection.is_active = True

        record = connection.token
        if record is None:
            record = TokenRecord(refresh_count=0)
            connection.token = record

        record.access_token_encrypted = encrypt_token(tokens.access_token)
        record.refresh_token_encrypted = encrypt_token(tokens.refresh_token)
        record.expires_at = _future_expiry(tokens)
        record.status = TOKEN_ACTIVE
        record.last_error = None

        await self.db.flush()
        logger.info(
            "connection_upserted",
            provider=provider,
            connection_id=connection.id,
            has_refresh_token=tokens.refresh_token is not None,
        )
        return connection

    async def get_connection(self, connection_id: str, user_id: str | None = None) -> Connection | None:
        query = select(Connection).where(Connection.id == connection_id)
        if user_id is not None:
            query = query.where(Connection.user_id == user_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_connection(
        self,
        user_id: str,
        provider: str,
        tenant_id: str | None = None,
    ) -> Connection | None:
        """Active connection for the key; most recently updated when no tenant is given."""
        query = select(Connection).where(
            Connection.user_id == user_id,
            Connection.provider == provider,
            Connection.is_active == True,  # noqa: E712
        )
        if tenant_id is not None:
            query = query.where(Connection.tenant_id == tenant_id)
        query = query.order_by(Connection.updated_at.desc(), Connection.created_at.desc()).limit(1)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_connections(self, user_id: str, provider: str | None = None) -> list[Connection]:
        query = select(Connection).where(
            Connection.user_id == user_id,
            Connection.is_active == True,  # noqa: E712
        )
        if provider is not None:
            query = query.where(Connection.provider == provider)
        result = await self.db.execute(query.order_by(Connection.created_at))
        return list(result.scalars().all())

    async def deactivate(self, connection: Connection) -> None:
        connection.is_active = False
        await self.db.flush()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def reload_token(self, connection_id: str) -> TokenRecord | None:
        """Re-read the token row, overwriting whatever this session has cached."""
        result = await self.db.execute(
            select(TokenRecord)
            .where(TokenRecord.connection_id == connection_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def read_tokens(self, record: TokenRecord) -> TokenPair:
        return TokenPair(
            access_token=decrypt_token(record.access_token_encrypted),
            refresh_token=decrypt_token(record.refresh_token_encrypted),
            expires_at=as_utc(record.expires_at),
        )

    async def apply_refresh(
        self,
        connection: Connection,
        record: TokenRecord,
        tokens: TokenResponse,
        *,
        previous_refresh_token: str | None = None,
        propagate_to_siblings: bool = False,
    ) -> TokenRecord:
        """
        Store a refresh result.

        Replaces the access token and expiry, and the refresh token when the
        provider rotated it. With ``propagate_to_siblings`` a rotated refresh
        token is also written to the user's other tenants that were holding
        the old one, since they share a single grant.
        """
        now = utcnow()
        rotated = tokens.refresh_token is not None and tokens.refresh_token != previous_refresh_token

        record.access_token_encrypted = encrypt_token(tokens.access_token)
        record.expires_at = _future_expiry(tokens)
        if rotated:
            record.refresh_token_encrypted = encrypt_token(tokens.refresh_token)
        record.refresh_count = (record.refresh_count or 0) + 1
        record.last_refreshed_at = now
        record.status = TOKEN_ACTIVE
        record.last_error = None

        if rotated and propagate_to_siblings and previous_refresh_token:
            for sibling in await self.list_connections(connection.user_id, connection.provider):
                if sibling.id == connection.id or sibling.token is None:
                    continue
                if decrypt_token(sibling.token.refresh_token_encrypted) != previous_refresh_token:
                    continue
                sibling.token.access_token_encrypted = record.access_token_encrypted
                sibling.token.refresh_token_encrypted = record.refresh_token_encrypted
                sibling.token.expires_at = record.expires_at
                sibling.token.last_refreshed_at = now
                sibling.token.status = TOKEN_ACTIVE
                logger.info("refresh_token_propagated", provider=connection.provider, connection_id=sibling.id)

        await self.db.flush()
        return record

    async def mark_unrecoverable(self, record: TokenRecord, reason: str) -> None:
        record.status = TOKEN_UNRECOVERABLE
        record.last_error = reason
        await self.db.flush()

    # ------------------------------------------------------------------
    # OAuth state
    # ------------------------------------------------------------------

    async def create_state(self, user_id: str, provider: str) -> OAuthState:
        now = utcnow()
        oauth_state = OAuthState(
            state=secrets.token_urlsafe(32),
            user_id=user_id,
            provider=provider,
            created_at=now,
            expires_at=now + timedelta(minutes=get_settings().oauth_state_ttl_minutes),
        )
        self.db.add(oauth_state)
        await self.db.flush()
        return oauth_state

    async def consume_state(self, state: str, provider: str) -> OAuthState:
        """
        Delete the state row and return it.

        Raises:
            InvalidState: Unknown, expired or issued for a different provider
        """
        oauth_state = await self.db.get(OAuthState, state)
        if oauth_state is None:
            raise InvalidState("Unknown or already used OAuth state", provider=provider)

        await self.db.delete(oauth_state)
        await self.db.flush()

        if as_utc(oauth_state.expires_at) <= utcnow():
            raise InvalidState("OAuth state expired", provider=provider)
        if oauth_state.provider != provider:
            raise InvalidState("OAuth state was issued for another provider", provider=provider)
        return oauth_state

    async def purge_expired_states(self) -> int:
        result = await self.db.execute(
            delete(OAuthState).where(OAuthState.expires_at < utcnow())
        )
        return result.rowcount or 0
