"""
OAuth connection lifecycle: authorization, callback, refresh, disconnect.
"""
from collections.abc import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from statementdesk.models.connection import Connection, TokenRecord
from statementdesk.services.errors import (
    AuthExpired,
    AuthRevoked,
    ConnectionNotFound,
    NoRefreshToken,
    RemoteRejected,
)
from statementdesk.services.integrations import ProviderAdapter, get_adapter
from statementdesk.services.token_store import TokenStore
from statementdesk.utils.dates import as_utc, utcnow

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[str], ProviderAdapter]


class OAuthService:
    """Drives one provider's OAuth dialect through the shared adapter interface."""

    def __init__(self, db: AsyncSession, adapter_factory: AdapterFactory = get_adapter):
        self.db = db
        self.store = TokenStore(db)
        self.adapter_factory = adapter_factory

    async def build_authorization_url(self, user_id: str, provider: str) -> tuple[str, str]:
        """Persist a fresh CSRF state and return the provider consent URL with it."""
        adapter = self.adapter_factory(provider)

        purged = await self.store.purge_expired_states()
        if purged:
            logger.debug("oauth_states_purged", count=purged)

        oauth_state = await self.store.create_state(user_id, provider)
        await self.db.commit()

        url = await adapter.get_auth_url(oauth_state.state)
        logger.info("oauth_flow_started", provider=provider, user_id=user_id)
        return url, oauth_state.state

    async def handle_callback(
        self,
        provider: str,
        code: str,
        state: str,
        callback_params: dict[str, str] | None = None,
    ) -> Connection:
        """
        Complete an authorization flow.

        The state row is deleted and committed before the code exchange, so a
        replayed callback fails even when a later step errors out.

        Raises:
            InvalidState: Unknown, expired or mismatched state
            RemoteRejected: Exchange succeeded but no tenant was authorized
        """
        adapter = self.adapter_factory(provider)

        try:
            oauth_state = await self.store.consume_state(state, provider)
        finally:
            await self.db.commit()

        tokens = await adapter.exchange_code(code)
        tenants = await adapter.fetch_accounts(tokens.access_token, callback_params or {})
        if not tenants:
            raise RemoteRejected(f"No {provider} organisations were authorized", provider=provider)

        connections = [
            await self.store.upsert_connection(oauth_state.user_id, provider, tenant, tokens)
            for tenant in tenants
        ]
        await self.db.commit()

        logger.info(
            "oauth_connected",
            provider=provider,
            user_id=oauth_state.user_id,
            tenants=len(connections),
        )
        return connections[0]

    async def refresh(self, connection: Connection, record: TokenRecord | None = None) -> TokenRecord:
        """
        Exchange the stored refresh token for a new access token.

        Raises:
            NoRefreshToken: Nothing to refresh with; the user must reconnect
            AuthRevoked: The provider rejected the grant; token is now unrecoverable
            NetworkError: Provider unreachable; stored token left untouched
        """
        adapter = self.adapter_factory(connection.provider)
        record = record or connection.token
        if record is None:
            raise AuthExpired("No credentials stored for this connection", provider=connection.provider)
        if record.is_unrecoverable:
            raise AuthRevoked(record.last_error or "Connection must be re-authorized", provider=connection.provider)

        pair = self.store.read_tokens(record)
        if pair.refresh_token is None:
            if as_utc(record.expires_at) <= utcnow():
                await self.store.mark_unrecoverable(record, NoRefreshToken.code)
                await self.db.commit()
            raise NoRefreshToken(
                f"{connection.provider} did not grant offline access; reconnect the account",
                provider=connection.provider,
            )

        try:
            tokens = await adapter.refresh_token(pair.refresh_token)
        except AuthRevoked as e:
            await self.store.mark_unrecoverable(record, e.message)
            await self.db.commit()
            logger.warning(
                "token_refresh_revoked",
                provider=connection.provider,
                connection_id=connection.id,
            )
            raise

        try:
            await self.store.apply_refresh(
                connection,
                record,
                tokens,
                previous_refresh_token=pair.refresh_token,
                propagate_to_siblings=adapter.shares_grant_across_tenants,
            )
            await self.db.commit()
        except StaleDataError:
            # Another process stored its refresh first; keep the winner's record
            await self.db.rollback()
            logger.warning("token_refresh_lost_race", provider=connection.provider, connection_id=connection.id)
            winner = await self.store.reload_token(connection.id)
            if winner is None:
                raise ConnectionNotFound("Connection was removed during refresh", provider=connection.provider)
            return winner

        logger.info(
            "token_refreshed",
            provider=connection.provider,
            connection_id=connection.id,
            refresh_count=record.refresh_count,
        )
        return record

    async def list_connections(self, user_id: str, provider: str) -> list[Connection]:
        return await self.store.list_connections(user_id, provider)

    async def disconnect(self, user_id: str, provider: str, tenant_id: str | None = None) -> Connection:
        """Soft-delete a connection, revoking its grant at the provider where supported."""
        connection = await self.store.find_connection(user_id, provider, tenant_id)
        if connection is None:
            raise ConnectionNotFound(f"No active {provider} connection", provider=provider)

        adapter = self.adapter_factory(provider)
        revoke = connection.token is not None and not connection.token.is_unrecoverable
        if revoke and adapter.shares_grant_across_tenants:
            # The grant stays alive while it still serves another tenant
            siblings = await self.store.list_connections(user_id, provider)
            revoke = all(sibling.id == connection.id for sibling in siblings)
        if revoke:
            pair = self.store.read_tokens(connection.token)
            await adapter.revoke(pair.refresh_token or pair.access_token)

        await self.store.deactivate(connection)
        await self.db.commit()
        logger.info("connection_disconnected", provider=provider, connection_id=connection.id)
        return connection
