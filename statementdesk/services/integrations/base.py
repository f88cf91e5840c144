"""
Base provider adapter interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from statementdesk.models.transaction import Transaction
from statementdesk.services.errors import (
    AuthExpired,
    AuthRevoked,
    NetworkError,
    RateLimited,
    RemoteRejected,
    ValidationError,
)

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenResponse:
    """OAuth token response."""
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any], fallback_refresh_token: str | None = None) -> "TokenResponse":
        """Build from a standard OAuth2 token endpoint body."""
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        scope = data.get("scope") or ""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=datetime.now(timezone.utc).replace(microsecond=0) + timedelta(seconds=expires_in),
            scopes=scope.split() if isinstance(scope, str) else list(scope),
        )


@dataclass
class RemoteTenant:
    """Provider-side account or organisation the user authorized."""
    tenant_id: str
    tenant_name: str | None = None


@dataclass
class RemoteAccount:
    """Chart-of-accounts entry."""
    id: str
    name: str
    type: str | None = None
    code: str | None = None


@dataclass
class RemoteEntity:
    """Vendor or customer."""
    id: str
    name: str
    type: str = "vendor"


@dataclass
class MappingContext:
    """Remote references resolved for one transaction."""
    account: RemoteAccount | None = None
    entity: RemoteEntity | None = None
    extras: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Abstract base class for all accounting providers."""

    provider: str = ""

    # Whether transactions need a category -> account mapping before sync
    requires_account_mapping: bool = True

    # Whether one grant (and its rotating refresh token) covers several tenants
    shares_grant_across_tenants: bool = False

    # Settings keys that must be present to start a sync job
    required_sync_settings: tuple[str, ...] = ()

    timeout: float = 30.0

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    async def get_auth_url(self, state: str) -> str:
        """
        Generate OAuth authorization URL.

        Args:
            state: Random state string for CSRF protection

        Returns:
            Authorization URL to redirect user to
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange authorization code for tokens.

        Args:
            code: Authorization code from OAuth callback

        Returns:
            TokenResponse with access and refresh tokens
        """
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh an expired access token.

        Raises:
            AuthRevoked: The provider rejected the refresh token
            NetworkError: The token endpoint could not be reached
        """
        pass

    @abstractmethod
    async def fetch_accounts(self, access_token: str, callback_params: dict[str, str]) -> list[RemoteTenant]:
        """
        Resolve the tenants a fresh grant gives access to.

        Args:
            access_token: Token from the code exchange
            callback_params: Extra query parameters from the OAuth callback
        """
        pass

    async def list_remote_accounts(self, access_token: str, tenant_id: str) -> list[RemoteAccount]:
        """Chart of accounts usable for transaction lines."""
        return []

    async def list_remote_entities(
        self,
        access_token: str,
        tenant_id: str,
    ) -> tuple[list[RemoteEntity], list[RemoteEntity]]:
        """Vendors and customers."""
        return [], []

    async def revoke(self, token: str) -> None:
        """Revoke a token at the provider, where supported."""
        return None

    def validate_sync_settings(self, settings: dict[str, Any]) -> None:
        missing = [key for key in self.required_sync_settings if not settings.get(key)]
        if missing:
            raise ValidationError(
                f"Missing sync settings for {self.provider}: {', '.join(missing)}",
                provider=self.provider,
            )

    @abstractmethod
    def build_payload(
        self,
        transaction: Transaction,
        context: MappingContext,
        settings: dict[str, Any],
    ) -> dict[str, Any]:
        """Convert a transaction into the provider's wire shape."""
        pass

    @abstractmethod
    async def push_transaction(
        self,
        access_token: str,
        tenant_id: str,
        payload: dict[str, Any],
        settings: dict[str, Any],
    ) -> str:
        """
        Create the transaction remotely.

        Returns:
            Remote identifier of the created record
        """
        pass

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _token_request(
        self,
        url: str,
        data: dict[str, str],
        *,
        auth: tuple[str, str] | None = None,
        grant: str = "refresh_token",
    ) -> dict[str, Any]:
        """POST to a token endpoint and classify failures."""
        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Token endpoint timed out: {e}", provider=self.provider) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Token endpoint unreachable: {e}", provider=self.provider) from e

        body = safe_json(response)
        if response.status_code == 200:
            if not isinstance(body, dict) or not body.get("access_token"):
                logger.warning("token_endpoint_malformed", provider=self.provider, grant=grant)
                raise RemoteRejected("Token endpoint returned no access token", provider=self.provider)
            return body

        error = body.get("error") if isinstance(body, dict) else None
        logger.warning(
            "token_endpoint_error",
            provider=self.provider,
            grant=grant,
            status_code=response.status_code,
            error=error,
        )

        if response.status_code == 429:
            raise RateLimited("Token endpoint throttled", provider=self.provider,
                              retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise NetworkError(f"Token endpoint returned {response.status_code}", provider=self.provider)
        if grant == "refresh_token" and response.status_code in (400, 401):
            raise AuthRevoked(
                f"{self.provider} rejected the refresh token ({error or response.status_code})",
                provider=self.provider,
            )
        raise RemoteRejected(
            f"Token exchange failed: {error or response.text}",
            provider=self.provider,
        )

    async def _api_request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Authenticated API call returning the decoded body."""
        request_headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=request_headers, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{self.provider} API timed out: {e}", provider=self.provider) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.provider} API unreachable: {e}", provider=self.provider) from e

        if response.is_success:
            return safe_json(response) or {}

        if response.status_code == 401:
            raise AuthExpired(f"{self.provider} rejected the access token", provider=self.provider)
        if response.status_code == 429:
            raise RateLimited(f"{self.provider} rate limit exceeded", provider=self.provider,
                              retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise NetworkError(f"{self.provider} API returned {response.status_code}", provider=self.provider)
        raise RemoteRejected(self.error_message(response), provider=self.provider)

    async def _revoke_request(self, url: str, **kwargs: Any) -> bool:
        """Best-effort token revocation; failures are logged, not raised."""
        try:
            async with self._client() as client:
                response = await client.post(url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("token_revoke_failed", provider=self.provider, error=str(e))
            return False
        if not response.is_success:
            logger.warning("token_revoke_failed", provider=self.provider, status_code=response.status_code)
        return response.is_success

    def error_message(self, response: httpx.Response) -> str:
        """Extract a human-readable message from an error response."""
        return response.text or f"HTTP {response.status_code}"


def safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
