"""
Google integration (Drive + Sheets export).
"""
from typing import Any
from urllib.parse import quote, urlencode

from statementdesk.config import get_settings
from statementdesk.models.transaction import Transaction
from statementdesk.services.integrations.base import (
    MappingContext,
    ProviderAdapter,
    RemoteTenant,
    TokenResponse,
    safe_json,
)

settings = get_settings()


class GoogleIntegration(ProviderAdapter):
    """Google Sheets export target."""

    provider = "google"
    requires_account_mapping = False
    required_sync_settings = ("spreadsheet_id",)
    timeout = settings.google_timeout_seconds

    SCOPES = [
        "openid",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/spreadsheets",
    ]

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
    SHEETS_API = "https://sheets.googleapis.com/v4"

    DEFAULT_RANGE = "Transactions!A:F"

    async def get_auth_url(self, state: str) -> str:
        """Generate Google OAuth authorization URL."""
        params = {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange authorization code for tokens."""
        data = await self._token_request(
            self.TOKEN_URL,
            {
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.google_redirect_uri,
            },
            grant="authorization_code",
        )
        return TokenResponse.from_payload(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """Refresh Google access token."""
        data = await self._token_request(
            self.TOKEN_URL,
            {
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        # Google doesn't return new refresh token
        return TokenResponse.from_payload(data, fallback_refresh_token=refresh_token)

    async def fetch_accounts(self, access_token: str, callback_params: dict[str, str]) -> list[RemoteTenant]:
        """The Google account itself is the only tenant."""
        profile = await self._api_request("GET", self.USERINFO_URL, access_token)
        return [
            RemoteTenant(
                tenant_id=str(profile.get("id") or profile.get("email")),
                tenant_name=profile.get("email"),
            )
        ]

    async def revoke(self, token: str) -> None:
        await self._revoke_request(self.REVOKE_URL, params={"token": token})

    def build_payload(
        self,
        transaction: Transaction,
        context: MappingContext,
        settings: dict[str, Any],
    ) -> dict[str, Any]:
        row = [
            transaction.date.isoformat() if transaction.date else "",
            transaction.description or "",
            transaction.merchant or "",
            transaction.category or "",
            float(transaction.amount) if transaction.amount is not None else "",
            transaction.id,
        ]
        return {"values": [row]}

    async def push_transaction(
        self,
        access_token: str,
        tenant_id: str,
        payload: dict[str, Any],
        settings: dict[str, Any],
    ) -> str:
        spreadsheet_id = settings["spreadsheet_id"]
        sheet_range = quote(settings.get("sheet_range") or self.DEFAULT_RANGE, safe="!:")
        data = await self._api_request(
            "POST",
            f"{self.SHEETS_API}/spreadsheets/{spreadsheet_id}/values/{sheet_range}:append",
            access_token,
            params={
                "valueInputOption": "USER_ENTERED",
                "insertDataOption": "INSERT_ROWS",
            },
            json=payload,
        )
        return data.get("updates", {}).get("updatedRange", spreadsheet_id)

    def error_message(self, response) -> str:
        body = safe_json(response)
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        return super().error_message(response)
