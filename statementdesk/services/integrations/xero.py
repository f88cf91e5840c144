"""
Xero integration (BankTransactions).
"""
from typing import Any
from urllib.parse import urlencode

from statementdesk.config import get_settings
from statementdesk.models.transaction import Transaction
from statementdesk.services.errors import MappingError
from statementdesk.services.integrations.base import (
    MappingContext,
    ProviderAdapter,
    RemoteAccount,
    RemoteEntity,
    RemoteTenant,
    TokenResponse,
    safe_json,
)

settings = get_settings()

# Account types that can carry a bank transaction line
LINE_ACCOUNT_TYPES = {"EXPENSE", "REVENUE", "DIRECTCOSTS", "OVERHEADS", "SALES", "OTHERINCOME"}


class XeroIntegration(ProviderAdapter):
    """Xero accounting target; one grant can cover several organisations."""

    provider = "xero"
    shares_grant_across_tenants = True
    required_sync_settings = ("bank_account_id",)
    timeout = settings.xero_timeout_seconds

    AUTH_URL = "https://login.xero.com/identity/connect/authorize"
    TOKEN_URL = "https://identity.xero.com/connect/token"
    CONNECTIONS_URL = "https://api.xero.com/connections"
    API_BASE = "https://api.xero.com/api.xro/2.0"

    def _basic_auth(self) -> tuple[str, str]:
        return (settings.xero_client_id, settings.xero_client_secret)

    def _tenant_headers(self, tenant_id: str) -> dict[str, str]:
        return {"xero-tenant-id": tenant_id}

    async def get_auth_url(self, state: str) -> str:
        """Generate Xero OAuth authorization URL."""
        params = {
            "response_type": "code",
            "client_id": settings.xero_client_id,
            "redirect_uri": settings.xero_redirect_uri,
            "scope": settings.xero_scopes,
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        data = await self._token_request(
            self.TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.xero_redirect_uri,
            },
            auth=self._basic_auth(),
            grant="authorization_code",
        )
        return TokenResponse.from_payload(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """Xero rotates the refresh token on every use."""
        data = await self._token_request(
            self.TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            auth=self._basic_auth(),
        )
        return TokenResponse.from_payload(data, fallback_refresh_token=refresh_token)

    async def fetch_accounts(self, access_token: str, callback_params: dict[str, str]) -> list[RemoteTenant]:
        """Organisations the grant was authorized for."""
        connections = await self._api_request("GET", self.CONNECTIONS_URL, access_token)
        tenants = []
        for item in connections or []:
            if item.get("tenantType", "ORGANISATION") != "ORGANISATION":
                continue
            tenants.append(RemoteTenant(tenant_id=item["tenantId"], tenant_name=item.get("tenantName")))
        return tenants

    async def list_remote_accounts(self, access_token: str, tenant_id: str) -> list[RemoteAccount]:
        data = await self._api_request(
            "GET",
            f"{self.API_BASE}/Accounts",
            access_token,
            headers=self._tenant_headers(tenant_id),
        )
        return [
            RemoteAccount(
                id=account["AccountID"],
                name=account.get("Name", ""),
                type=account.get("Type"),
                code=account.get("Code"),
            )
            for account in data.get("Accounts", [])
            if account.get("Status", "ACTIVE") == "ACTIVE" and account.get("Type") in LINE_ACCOUNT_TYPES
        ]

    async def list_remote_entities(
        self,
        access_token: str,
        tenant_id: str,
    ) -> tuple[list[RemoteEntity], list[RemoteEntity]]:
        data = await self._api_request(
            "GET",
            f"{self.API_BASE}/Contacts",
            access_token,
            headers=self._tenant_headers(tenant_id),
            params={"where": 'ContactStatus=="ACTIVE"'},
        )
        vendors, customers = [], []
        for contact in data.get("Contacts", []):
            if contact.get("IsCustomer") and not contact.get("IsSupplier"):
                customers.append(RemoteEntity(id=contact["ContactID"], name=contact.get("Name", ""), type="customer"))
            else:
                vendors.append(RemoteEntity(id=contact["ContactID"], name=contact.get("Name", ""), type="vendor"))
        return vendors, customers

    def build_payload(
        self,
        transaction: Transaction,
        context: MappingContext,
        settings: dict[str, Any],
    ) -> dict[str, Any]:
        if context.account is None:
            raise MappingError(f"No Xero account for category: {transaction.category}", provider=self.provider)

        line_item: dict[str, Any] = {
            "Description": transaction.description or transaction.merchant or "Transaction",
            "Quantity": 1,
            "UnitAmount": float(abs(transaction.amount)),
            "TaxType": settings.get("tax_type", "NONE"),
        }
        if context.account.code:
            line_item["AccountCode"] = context.account.code
        else:
            line_item["AccountID"] = context.account.id

        if context.entity is not None:
            contact = {"ContactID": context.entity.id}
        else:
            contact = {"Name": transaction.merchant or "Unknown"}

        return {
            "Type": "SPEND" if transaction.amount < 0 else "RECEIVE",
            "Contact": contact,
            "Date": transaction.date.isoformat(),
            "BankAccount": {"AccountID": settings["bank_account_id"]},
            "LineItems": [line_item],
            "Reference": (settings.get("reference") or transaction.id)[:255],
            "Status": "AUTHORISED",
            "LineAmountTypes": "Inclusive",
        }

    async def push_transaction(
        self,
        access_token: str,
        tenant_id: str,
        payload: dict[str, Any],
        settings: dict[str, Any],
    ) -> str:
        data = await self._api_request(
            "PUT",
            f"{self.API_BASE}/BankTransactions",
            access_token,
            headers=self._tenant_headers(tenant_id),
            json={"BankTransactions": [payload]},
        )
        created = data.get("BankTransactions") or [{}]
        return created[0].get("BankTransactionID", "")

    def error_message(self, response) -> str:
        body = safe_json(response)
        if isinstance(body, dict):
            for element in body.get("Elements", []):
                messages = [e.get("Message") for e in element.get("ValidationErrors", []) if e.get("Message")]
                if messages:
                    return "; ".join(messages)
            if body.get("Message"):
                return body["Message"]
            if body.get("Detail"):
                return body["Detail"]
        return super().error_message(response)
