"""
QuickBooks Online integration (Purchases and Deposits).
"""
from typing import Any
from urllib.parse import urlencode

from statementdesk.config import get_settings
from statementdesk.models.transaction import Transaction
from statementdesk.services.errors import MappingError, ValidationError
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

MINOR_VERSION = "65"

# Bank and credit card accounts hold the statement itself, not its lines
EXCLUDED_ACCOUNT_TYPES = {"Bank", "Credit Card"}


class QuickBooksIntegration(ProviderAdapter):
    """QuickBooks Online accounting target; one realm per grant."""

    provider = "quickbooks"
    required_sync_settings = ("bank_account_id",)
    timeout = settings.quickbooks_timeout_seconds

    SCOPES = ["com.intuit.quickbooks.accounting", "openid", "profile", "email"]

    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
    SANDBOX_API = "https://sandbox-quickbooks.api.intuit.com/v3/company"
    PRODUCTION_API = "https://quickbooks.api.intuit.com/v3/company"

    @property
    def api_base(self) -> str:
        if settings.quickbooks_environment == "production":
            return self.PRODUCTION_API
        return self.SANDBOX_API

    def _basic_auth(self) -> tuple[str, str]:
        return (settings.quickbooks_client_id, settings.quickbooks_client_secret)

    async def get_auth_url(self, state: str) -> str:
        """Generate Intuit OAuth authorization URL."""
        params = {
            "client_id": settings.quickbooks_client_id,
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "redirect_uri": settings.quickbooks_redirect_uri,
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        data = await self._token_request(
            self.TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.quickbooks_redirect_uri,
            },
            auth=self._basic_auth(),
            grant="authorization_code",
        )
        return TokenResponse.from_payload(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
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
        """The company (realm) is chosen on Intuit's consent screen and returned as realmId."""
        realm_id = callback_params.get("realmId")
        if not realm_id:
            raise ValidationError("QuickBooks callback is missing realmId", provider=self.provider)

        data = await self._api_request(
            "GET",
            f"{self.api_base}/{realm_id}/companyinfo/{realm_id}",
            access_token,
            params={"minorversion": MINOR_VERSION},
        )
        company = data.get("CompanyInfo", {})
        return [RemoteTenant(tenant_id=realm_id, tenant_name=company.get("CompanyName"))]

    async def revoke(self, token: str) -> None:
        await self._revoke_request(
            self.REVOKE_URL,
            json={"token": token},
            auth=self._basic_auth(),
            headers={"Accept": "application/json"},
        )

    async def _query(self, access_token: str, realm_id: str, entity: str) -> list[dict[str, Any]]:
        data = await self._api_request(
            "GET",
            f"{self.api_base}/{realm_id}/query",
            access_token,
            params={
                "query": f"select * from {entity} where Active = true MAXRESULTS 1000",
                "minorversion": MINOR_VERSION,
            },
        )
        return data.get("QueryResponse", {}).get(entity, [])

    async def list_remote_accounts(self, access_token: str, tenant_id: str) -> list[RemoteAccount]:
        accounts = await self._query(access_token, tenant_id, "Account")
        return [
            RemoteAccount(
                id=account["Id"],
                name=account.get("Name", ""),
                type=account.get("AccountType"),
                code=account.get("AcctNum"),
            )
            for account in accounts
            if account.get("AccountType") not in EXCLUDED_ACCOUNT_TYPES
        ]

    async def list_remote_entities(
        self,
        access_token: str,
        tenant_id: str,
    ) -> tuple[list[RemoteEntity], list[RemoteEntity]]:
        vendors = await self._query(access_token, tenant_id, "Vendor")
        customers = await self._query(access_token, tenant_id, "Customer")
        return (
            [RemoteEntity(id=v["Id"], name=v.get("DisplayName", ""), type="vendor") for v in vendors],
            [RemoteEntity(id=c["Id"], name=c.get("DisplayName", ""), type="customer") for c in customers],
        )

    def build_payload(
        self,
        transaction: Transaction,
        context: MappingContext,
        settings: dict[str, Any],
    ) -> dict[str, Any]:
        """Money out becomes a Purchase, money in a Deposit."""
        if context.account is None:
            raise MappingError(
                f"No QuickBooks account mapping for category: {transaction.category}",
                provider=self.provider,
            )

        account_ref = {"value": context.account.id, "name": context.account.name}
        amount = float(abs(transaction.amount))
        description = transaction.description or transaction.merchant or "Statement import"
        note = _private_note(transaction)

        if transaction.amount < 0:
            detail: dict[str, Any] = {"AccountRef": account_ref}
            if settings.get("class_id"):
                detail["ClassRef"] = {"value": settings["class_id"]}
            purchase: dict[str, Any] = {
                "PaymentType": settings.get("payment_type", "Cash"),
                "AccountRef": {"value": settings["bank_account_id"]},
                "TxnDate": transaction.date.isoformat(),
                "PrivateNote": note,
                "Line": [
                    {
                        "Amount": amount,
                        "DetailType": "AccountBasedExpenseLineDetail",
                        "AccountBasedExpenseLineDetail": detail,
                        "Description": description,
                    }
                ],
            }
            if context.entity is not None and context.entity.type == "vendor":
                purchase["EntityRef"] = {"value": context.entity.id, "name": context.entity.name, "type": "Vendor"}
            return {"type": "purchase", "data": purchase}

        detail = {"AccountRef": account_ref}
        if settings.get("class_id"):
            detail["ClassRef"] = {"value": settings["class_id"]}
        if context.entity is not None and context.entity.type == "customer":
            detail["Entity"] = {
                "EntityRef": {"value": context.entity.id, "name": context.entity.name, "type": "Customer"},
            }
        deposit = {
            "TxnDate": transaction.date.isoformat(),
            "DepositToAccountRef": {"value": settings["bank_account_id"]},
            "PrivateNote": note,
            "Line": [
                {
                    "Amount": amount,
                    "DetailType": "DepositLineDetail",
                    "DepositLineDetail": detail,
                    "Description": description,
                }
            ],
        }
        return {"type": "deposit", "data": deposit}

    async def push_transaction(
        self,
        access_token: str,
        tenant_id: str,
        payload: dict[str, Any],
        settings: dict[str, Any],
    ) -> str:
        entity = "Purchase" if payload["type"] == "purchase" else "Deposit"
        data = await self._api_request(
            "POST",
            f"{self.api_base}/{tenant_id}/{entity.lower()}",
            access_token,
            params={"minorversion": MINOR_VERSION},
            headers={"Content-Type": "application/json"},
            json=payload["data"],
        )
        return str(data.get(entity, {}).get("Id", ""))

    def error_message(self, response) -> str:
        body = safe_json(response)
        fault = body.get("Fault") if isinstance(body, dict) else None
        if isinstance(fault, dict):
            errors = fault.get("Error") or []
            if errors:
                return errors[0].get("Detail") or errors[0].get("Message") or super().error_message(response)
        return super().error_message(response)


def _private_note(transaction: Transaction) -> str:
    parts = ["Imported from Statement Desk", f"Transaction ID: {transaction.id}"]
    if transaction.confidence:
        parts.append(f"Confidence: {transaction.confidence}%")
    if transaction.merchant and transaction.merchant != transaction.description:
        parts.append(f"Original: {transaction.description}")
    return " | ".join(parts)
