"""
Provider adapters package.
"""
from statementdesk.services.integrations.base import ProviderAdapter
from statementdesk.services.integrations.google import GoogleIntegration
from statementdesk.services.integrations.xero import XeroIntegration
from statementdesk.services.integrations.quickbooks import QuickBooksIntegration

# Map providers to their adapter classes
PROVIDERS: dict[str, type[ProviderAdapter]] = {
    "google": GoogleIntegration,
    "xero": XeroIntegration,
    "quickbooks": QuickBooksIntegration,
}


def get_adapter(provider: str) -> ProviderAdapter:
    """Get adapter instance by provider name."""
    try:
        return PROVIDERS[provider]()
    except KeyError:
        raise ValueError(f"Unknown provider: {provider}") from None


def get_adapter_factory():
    """Dependency returning the adapter factory; overridden in tests."""
    return get_adapter


__all__ = [
    "PROVIDERS",
    "ProviderAdapter",
    "GoogleIntegration",
    "XeroIntegration",
    "QuickBooksIntegration",
    "get_adapter",
    "get_adapter_factory",
]
