"""
SQLAlchemy models package.
"""
from statementdesk.models.user import User
from statementdesk.models.connection import Connection, TokenRecord
from statementdesk.models.oauth_state import OAuthState
from statementdesk.models.transaction import StatementFile, Transaction
from statementdesk.models.sync_job import SyncJob, SyncJobItem
from statementdesk.models.mapping import CategoryMapping, MerchantMapping

__all__ = [
    "User",
    "Connection",
    "TokenRecord",
    "OAuthState",
    "StatementFile",
    "Transaction",
    "SyncJob",
    "SyncJobItem",
    "CategoryMapping",
    "MerchantMapping",
]
