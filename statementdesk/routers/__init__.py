"""
API routers package.
"""
from statementdesk.routers.auth import router as auth_router
from statementdesk.routers.token_health import router as token_health_router
from statementdesk.routers.connections import router as connections_router
from statementdesk.routers.sync import router as sync_router
from statementdesk.routers.mappings import router as mappings_router

__all__ = [
    "auth_router",
    "token_health_router",
    "connections_router",
    "sync_router",
    "mappings_router",
]
