"""
Mappings router: suggestions, validation and stored mappings.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.database import get_db
from statementdesk.models.connection import Connection
from statementdesk.models.mapping import CategoryMapping, MerchantMapping
from statementdesk.models.user import User
from statementdesk.schemas.mapping import (
    AutoSuggestRequest,
    AutoSuggestResponse,
    CategoryMappingRead,
    MappingStats,
    MappingType,
    MerchantMappingRead,
    RemoteDirectory,
    SaveCategoryMappings,
    SaveMerchantMappings,
    ValidateRequest,
    ValidateResponse,
)
from statementdesk.services.auth import get_current_user
from statementdesk.services.errors import ConnectionNotFound, StatementFileNotFound
from statementdesk.services.integrations import get_adapter_factory
from statementdesk.services.mapping import MappingService
from statementdesk.services.oauth import AdapterFactory
from statementdesk.services.token_service import TokenService
from statementdesk.services.token_store import TokenStore
from statementdesk.services.transactions import distinct_values, get_statement_file, list_file_transactions

router = APIRouter(prefix="/mappings", tags=["Mappings"])


async def _owned_connection(db: AsyncSession, connection_id: str, user: User) -> Connection:
    connection = await TokenStore(db).get_connection(connection_id, user.id)
    if connection is None or not connection.is_active:
        raise ConnectionNotFound("Connection not found")
    return connection


@router.post("/auto-suggest", response_model=AutoSuggestResponse)
async def auto_suggest(
    request: AutoSuggestRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> AutoSuggestResponse:
    """Suggest mappings for the user's categories or merchants. Nothing is saved."""
    connection = await _owned_connection(db, request.connection_id, current_user)
    adapter = adapter_factory(connection.provider)
    access_token = await TokenService(db, adapter_factory).access_token_for(connection)
    service = MappingService(db)

    if request.type == MappingType.CATEGORIES:
        categories = await distinct_values(db, current_user.id, "category", request.file_id)
        accounts = await adapter.list_remote_accounts(access_token, connection.tenant_id)
        suggestions = await service.generate_category_mappings(categories, accounts, connection.id)
    else:
        merchants = await distinct_values(db, current_user.id, "merchant", request.file_id)
        vendors, customers = await adapter.list_remote_entities(access_token, connection.tenant_id)
        suggestions = await service.generate_merchant_mappings(merchants, vendors, customers, connection.id)

    return AutoSuggestResponse(type=request.type, suggestions=[vars(s) for s in suggestions])


@router.get("/remote-accounts", response_model=RemoteDirectory)
async def list_remote_accounts(
    connection_id: Annotated[str, Query()],
    mapping_type: Annotated[MappingType, Query(alias="type")] = MappingType.CATEGORIES,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> RemoteDirectory:
    """
    Remote records a mapping can target: the chart of accounts for
    categories, vendors and customers for merchants.
    """
    connection = await _owned_connection(db, connection_id, current_user)
    adapter = adapter_factory(connection.provider)
    access_token = await TokenService(db, adapter_factory).access_token_for(connection)

    if mapping_type == MappingType.CATEGORIES:
        accounts = await adapter.list_remote_accounts(access_token, connection.tenant_id)
        return RemoteDirectory(type=mapping_type, accounts=[vars(a) for a in accounts])

    vendors, customers = await adapter.list_remote_entities(access_token, connection.tenant_id)
    return RemoteDirectory(
        type=mapping_type,
        vendors=[vars(v) for v in vendors],
        customers=[vars(c) for c in customers],
    )


@router.post("/validate", response_model=ValidateResponse)
async def validate_mappings(
    request: ValidateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> dict:
    """Check a file or an ad-hoc batch for unmapped categories. Read-only."""
    connection = await _owned_connection(db, request.connection_id, current_user)

    if request.file_id is not None:
        if await get_statement_file(db, request.file_id, current_user.id) is None:
            raise StatementFileNotFound("Statement file not found")
        transactions = await list_file_transactions(db, request.file_id)
    else:
        transactions = request.transactions

    result = await MappingService(db).validate_mappings(
        connection.id,
        transactions,
        requires_account_mapping=adapter_factory(connection.provider).requires_account_mapping,
    )
    return result.to_dict()


@router.get("/categories", response_model=list[CategoryMappingRead])
async def list_category_mappings(
    connection_id: Annotated[str, Query()],
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[CategoryMapping]:
    connection = await _owned_connection(db, connection_id, current_user)
    return await MappingService(db).list_category_mappings(connection.id)


@router.post("/categories", response_model=list[CategoryMappingRead])
async def save_category_mappings(
    request: SaveCategoryMappings,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[CategoryMapping]:
    """Accept category mappings (upsert per category)."""
    connection = await _owned_connection(db, request.connection_id, current_user)
    return await MappingService(db).save_category_mappings(
        connection.id,
        [m.model_dump() for m in request.mappings],
    )


@router.get("/merchants", response_model=list[MerchantMappingRead])
async def list_merchant_mappings(
    connection_id: Annotated[str, Query()],
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[MerchantMapping]:
    connection = await _owned_connection(db, connection_id, current_user)
    return await MappingService(db).list_merchant_mappings(connection.id)


@router.post("/merchants", response_model=list[MerchantMappingRead])
async def save_merchant_mappings(
    request: SaveMerchantMappings,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[MerchantMapping]:
    """Accept merchant mappings (upsert per merchant)."""
    connection = await _owned_connection(db, request.connection_id, current_user)
    return await MappingService(db).save_merchant_mappings(
        connection.id,
        [m.model_dump() for m in request.mappings],
    )


@router.get("/stats", response_model=MappingStats)
async def mapping_stats(
    connection_id: Annotated[str, Query()],
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    connection = await _owned_connection(db, connection_id, current_user)
    return await MappingService(db).get_mapping_stats(connection.id)


@router.delete("/{mapping_type}/{mapping_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mapping(
    mapping_type: MappingType,
    mapping_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Deactivate a stored mapping."""
    removed = await MappingService(db).deactivate_mapping(mapping_type.value, mapping_id, current_user.id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Mapping not found",
        )
