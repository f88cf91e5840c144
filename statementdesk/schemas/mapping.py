"""
Mapping Pydantic schemas.
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, model_validator


class MappingType(str, Enum):
    CATEGORIES = "categories"
    MERCHANTS = "merchants"


class AutoSuggestRequest(BaseModel):
    connection_id: str
    type: MappingType = MappingType.CATEGORIES
    file_id: str | None = None  # limit to the categories/merchants of one file


class CategorySuggestionRead(BaseModel):
    category: str
    remote_account_id: str | None
    remote_account_name: str | None = None
    remote_account_type: str | None = None
    remote_account_code: str | None = None
    confidence: int
    reasoning: str
    source: str


class MerchantSuggestionRead(BaseModel):
    merchant: str
    remote_entity_id: str | None
    remote_entity_name: str | None = None
    entity_type: str
    confidence: int
    reasoning: str
    source: str


class AutoSuggestResponse(BaseModel):
    type: MappingType
    suggestions: list[CategorySuggestionRead] | list[MerchantSuggestionRead]


class RemoteAccountRead(BaseModel):
    id: str
    name: str
    type: str | None = None
    code: str | None = None


class RemoteEntityRead(BaseModel):
    id: str
    name: str
    type: str


class RemoteDirectory(BaseModel):
    """Remote records a mapping can point at."""
    type: MappingType
    accounts: list[RemoteAccountRead] = []
    vendors: list[RemoteEntityRead] = []
    customers: list[RemoteEntityRead] = []


class TransactionInput(BaseModel):
    """Ad-hoc transaction for mapping validation."""
    category: str | None = None
    merchant: str | None = None


class ValidateRequest(BaseModel):
    connection_id: str
    file_id: str | None = None
    transactions: list[TransactionInput] | None = None

    @model_validator(mode="after")
    def check_source(self) -> "ValidateRequest":
        if self.file_id is None and self.transactions is None:
            raise ValueError("Provide file_id or transactions")
        return self


class ValidateResponse(BaseModel):
    valid: bool
    missing: list[dict]
    unmapped_categories: list[str]
    unmapped_merchants: list[str]
    low_confidence: list[dict]
    total: int
    mapped: int
    coverage: float


class CategoryMappingCreate(BaseModel):
    category: str = Field(..., min_length=1, max_length=255)
    remote_account_id: str
    remote_account_name: str | None = None
    remote_account_type: str | None = None
    remote_account_code: str | None = None
    confidence: int = Field(100, ge=0, le=100)
    source: str = "manual"


class MerchantMappingCreate(BaseModel):
    merchant: str = Field(..., min_length=1, max_length=255)
    entity_type: str = "vendor"
    remote_entity_id: str
    remote_entity_name: str | None = None
    confidence: int = Field(100, ge=0, le=100)
    source: str = "manual"


class SaveCategoryMappings(BaseModel):
    connection_id: str
    mappings: list[CategoryMappingCreate]


class SaveMerchantMappings(BaseModel):
    connection_id: str
    mappings: list[MerchantMappingCreate]


class CategoryMappingRead(BaseModel):
    id: str
    connection_id: str
    category: str
    remote_account_id: str
    remote_account_name: str | None
    remote_account_type: str | None
    remote_account_code: str | None
    confidence: int
    source: str
    is_active: bool
    updated_at: datetime
    
    class Config:
        from_attributes = True


class MerchantMappingRead(BaseModel):
    id: str
    connection_id: str
    merchant: str
    entity_type: str
    remote_entity_id: str
    remote_entity_name: str | None
    confidence: int
    source: str
    is_active: bool
    updated_at: datetime
    
    class Config:
        from_attributes = True


class MappingStats(BaseModel):
    total_category_mappings: int
    suggested_category_mappings: int
    manual_category_mappings: int
    validated_category_mappings: int
    average_category_confidence: float
    total_merchant_mappings: int
    vendor_mappings: int
    customer_mappings: int
