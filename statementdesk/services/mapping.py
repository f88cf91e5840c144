"""
Category and merchant mapping service.

Suggestions come from Claude when an API key is configured and from name
similarity otherwise; nothing is persisted until a caller saves it.
"""
import difflib
import json
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

import anthropic
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.models.connection import Connection
from statementdesk.models.mapping import (
    SOURCE_MANUAL,
    SOURCE_SUGGESTED,
    SOURCE_VALIDATED,
    CategoryMapping,
    MerchantMapping,
)
from statementdesk.services.integrations.base import RemoteAccount, RemoteEntity

logger = structlog.get_logger(__name__)

settings = get_settings()

CATEGORY_PROMPT = """You are an expert accountant helping map bank statement transaction categories to a chart of accounts.

TRANSACTION CATEGORIES:
{categories}

AVAILABLE ACCOUNTS:
{accounts}

Map each category to the most appropriate account. Expense categories belong on expense accounts and income categories on income or revenue accounts. Prefer the most specific account. Give each mapping a confidence from 0 to 100.

Respond with ONLY a JSON array:
[
  {{"category": "Category Name", "account_id": "123", "confidence": 90, "reasoning": "Short explanation"}}
]"""

MERCHANT_PROMPT = """You are matching merchant names from bank statements to existing vendors and customers.

MERCHANTS:
{merchants}

VENDORS:
{vendors}

CUSTOMERS:
{customers}

Most merchants are vendors (the business pays them). Use fuzzy matching, so "WALMART #1234" matches "Walmart". Only use ids from the lists above. Give each match a confidence from 0 to 100.

Respond with ONLY a JSON array:
[
  {{"merchant": "Merchant Name", "entity_id": "123", "entity_type": "vendor", "confidence": 85, "reasoning": "Short explanation"}}
]"""

MAX_PROMPT_ENTITIES = 100

# Similarity alone never claims a certain match
MAX_SIMILARITY_CONFIDENCE = 95

INCOME_HINTS = {"income", "sales", "revenue", "refund", "interest", "deposit", "salary", "payroll"}
INCOME_ACCOUNT_TYPES = {"income", "other income", "revenue", "sales", "otherincome"}


def normalize_key(value: str | None) -> str:
    """Lookup key for categories and merchants."""
    return " ".join((value or "").split()).casefold()


def _clean_name(value: str) -> str:
    # Drop store numbers and card suffixes ("WALMART #1234", "AMZN*MKTP 09")
    value = re.sub(r"[#*]\s*\w*\d\w*", " ", value)
    value = re.sub(r"\b\d{3,}\b", " ", value)
    return normalize_key(re.sub(r"[^\w\s&]", " ", value))


def _similarity(left: str, right: str) -> float:
    a, b = _clean_name(left), _clean_name(right)
    if not a or not b:
        return 0.0
    ratio = difflib.SequenceMatcher(None, a, b).ratio()
    words_a, words_b = set(a.split()), set(b.split())
    overlap = len(words_a & words_b) / len(words_a | words_b)
    contained = 0.9 if (a in b or b in a) else 0.0
    return max(ratio, overlap, contained)


def _clamp_confidence(value: Any) -> int:
    try:
        return max(0, min(100, int(value)))
    except (TypeError, ValueError):
        return 0


def _parse_json_array(text: str) -> list[dict]:
    start = text.find("[")
    end = text.rfind("]") + 1
    if start == -1 or end == 0:
        raise ValueError("No JSON array in model response")
    parsed = json.loads(text[start:end])
    if not isinstance(parsed, list):
        raise ValueError("Model response is not a list")
    return [item for item in parsed if isinstance(item, dict)]


def _saved_source(row, previous_remote_id: str | None, data: dict, remote_id: str) -> str:
    """A manual save that confirms a stored suggestion unchanged marks it validated."""
    source = data.get("source") or SOURCE_MANUAL
    if (
        source == SOURCE_MANUAL
        and row is not None
        and row.source in (SOURCE_SUGGESTED, SOURCE_VALIDATED)
        and previous_remote_id == remote_id
    ):
        return SOURCE_VALIDATED
    return source


def _unique(values: Iterable[str | None]) -> list[str]:
    seen: dict[str, str] = {}
    for value in values:
        key = normalize_key(value)
        if key and key not in seen:
            seen[key] = value.strip()
    return list(seen.values())


@dataclass
class CategorySuggestion:
    category: str
    remote_account_id: str | None
    remote_account_name: str | None = None
    remote_account_type: str | None = None
    remote_account_code: str | None = None
    confidence: int = 0
    reasoning: str = ""
    source: str = SOURCE_SUGGESTED


@dataclass
class MerchantSuggestion:
    merchant: str
    remote_entity_id: str | None
    remote_entity_name: str | None = None
    entity_type: str = "vendor"
    confidence: int = 0
    reasoning: str = ""
    source: str = SOURCE_SUGGESTED


@dataclass
class MappingValidation:
    """Outcome of checking a batch of transactions against stored mappings."""
    valid: bool
    missing: list[dict] = field(default_factory=list)
    unmapped_categories: list[str] = field(default_factory=list)
    unmapped_merchants: list[str] = field(default_factory=list)
    low_confidence: list[dict] = field(default_factory=list)
    total: int = 0
    mapped: int = 0
    coverage: float = 100.0

    def to_dict(self) -> dict:
        return asdict(self)


class MappingService:
    """Suggest, store and check category/merchant mappings for a connection."""

    def __init__(self, db: AsyncSession, client: anthropic.AsyncAnthropic | None = None):
        self.db = db
        if client is None and settings.anthropic_api_key:
            client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.client = client

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def _ask_claude(self, prompt: str) -> list[dict]:
        message = await self.client.messages.create(
            model=settings.claude_model,
            max_tokens=4000,
            messages=[{"role": "user", "content": prompt}],
        )
        return _parse_json_array(message.content[0].text)

    async def generate_category_mappings(
        self,
        categories: list[str],
        remote_accounts: list[RemoteAccount],
        connection_id: str,
    ) -> list[CategorySuggestion]:
        """Propose one account per category. Never persists."""
        categories = _unique(categories)
        accounts_by_id = {account.id: account for account in remote_accounts}
        suggestions: dict[str, CategorySuggestion] = {}

        if self.client is not None and categories and remote_accounts:
            prompt = CATEGORY_PROMPT.format(
                categories="\n".join(f"{i}. {c}" for i, c in enumerate(categories, 1)),
                accounts="\n".join(
                    f"- {a.name} (Type: {a.type or 'unknown'}, ID: {a.id})" for a in remote_accounts
                ),
            )
            try:
                for item in await self._ask_claude(prompt):
                    key = normalize_key(item.get("category"))
                    account = accounts_by_id.get(str(item.get("account_id")))
                    if account is None or key not in {normalize_key(c) for c in categories}:
                        continue
                    suggestions[key] = CategorySuggestion(
                        category=next(c for c in categories if normalize_key(c) == key),
                        remote_account_id=account.id,
                        remote_account_name=account.name,
                        remote_account_type=account.type,
                        remote_account_code=account.code,
                        confidence=_clamp_confidence(item.get("confidence")),
                        reasoning=str(item.get("reasoning") or ""),
                    )
            except (anthropic.APIError, ValueError) as e:
                logger.warning("ai_category_mapping_failed", connection_id=connection_id, error=str(e))

        result = []
        for category in categories:
            suggestion = suggestions.get(normalize_key(category))
            if suggestion is None:
                suggestion = self._match_account(category, remote_accounts)
            result.append(suggestion)

        logger.info(
            "category_mappings_suggested",
            connection_id=connection_id,
            categories=len(categories),
            from_model=len(suggestions),
        )
        return result

    def _match_account(self, category: str, accounts: list[RemoteAccount]) -> CategorySuggestion:
        if not accounts:
            return CategorySuggestion(category=category, remote_account_id=None, reasoning="No remote accounts available")

        income = bool(set(_clean_name(category).split()) & INCOME_HINTS)
        best, best_score = None, -1.0
        for account in accounts:
            score = _similarity(category, account.name)
            is_income_account = normalize_key(account.type) in INCOME_ACCOUNT_TYPES
            if account.type and income == is_income_account:
                score += 0.1
            if score > best_score:
                best, best_score = account, score

        return CategorySuggestion(
            category=category,
            remote_account_id=best.id,
            remote_account_name=best.name,
            remote_account_type=best.type,
            remote_account_code=best.code,
            confidence=min(MAX_SIMILARITY_CONFIDENCE, round(best_score * 100)),
            reasoning=f"Closest account name to '{category}'",
        )

    async def generate_merchant_mappings(
        self,
        merchants: list[str],
        vendors: list[RemoteEntity],
        customers: list[RemoteEntity],
        connection_id: str,
    ) -> list[MerchantSuggestion]:
        """Propose a vendor or customer per merchant. Never persists."""
        merchants = _unique(merchants)
        entities = {entity.id: entity for entity in [*vendors, *customers]}
        suggestions: dict[str, MerchantSuggestion] = {}

        if self.client is not None and merchants and entities:
            prompt = MERCHANT_PROMPT.format(
                merchants="\n".join(f"{i}. {m}" for i, m in enumerate(merchants, 1)),
                vendors="\n".join(f"- {v.name} (ID: {v.id})" for v in vendors[:MAX_PROMPT_ENTITIES]) or "None",
                customers="\n".join(f"- {c.name} (ID: {c.id})" for c in customers[:MAX_PROMPT_ENTITIES]) or "None",
            )
            try:
                for item in await self._ask_claude(prompt):
                    key = normalize_key(item.get("merchant"))
                    entity = entities.get(str(item.get("entity_id")))
                    if entity is None or key not in {normalize_key(m) for m in merchants}:
                        continue
                    suggestions[key] = MerchantSuggestion(
                        merchant=next(m for m in merchants if normalize_key(m) == key),
                        remote_entity_id=entity.id,
                        remote_entity_name=entity.name,
                        entity_type=entity.type,
                        confidence=_clamp_confidence(item.get("confidence")),
                        reasoning=str(item.get("reasoning") or ""),
                    )
            except (anthropic.APIError, ValueError) as e:
                logger.warning("ai_merchant_mapping_failed", connection_id=connection_id, error=str(e))

        result = []
        for merchant in merchants:
            suggestion = suggestions.get(normalize_key(merchant))
            if suggestion is None:
                suggestion = self._match_entity(merchant, list(entities.values()))
            result.append(suggestion)
        return result

    def _match_entity(self, merchant: str, entities: list[RemoteEntity]) -> MerchantSuggestion:
        scored = [(entity, _similarity(merchant, entity.name)) for entity in entities]
        scored = [pair for pair in scored if pair[1] >= 0.5]
        if not scored:
            return MerchantSuggestion(
                merchant=merchant,
                remote_entity_id=None,
                reasoning="No similar vendor or customer; create one",
            )
        entity, score = max(scored, key=lambda pair: pair[1])
        return MerchantSuggestion(
            merchant=merchant,
            remote_entity_id=entity.id,
            remote_entity_name=entity.name,
            entity_type=entity.type,
            confidence=min(MAX_SIMILARITY_CONFIDENCE, round(score * 100)),
            reasoning=f"Name similar to {entity.type} '{entity.name}'",
        )

    # ------------------------------------------------------------------
    # Stored mappings
    # ------------------------------------------------------------------

    async def save_category_mappings(self, connection_id: str, mappings: list[dict]) -> list[CategoryMapping]:
        """Upsert accepted mappings, one per category."""
        existing = {
            normalize_key(m.category): m
            for m in await self.list_category_mappings(connection_id, active_only=False)
        }
        saved = []
        for data in mappings:
            row = existing.get(normalize_key(data["category"]))
            source = _saved_source(row, row.remote_account_id if row else None, data, data["remote_account_id"])
            if row is None:
                row = CategoryMapping(connection_id=connection_id, category=data["category"].strip())
                self.db.add(row)
                existing[normalize_key(row.category)] = row
            row.remote_account_id = data["remote_account_id"]
            row.remote_account_name = data.get("remote_account_name")
            row.remote_account_type = data.get("remote_account_type")
            row.remote_account_code = data.get("remote_account_code")
            row.confidence = _clamp_confidence(data.get("confidence", 100))
            row.source = source
            row.is_active = True
            saved.append(row)
        await self.db.commit()
        logger.info("category_mappings_saved", connection_id=connection_id, count=len(saved))
        return saved

    async def save_merchant_mappings(self, connection_id: str, mappings: list[dict]) -> list[MerchantMapping]:
        existing = {
            normalize_key(m.merchant): m
            for m in await self.list_merchant_mappings(connection_id, active_only=False)
        }
        saved = []
        for data in mappings:
            row = existing.get(normalize_key(data["merchant"]))
            source = _saved_source(row, row.remote_entity_id if row else None, data, data["remote_entity_id"])
            if row is None:
                row = MerchantMapping(connection_id=connection_id, merchant=data["merchant"].strip())
                self.db.add(row)
                existing[normalize_key(row.merchant)] = row
            row.entity_type = data.get("entity_type") or "vendor"
            row.remote_entity_id = data["remote_entity_id"]
            row.remote_entity_name = data.get("remote_entity_name")
            row.confidence = _clamp_confidence(data.get("confidence", 100))
            row.source = source
            row.is_active = True
            saved.append(row)
        await self.db.commit()
        logger.info("merchant_mappings_saved", connection_id=connection_id, count=len(saved))
        return saved

    async def list_category_mappings(self, connection_id: str, active_only: bool = True) -> list[CategoryMapping]:
        query = select(CategoryMapping).where(CategoryMapping.connection_id == connection_id)
        if active_only:
            query = query.where(CategoryMapping.is_active == True)  # noqa: E712
        result = await self.db.execute(query.order_by(CategoryMapping.category))
        return list(result.scalars().all())

    async def list_merchant_mappings(self, connection_id: str, active_only: bool = True) -> list[MerchantMapping]:
        query = select(MerchantMapping).where(MerchantMapping.connection_id == connection_id)
        if active_only:
            query = query.where(MerchantMapping.is_active == True)  # noqa: E712
        result = await self.db.execute(query.order_by(MerchantMapping.merchant))
        return list(result.scalars().all())

    async def load_active_mappings(
        self,
        connection_id: str,
    ) -> tuple[dict[str, CategoryMapping], dict[str, MerchantMapping]]:
        """Active mappings keyed by normalized category and merchant."""
        categories = {normalize_key(m.category): m for m in await self.list_category_mappings(connection_id)}
        merchants = {normalize_key(m.merchant): m for m in await self.list_merchant_mappings(connection_id)}
        return categories, merchants

    async def deactivate_mapping(self, kind: str, mapping_id: str, user_id: str) -> bool:
        """Soft-delete a mapping owned by one of the user's connections."""
        model = CategoryMapping if kind == "categories" else MerchantMapping
        result = await self.db.execute(
            select(model)
            .join(Connection, Connection.id == model.connection_id)
            .where(model.id == mapping_id, Connection.user_id == user_id)
        )
        mapping = result.scalar_one_or_none()
        if mapping is None:
            return False
        mapping.is_active = False
        await self.db.commit()
        return True

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_mappings(
        self,
        connection_id: str,
        transactions: Iterable[Any],
        *,
        requires_account_mapping: bool = True,
    ) -> MappingValidation:
        """
        Check every distinct category (and merchant, when required) has an
        active mapping. Read-only; repeated calls give the same answer.

        ``transactions`` may be model rows or any objects with ``category``
        and ``merchant`` attributes.
        """
        transactions = list(transactions)
        if not requires_account_mapping:
            return MappingValidation(valid=True, total=len(transactions), mapped=len(transactions))

        categories, merchants = await self.load_active_mappings(connection_id)
        unmapped_categories: dict[str, str] = {}
        unmapped_merchants: dict[str, str] = {}
        low_confidence: dict[str, dict] = {}
        mapped = 0

        for txn in transactions:
            category_key = normalize_key(txn.category)
            mapping = categories.get(category_key)
            # Uncategorized rows are rejected by transaction validation at sync time
            if mapping is None and category_key:
                unmapped_categories.setdefault(category_key, txn.category.strip())
            elif mapping is not None:
                mapped += 1
                if mapping.confidence < settings.low_confidence_threshold:
                    low_confidence.setdefault(
                        category_key,
                        {"type": "category", "value": mapping.category, "confidence": mapping.confidence},
                    )

            merchant_key = normalize_key(txn.merchant)
            if merchant_key and merchant_key not in merchants:
                unmapped_merchants.setdefault(merchant_key, txn.merchant.strip())

        missing = [{"type": "category", "key": value} for value in unmapped_categories.values()]
        if settings.require_merchant_mappings:
            missing.extend({"type": "merchant", "key": value} for value in unmapped_merchants.values())

        total = len(transactions)
        return MappingValidation(
            valid=not missing,
            missing=missing,
            unmapped_categories=list(unmapped_categories.values()),
            unmapped_merchants=list(unmapped_merchants.values()),
            low_confidence=list(low_confidence.values()),
            total=total,
            mapped=mapped,
            coverage=round(mapped / total * 100, 1) if total else 100.0,
        )

    async def get_mapping_stats(self, connection_id: str) -> dict:
        category_mappings = await self.list_category_mappings(connection_id)
        merchant_mappings = await self.list_merchant_mappings(connection_id)
        confidences = [m.confidence for m in category_mappings]
        return {
            "total_category_mappings": len(category_mappings),
            "suggested_category_mappings": sum(1 for m in category_mappings if m.source == SOURCE_SUGGESTED),
            "manual_category_mappings": sum(1 for m in category_mappings if m.source == SOURCE_MANUAL),
            "validated_category_mappings": sum(1 for m in category_mappings if m.source == SOURCE_VALIDATED),
            "average_category_confidence": round(sum(confidences) / len(confidences), 1) if confidences else 0.0,
            "total_merchant_mappings": len(merchant_mappings),
            "vendor_mappings": sum(1 for m in merchant_mappings if m.entity_type == "vendor"),
            "customer_mappings": sum(1 for m in merchant_mappings if m.entity_type == "customer"),
        }
