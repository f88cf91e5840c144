"""
Tests for mapping suggestions and validation.
"""
import json
from types import SimpleNamespace

import pytest

from statementdesk.config import get_settings
from statementdesk.models.mapping import SOURCE_MANUAL, SOURCE_SUGGESTED, SOURCE_VALIDATED
from statementdesk.schemas.mapping import TransactionInput
from statementdesk.services.integrations.base import RemoteAccount, RemoteEntity
from statementdesk.services.mapping import MappingService, normalize_key

ACCOUNTS = [
    RemoteAccount(id="60", name="Meals and Entertainment", type="Expense"),
    RemoteAccount(id="61", name="Office Supplies & Software", type="Expense"),
    RemoteAccount(id="62", name="Travel", type="Expense"),
    RemoteAccount(id="40", name="Sales", type="Income"),
]


class FakeClaude:
    """Stands in for the Anthropic client's messages API."""

    def __init__(self, reply: str):
        self.reply = reply
        self.prompts = []
        self.messages = self

    async def create(self, **kwargs):
        self.prompts.append(kwargs["messages"][0]["content"])
        return SimpleNamespace(content=[SimpleNamespace(text=self.reply)])


def test_normalize_key():
    assert normalize_key("  Office   Supplies ") == "office supplies"
    assert normalize_key(None) == ""


@pytest.mark.asyncio
async def test_similarity_suggestions_without_model(db):
    service = MappingService(db)

    suggestions = await service.generate_category_mappings(
        ["Office Supplies", "Travel", "Sales Income", "office supplies"], ACCOUNTS, "conn-1"
    )

    by_category = {s.category: s for s in suggestions}
    assert len(suggestions) == 3
    assert by_category["Office Supplies"].remote_account_id == "61"
    assert by_category["Travel"].remote_account_id == "62"
    assert by_category["Sales Income"].remote_account_id == "40"
    assert all(s.confidence <= 95 for s in suggestions)
    assert all(s.source == SOURCE_SUGGESTED for s in suggestions)


@pytest.mark.asyncio
async def test_model_suggestions_are_checked_against_accounts(db):
    reply = "Here you go:\n" + json.dumps([
        {"category": "Travel", "account_id": "62", "confidence": 97, "reasoning": "Direct match"},
        {"category": "Meals", "account_id": "does-not-exist", "confidence": 99, "reasoning": "Invented"},
    ])
    client = FakeClaude(reply)
    service = MappingService(db, client=client)

    suggestions = await service.generate_category_mappings(["Travel", "Meals"], ACCOUNTS, "conn-1")

    travel, meals = suggestions
    assert travel.remote_account_id == "62"
    assert travel.confidence == 97
    assert travel.reasoning == "Direct match"
    # The invented id is dropped and the category falls back to name matching
    assert meals.remote_account_id == "60"
    assert "Meals and Entertainment" in client.prompts[0]


@pytest.mark.asyncio
async def test_unparseable_model_reply_falls_back(db):
    service = MappingService(db, client=FakeClaude("I cannot help with that."))

    suggestions = await service.generate_category_mappings(["Travel"], ACCOUNTS, "conn-1")

    assert suggestions[0].remote_account_id == "62"


@pytest.mark.asyncio
async def test_merchant_suggestions(db):
    service = MappingService(db)
    vendors = [RemoteEntity(id="v1", name="Walmart", type="vendor"), RemoteEntity(id="v2", name="Staples")]
    customers = [RemoteEntity(id="c1", name="Client Co", type="customer")]

    suggestions = await service.generate_merchant_mappings(
        ["WALMART #1234", "Client Co", "Corner Bakery"], vendors, customers, "conn-1"
    )

    walmart, client, bakery = suggestions
    assert walmart.remote_entity_id == "v1"
    assert client.remote_entity_id == "c1"
    assert client.entity_type == "customer"
    assert bakery.remote_entity_id is None


@pytest.mark.asyncio
async def test_save_is_an_upsert(db, make_connection):
    connection = await make_connection()
    service = MappingService(db)

    await service.save_category_mappings(connection.id, [{"category": "Meals", "remote_account_id": "60"}])
    await service.save_category_mappings(
        connection.id, [{"category": " meals", "remote_account_id": "62", "confidence": 80}]
    )

    mappings = await service.list_category_mappings(connection.id)
    assert len(mappings) == 1
    assert mappings[0].remote_account_id == "62"
    assert mappings[0].confidence == 80


@pytest.mark.asyncio
async def test_validate_reports_missing_and_is_read_only(db, make_connection, make_statement, map_category):
    connection = await make_connection()
    await map_category(connection, "Meals")
    await map_category(connection, "Travel", account_id="62", confidence=55)
    _, transactions = await make_statement([
        ("Meals", "Cafe", "-4.00"),
        ("Travel", "Uber", "-12.00"),
        ("Software", "GitHub", "-9.00"),
        ("software", "GitHub", "-9.00"),
    ])
    service = MappingService(db)

    first = await service.validate_mappings(connection.id, transactions)
    second = await service.validate_mappings(connection.id, transactions)

    assert first == second
    assert first.valid is False
    assert first.missing == [{"type": "category", "key": "Software"}]
    assert first.low_confidence == [{"type": "category", "value": "Travel", "confidence": 55}]
    assert first.total == 4
    assert first.mapped == 2
    assert first.coverage == 50.0
    assert len(await service.list_category_mappings(connection.id)) == 2


@pytest.mark.asyncio
async def test_merchant_mappings_required_when_configured(db, make_connection, map_category, monkeypatch):
    connection = await make_connection()
    await map_category(connection, "Meals")
    transactions = [TransactionInput(category="Meals", merchant="Cafe Nero")]
    service = MappingService(db)

    assert (await service.validate_mappings(connection.id, transactions)).valid is True

    monkeypatch.setattr(get_settings(), "require_merchant_mappings", True)
    result = await service.validate_mappings(connection.id, transactions)

    assert result.valid is False
    assert result.missing == [{"type": "merchant", "key": "Cafe Nero"}]


@pytest.mark.asyncio
async def test_validate_without_account_mapping_is_always_valid(db, make_connection):
    connection = await make_connection(provider="google")
    transactions = [TransactionInput(category="Anything")]

    result = await MappingService(db).validate_mappings(
        connection.id, transactions, requires_account_mapping=False
    )

    assert result.valid is True
    assert result.missing == []


@pytest.mark.asyncio
async def test_deactivate_and_stats(db, test_user, make_connection):
    connection = await make_connection()
    service = MappingService(db)
    saved = await service.save_category_mappings(connection.id, [
        {"category": "Meals", "remote_account_id": "60", "confidence": 90, "source": "suggested"},
        {"category": "Travel", "remote_account_id": "62", "confidence": 70},
    ])
    await service.save_merchant_mappings(connection.id, [
        {"merchant": "Uber", "remote_entity_id": "v1"},
        {"merchant": "Client Co", "remote_entity_id": "c1", "entity_type": "customer"},
    ])

    stats = await service.get_mapping_stats(connection.id)
    assert stats["total_category_mappings"] == 2
    assert stats["suggested_category_mappings"] == 1
    assert stats["manual_category_mappings"] == 1
    assert stats["average_category_confidence"] == 80.0
    assert stats["vendor_mappings"] == 1
    assert stats["customer_mappings"] == 1

    assert await service.deactivate_mapping("categories", saved[0].id, "someone-else") is False
    assert await service.deactivate_mapping("categories", saved[0].id, test_user.id) is True
    assert [m.category for m in await service.list_category_mappings(connection.id)] == ["Travel"]


@pytest.mark.asyncio
async def test_confirming_a_suggestion_marks_it_validated(db, make_connection):
    connection = await make_connection()
    service = MappingService(db)
    await service.save_category_mappings(connection.id, [
        {"category": "Meals", "remote_account_id": "60", "confidence": 85, "source": "suggested"},
        {"category": "Travel", "remote_account_id": "62", "confidence": 70, "source": "suggested"},
    ])

    saved = await service.save_category_mappings(connection.id, [
        {"category": "Meals", "remote_account_id": "60"},
        {"category": "Travel", "remote_account_id": "61"},
    ])

    meals, travel = saved
    assert meals.source == SOURCE_VALIDATED
    # Picking a different account is a manual mapping
    assert travel.source == SOURCE_MANUAL

    stats = await service.get_mapping_stats(connection.id)
    assert stats["validated_category_mappings"] == 1
    assert stats["manual_category_mappings"] == 1
