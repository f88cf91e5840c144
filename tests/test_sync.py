"""
Tests for bulk sync jobs.
"""
import asyncio
from datetime import date, timedelta

import pytest

from statementdesk.config import get_settings
from statementdesk.models.connection import TOKEN_UNRECOVERABLE
from statementdesk.models.sync_job import ITEM_FAILED, ITEM_SYNCED
from statementdesk.services.errors import (
    AuthExpired,
    AuthRevoked,
    ConnectionNotFound,
    JobStateError,
    RateLimited,
    RemoteRejected,
    StatementFileNotFound,
    ValidationError,
)
from statementdesk.services.sync import SyncService
from statementdesk.services.worker import SyncWorker
from statementdesk.services.token_store import TokenStore

SYNC_SETTINGS = {"bank_account_id": "35"}


def meal_rows(count: int = 10, unmapped: tuple[int, ...] = ()) -> list[tuple[str, str, str]]:
    return [
        ("Mystery" if i in unmapped else "Meals", f"Cafe {i}", f"-{i + 1}.50")
        for i in range(count)
    ]


async def load_job(session_factory, job_id):
    async with session_factory() as session:
        return await SyncService(session).get_job(job_id)


def assert_counts_add_up(job):
    assert job.successful_imports + job.failed_imports == job.total_transactions
    assert len([i for i in job.items if i.status in (ITEM_SYNCED, ITEM_FAILED)]) == job.total_transactions


@pytest.mark.asyncio
async def test_partial_failure_reports_unmapped(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category, session_factory
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(unmapped=(3, 7)))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    await service.process_job(job.id)

    job = await load_job(session_factory, job.id)
    assert job.status == "failed"
    assert job.total_transactions == 10
    assert job.successful_imports == 8
    assert job.failed_imports == 2
    assert [e["transaction_ref"] for e in job.errors] == [transactions[3].id, transactions[7].id]
    assert {e["code"] for e in job.errors} == {"mapping_error"}
    assert job.error_summary == "2 mapping_error"
    assert len(fake_adapter.pushed) == 8
    assert_counts_add_up(job)


@pytest.mark.asyncio
async def test_all_mapped_completes(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "meals ")
    statement, _ = await make_statement(meal_rows(count=3))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.status == "completed"
    assert job.successful_imports == 3
    assert all(item.remote_id.startswith("remote-") for item in job.items)
    assert connection.last_synced_at is not None


@pytest.mark.asyncio
async def test_fail_fast_pushes_nothing(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, _ = await make_statement(meal_rows(count=4, unmapped=(2,)))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(
        test_user.id, connection.id, statement.id, {**SYNC_SETTINGS, "mapping_policy": "fail_fast"}
    )
    job = await service.process_job(job.id)

    assert job.status == "failed"
    assert job.failed_imports == 4
    assert fake_adapter.pushed == []
    assert "Mystery" in job.errors[0]["reason"]


@pytest.mark.asyncio
async def test_fallback_account_used_for_unmapped(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement
):
    connection = await make_connection()
    statement, _ = await make_statement(meal_rows(count=3))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(
        test_user.id,
        connection.id,
        statement.id,
        {**SYNC_SETTINGS, "mapping_policy": "fallback", "fallback_account_id": "99"},
    )
    job = await service.process_job(job.id)

    assert job.status == "completed"
    assert job.successful_imports == 3


@pytest.mark.asyncio
async def test_fallback_requires_account(db, test_user, adapter_factory, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement(meal_rows(count=1))
    service = SyncService(db, adapter_factory)

    with pytest.raises(ValidationError):
        await service.create_job(test_user.id, connection.id, statement.id, {**SYNC_SETTINGS, "mapping_policy": "fallback"})


@pytest.mark.asyncio
async def test_create_job_validation(db, test_user, adapter_factory, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement(meal_rows(count=1))
    service = SyncService(db, adapter_factory)

    with pytest.raises(ValidationError):
        await service.create_job(test_user.id, connection.id, statement.id, {})
    with pytest.raises(ValidationError):
        await service.create_job(test_user.id, connection.id, statement.id, {**SYNC_SETTINGS, "mapping_policy": "guess"})
    with pytest.raises(ConnectionNotFound):
        await service.create_job(test_user.id, "missing", statement.id, SYNC_SETTINGS)
    with pytest.raises(StatementFileNotFound):
        await service.create_job(test_user.id, connection.id, "missing", SYNC_SETTINGS)


@pytest.mark.asyncio
async def test_invalid_transactions_fail_individually(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement([("Meals", "Cafe", "-4.00"), ("Meals", "Cafe", "0")])
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.successful_imports == 1
    assert job.errors == [
        {
            "transaction_ref": transactions[1].id,
            "position": 1,
            "code": "validation_error",
            "reason": "Transaction amount cannot be zero",
        }
    ]


@pytest.mark.asyncio
async def test_provider_without_mapping_needs_none(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement
):
    fake_adapter.requires_account_mapping = False
    connection = await make_connection(provider="google", tenant_id="me@example.com")
    statement, _ = await make_statement(meal_rows(count=3))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.status == "completed"
    assert [payload_id for _, payload_id in fake_adapter.pushed] == [item.transaction_id for item in job.items]


@pytest.mark.asyncio
async def test_rate_limited_push_is_retried(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=2))
    fake_adapter.push_errors[transactions[0].id] = [RateLimited("slow down"), RateLimited("slow down")]
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.status == "completed"
    assert job.items[0].attempts == 3
    assert job.items[1].attempts == 1


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_attempts(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=2))
    fake_adapter.push_errors[transactions[0].id] = [RateLimited("slow down") for _ in range(5)]
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.items[0].status == ITEM_FAILED
    assert job.items[0].error_code == "rate_limited"
    assert job.items[0].attempts == get_settings().sync_max_attempts
    assert job.items[1].status == ITEM_SYNCED


@pytest.mark.asyncio
async def test_remote_rejection_is_not_retried(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=2))
    fake_adapter.push_errors[transactions[1].id] = [RemoteRejected("Account is archived")]
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.items[1].attempts == 1
    assert job.errors[0]["code"] == "remote_rejected"
    assert job.errors[0]["reason"] == "Account is archived"


@pytest.mark.asyncio
async def test_expired_access_token_refreshed_mid_job(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=3))
    fake_adapter.push_errors[transactions[1].id] = [AuthExpired("401")]
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.status == "completed"
    assert fake_adapter.refresh_calls == 1
    assert [token for token, _ in fake_adapter.pushed] == ["access-0", "access-r1", "access-r1"]


@pytest.mark.asyncio
async def test_revoked_grant_halts_job(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category, session_factory
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows())
    fake_adapter.push_errors[transactions[3].id] = [AuthExpired("401")]
    fake_adapter.refresh_error = AuthRevoked("invalid_grant")
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    await service.process_job(job.id)

    job = await load_job(session_factory, job.id)
    assert job.status == "failed"
    assert job.successful_imports == 3
    assert job.failed_imports == 7
    assert {e["code"] for e in job.errors} == {"auth_expired"}
    assert len(fake_adapter.pushed) == 3
    assert_counts_add_up(job)

    async with session_factory() as session:
        record = await TokenStore(session).reload_token(connection.id)
    assert record.status == TOKEN_UNRECOVERABLE


@pytest.mark.asyncio
async def test_unusable_token_fails_whole_job(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection(expires_in=timedelta(minutes=-5), refresh_token=None)
    await map_category(connection, "Meals")
    statement, _ = await make_statement(meal_rows(count=4))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await service.process_job(job.id)

    assert job.status == "failed"
    assert job.failed_imports == 4
    assert {e["code"] for e in job.errors} == {"auth_expired"}
    assert fake_adapter.pushed == []


@pytest.mark.asyncio
async def test_cancel_pending_job(db, test_user, adapter_factory, fake_adapter, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement(meal_rows(count=3))
    service = SyncService(db, adapter_factory)
    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)

    job = await service.cancel_job(job.id, test_user.id)

    assert job.status == "cancelled"
    assert job.completed_at is not None
    assert_counts_add_up(job)
    assert {e["code"] for e in job.errors} == {"cancelled"}

    # A cancelled job is never picked up
    await service.process_job(job.id)
    assert fake_adapter.pushed == []

    with pytest.raises(JobStateError):
        await service.cancel_job(job.id, test_user.id)


@pytest.mark.asyncio
async def test_cancel_running_job_stops_before_next_batch(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category, session_factory
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, _ = await make_statement(meal_rows(count=5))
    service = SyncService(db, adapter_factory)
    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)

    async def cancel_after_first_push(payload):
        fake_adapter.on_push = None
        async with session_factory() as session:
            await SyncService(session).cancel_job(job.id, test_user.id)

    fake_adapter.on_push = cancel_after_first_push
    await service.process_job(job.id)

    job = await load_job(session_factory, job.id)
    assert job.status == "cancelled"
    assert job.cancel_requested is True
    assert job.successful_imports == 1
    assert job.failed_imports == 4
    assert {e["code"] for e in job.errors} == {"cancelled"}
    assert_counts_add_up(job)


@pytest.mark.asyncio
async def test_retry_failed_creates_linked_job(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=4, unmapped=(1,)))
    service = SyncService(db, adapter_factory)
    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)

    with pytest.raises(JobStateError):
        await service.retry_failed(job.id, test_user.id)

    job = await service.process_job(job.id)
    await map_category(connection, "Mystery", account_id="61")

    retry = await service.retry_failed(job.id, test_user.id)

    assert retry.retry_of_job_id == job.id
    assert retry.total_transactions == 1
    assert retry.items[0].transaction_id == transactions[1].id
    assert retry.settings["bank_account_id"] == "35"

    retry = await service.process_job(retry.id)
    assert retry.status == "completed"


@pytest.mark.asyncio
async def test_list_jobs(db, test_user, adapter_factory, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement(meal_rows(count=1))
    service = SyncService(db, adapter_factory)
    await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)

    jobs = await service.list_jobs(test_user.id)

    assert len(jobs) == 2
    assert await service.list_jobs("someone-else") == []


@pytest.mark.asyncio
async def test_same_day_transactions_keep_statement_order(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=20), same_day=date(2026, 3, 1))
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    await service.process_job(job.id)

    assert [payload_id for _, payload_id in fake_adapter.pushed] == [txn.id for txn in transactions]


@pytest.mark.asyncio
async def test_long_retry_after_is_capped(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category, monkeypatch
):
    monkeypatch.setattr(get_settings(), "sync_retry_max_delay", 0.01)
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, transactions = await make_statement(meal_rows(count=1))
    fake_adapter.push_errors[transactions[0].id] = [RateLimited("slow down", retry_after=3600)]
    service = SyncService(db, adapter_factory)

    job = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    job = await asyncio.wait_for(service.process_job(job.id), timeout=5)

    assert job.status == "completed"
    assert job.items[0].attempts == 2


@pytest.mark.asyncio
async def test_restart_requeues_pending_and_closes_running_jobs(
    db, test_user, adapter_factory, fake_adapter, make_connection, make_statement, map_category, session_factory
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, _ = await make_statement(meal_rows(count=3))
    service = SyncService(db, adapter_factory)
    waiting = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    interrupted = await service.create_job(test_user.id, connection.id, statement.id, SYNC_SETTINGS)
    # The previous process died while this job was mid-flight
    interrupted.status = "running"
    await db.commit()

    worker = SyncWorker(session_factory, adapter_factory)
    await worker.recover()
    worker.start()
    try:
        await worker.join()
    finally:
        await worker.stop()

    waiting = await load_job(session_factory, waiting.id)
    assert waiting.status == "completed"
    assert waiting.successful_imports == 3

    interrupted = await load_job(session_factory, interrupted.id)
    assert interrupted.is_terminal
    assert interrupted.status == "failed"
    assert {e["code"] for e in interrupted.errors} == {"internal_error"}
    assert_counts_add_up(interrupted)

    # A closed job can be retried
    async with session_factory() as session:
        retry = await SyncService(session, adapter_factory).retry_failed(interrupted.id, test_user.id)
    assert retry.total_transactions == 3
