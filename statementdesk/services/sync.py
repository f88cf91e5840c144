"""
Bulk sync orchestrator.

A SyncJob pushes the transactions of one statement file into a connected
provider. Every transaction gets its own outcome row, so a job always ends
with ``successful_imports + failed_imports == total_transactions``.
"""
import asyncio
from collections import Counter

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.models.connection import Connection
from statementdesk.models.sync_job import (
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_SYNCED,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_TRANSITIONS,
    SyncJob,
    SyncJobItem,
)
from statementdesk.models.transaction import Transaction
from statementdesk.services.errors import (
    AuthExpired,
    ConnectionNotFound,
    IntegrationError,
    JobNotFound,
    JobStateError,
    MappingError,
    RateLimited,
    StatementFileNotFound,
    ValidationError,
)
from statementdesk.services.integrations import ProviderAdapter, get_adapter
from statementdesk.services.integrations.base import MappingContext, RemoteAccount, RemoteEntity
from statementdesk.services.mapping import MappingService, normalize_key
from statementdesk.services.oauth import AdapterFactory
from statementdesk.services.token_service import TokenService
from statementdesk.services.transactions import (
    get_statement_file,
    get_transactions,
    list_file_transactions,
    validate_transaction,
)
from statementdesk.utils.dates import utcnow

logger = structlog.get_logger(__name__)

POLICY_SKIP_UNMAPPED = "skip_unmapped"
POLICY_FAIL_FAST = "fail_fast"
POLICY_FALLBACK = "fallback"
MAPPING_POLICIES = (POLICY_SKIP_UNMAPPED, POLICY_FAIL_FAST, POLICY_FALLBACK)

CANCELLED_CODE = "cancelled"
INTERNAL_ERROR_CODE = "internal_error"


class SyncService:
    """Create, run, cancel and retry bulk sync jobs."""

    def __init__(
        self,
        db: AsyncSession,
        adapter_factory: AdapterFactory = get_adapter,
        mapping_service: MappingService | None = None,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.tokens = TokenService(db, adapter_factory)
        self.mappings = mapping_service or MappingService(db)
        self.settings = get_settings()
        self._access_token: str | None = None

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: str,
        connection_id: str,
        file_id: str,
        options: dict | None = None,
        *,
        transaction_ids: list[str] | None = None,
        retry_of_job_id: str | None = None,
    ) -> SyncJob:
        """
        Create a pending job with one outcome row per transaction.

        Raises:
            ConnectionNotFound: Connection missing, inactive or not the user's
            StatementFileNotFound: File missing or not the user's
            ValidationError: Bad sync settings or nothing to sync
        """
        connection = await self.tokens.store.get_connection(connection_id, user_id)
        if connection is None or not connection.is_active:
            raise ConnectionNotFound("Connection not found")

        statement_file = await get_statement_file(self.db, file_id, user_id)
        if statement_file is None:
            raise StatementFileNotFound("Statement file not found")

        adapter = self.adapter_factory(connection.provider)
        options = dict(options or {})
        policy = options.setdefault("mapping_policy", self.settings.sync_default_mapping_policy)
        if policy not in MAPPING_POLICIES:
            raise ValidationError(f"Unknown mapping policy: {policy}")
        if policy == POLICY_FALLBACK and adapter.requires_account_mapping and not options.get("fallback_account_id"):
            raise ValidationError("The fallback mapping policy needs fallback_account_id")
        adapter.validate_sync_settings(options)

        if transaction_ids is None:
            transactions = await list_file_transactions(self.db, file_id)
        else:
            found = await get_transactions(self.db, transaction_ids)
            transactions = [found[txn_id] for txn_id in transaction_ids if txn_id in found]
        if not transactions:
            raise ValidationError("Statement file has no transactions to sync")

        job = SyncJob(
            user_id=user_id,
            connection_id=connection.id,
            file_id=file_id,
            retry_of_job_id=retry_of_job_id,
            status=JOB_PENDING,
            total_transactions=len(transactions),
            successful_imports=0,
            failed_imports=0,
            settings=options,
            cancel_requested=False,
        )
        job.items = [
            SyncJobItem(position=position, transaction_id=txn.id, status=ITEM_PENDING, attempts=0)
            for position, txn in enumerate(transactions)
        ]
        self.db.add(job)
        await self.db.commit()

        logger.info(
            "sync_job_created",
            job_id=job.id,
            provider=connection.provider,
            total=job.total_transactions,
            mapping_policy=policy,
            retry_of=retry_of_job_id,
        )
        return job

    async def get_job(self, job_id: str, user_id: str | None = None) -> SyncJob | None:
        query = select(SyncJob).where(SyncJob.id == job_id)
        if user_id is not None:
            query = query.where(SyncJob.user_id == user_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_jobs(self, user_id: str, limit: int = 20, offset: int = 0) -> list[SyncJob]:
        result = await self.db.execute(
            select(SyncJob)
            .where(SyncJob.user_id == user_id)
            .order_by(SyncJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def cancel_job(self, job_id: str, user_id: str) -> SyncJob:
        """
        Request cancellation. A pending job is cancelled on the spot; a
        running job stops before its next transaction batch.
        """
        job = await self.get_job(job_id, user_id)
        if job is None:
            raise JobNotFound("Sync job not found")
        if job.is_terminal:
            raise JobStateError(f"Job is already {job.status}")

        cancelled_now = await self._compare_and_set_status(job, JOB_PENDING, JOB_CANCELLED)
        job.cancel_requested = True
        if cancelled_now:
            self._fail_pending(job, CANCELLED_CODE, "Job cancelled before it started")
            job.completed_at = utcnow()
        await self.db.commit()

        logger.info("sync_job_cancel_requested", job_id=job.id, status=job.status)
        return job

    async def retry_failed(self, job_id: str, user_id: str) -> SyncJob:
        """Start a new job over the failed transactions of a finished one."""
        job = await self.get_job(job_id, user_id)
        if job is None:
            raise JobNotFound("Sync job not found")
        if not job.is_terminal:
            raise JobStateError("Only finished jobs can be retried")

        failed_ids = [item.transaction_id for item in job.items if item.status == ITEM_FAILED]
        if not failed_ids:
            raise JobStateError("Job has no failed transactions to retry")

        return await self.create_job(
            user_id,
            job.connection_id,
            job.file_id,
            dict(job.settings or {}),
            transaction_ids=failed_ids,
            retry_of_job_id=job.id,
        )

    async def fail_job(self, job_id: str, reason: str) -> None:
        """Close a job that crashed outside the per-transaction error handling."""
        await self.db.rollback()
        job = await self.get_job(job_id)
        if job is None or job.is_terminal:
            return
        if job.status == JOB_PENDING:
            job.status = JOB_RUNNING
        self._fail_pending(job, INTERNAL_ERROR_CODE, reason)
        await self._finish(job, None)

    async def unfinished_jobs(self) -> list[tuple[str, str]]:
        """(job id, status) of every pending or running job, oldest first."""
        result = await self.db.execute(
            select(SyncJob.id, SyncJob.status)
            .where(SyncJob.status.in_((JOB_PENDING, JOB_RUNNING)))
            .order_by(SyncJob.created_at, SyncJob.id)
        )
        return [(row.id, row.status) for row in result.all()]

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_job(self, job_id: str) -> SyncJob | None:
        """Run a pending job to a terminal status."""
        job = await self.get_job(job_id)
        if job is None:
            logger.warning("sync_job_missing", job_id=job_id)
            return None
        if not await self._compare_and_set_status(job, JOB_PENDING, JOB_RUNNING):
            logger.info("sync_job_not_claimed", job_id=job_id, status=job.status)
            return job
        job.started_at = utcnow()
        await self.db.commit()

        connection = await self.tokens.store.get_connection(job.connection_id)
        log = logger.bind(job_id=job.id, provider=connection.provider if connection else None)
        log.info("sync_job_started", total=job.total_transactions)

        if connection is None or not connection.is_active:
            self._fail_pending(job, ConnectionNotFound.code, "Connection was removed")
            return await self._finish(job, connection)

        adapter = self.adapter_factory(connection.provider)

        try:
            self._access_token = await self.tokens.access_token_for(connection)
        except IntegrationError as e:
            log.warning("sync_job_token_unavailable", error_code=e.code)
            self._fail_pending(job, _item_code(e), e.message)
            return await self._finish(job, connection)

        categories, merchants = await self.mappings.load_active_mappings(connection.id)
        transactions = await get_transactions(self.db, [item.transaction_id for item in job.items])
        policy = (job.settings or {}).get("mapping_policy", POLICY_SKIP_UNMAPPED)

        if policy == POLICY_FAIL_FAST and adapter.requires_account_mapping:
            missing = self._missing_keys(transactions.values(), categories, merchants)
            if missing:
                log.info("sync_job_mappings_missing", missing=len(missing))
                self._fail_pending(job, MappingError.code, f"Unmapped: {', '.join(missing)}")
                return await self._finish(job, connection)

        pending = [item for item in job.items if item.status == ITEM_PENDING]
        batch_size = max(1, self.settings.sync_concurrency)
        cancelled = False

        for start in range(0, len(pending), batch_size):
            await self.db.refresh(job, attribute_names=["cancel_requested"])
            if job.cancel_requested:
                cancelled = True
                break

            batch = pending[start:start + batch_size]
            results = await asyncio.gather(
                *(
                    self._process_item(adapter, connection, job, item, transactions.get(item.transaction_id),
                                       categories, merchants)
                    for item in batch
                ),
                return_exceptions=True,
            )

            halt = None
            for result in results:
                if isinstance(result, AuthExpired):
                    halt = halt or result
                elif isinstance(result, BaseException):
                    raise result
            if halt is not None:
                log.warning("sync_job_halted", error_code=halt.code)
                self._fail_pending(job, AuthExpired.code, halt.message)
                break

            await self.db.commit()

        if cancelled:
            self._fail_pending(job, CANCELLED_CODE, "Job cancelled")
        return await self._finish(job, connection, cancelled=cancelled)

    async def _process_item(
        self,
        adapter: ProviderAdapter,
        connection: Connection,
        job: SyncJob,
        item: SyncJobItem,
        transaction: Transaction | None,
        categories: dict,
        merchants: dict,
    ) -> None:
        """Push one transaction and record its outcome. AuthExpired propagates to halt the job."""
        try:
            if transaction is None:
                raise ValidationError("Transaction no longer exists")
            validate_transaction(transaction, require_category=adapter.requires_account_mapping)
            context = self._mapping_context(adapter, transaction, categories, merchants, job.settings or {})
            payload = adapter.build_payload(transaction, context, job.settings or {})
            remote_id = await self._push_with_retry(adapter, connection, item, payload, job.settings or {})
        except AuthExpired:
            raise
        except IntegrationError as e:
            self._record(job, item, ITEM_FAILED, error_code=e.code, error_message=e.message)
            logger.info(
                "sync_item_failed",
                job_id=job.id,
                position=item.position,
                error_code=e.code,
            )
        else:
            self._record(job, item, ITEM_SYNCED, remote_id=remote_id)

    async def _push_with_retry(
        self,
        adapter: ProviderAdapter,
        connection: Connection,
        item: SyncJobItem,
        payload: dict,
        options: dict,
    ) -> str:
        """Retry throttled pushes with exponential backoff; refresh once on 401."""
        refreshed = False
        while True:
            item.attempts = (item.attempts or 0) + 1
            try:
                return await adapter.push_transaction(self._access_token, connection.tenant_id, payload, options)
            except RateLimited as e:
                if item.attempts >= self.settings.sync_max_attempts:
                    raise
                delay = e.retry_after
                if delay is None:
                    delay = self.settings.sync_retry_base_delay * 2 ** (item.attempts - 1)
                delay = min(max(delay, 0.0), self.settings.sync_retry_max_delay)
                logger.info("sync_item_rate_limited", position=item.position, attempt=item.attempts, wait_seconds=delay)
                await asyncio.sleep(delay)
            except AuthExpired:
                if refreshed:
                    raise
                refreshed = True
                self._access_token = await self.tokens.access_token_for(connection, force=True)

    def _mapping_context(
        self,
        adapter: ProviderAdapter,
        transaction: Transaction,
        categories: dict,
        merchants: dict,
        options: dict,
    ) -> MappingContext:
        if not adapter.requires_account_mapping:
            return MappingContext()

        policy = options.get("mapping_policy", POLICY_SKIP_UNMAPPED)
        category_mapping = categories.get(normalize_key(transaction.category))
        if category_mapping is not None:
            account = RemoteAccount(
                id=category_mapping.remote_account_id,
                name=category_mapping.remote_account_name or "",
                type=category_mapping.remote_account_type,
                code=category_mapping.remote_account_code,
            )
        elif policy == POLICY_FALLBACK:
            account = RemoteAccount(
                id=options["fallback_account_id"],
                name=options.get("fallback_account_name") or "Uncategorized",
                code=options.get("fallback_account_code"),
            )
        else:
            raise MappingError(f"No account mapping for category '{transaction.category}'")

        entity = None
        merchant_mapping = merchants.get(normalize_key(transaction.merchant))
        if merchant_mapping is not None:
            entity = RemoteEntity(
                id=merchant_mapping.remote_entity_id,
                name=merchant_mapping.remote_entity_name or "",
                type=merchant_mapping.entity_type,
            )
        elif self.settings.require_merchant_mappings and transaction.merchant and policy != POLICY_FALLBACK:
            raise MappingError(f"No vendor or customer mapping for merchant '{transaction.merchant}'")

        return MappingContext(account=account, entity=entity)

    def _missing_keys(self, transactions, categories: dict, merchants: dict) -> list[str]:
        missing: dict[str, str] = {}
        for txn in transactions:
            key = normalize_key(txn.category)
            if key and key not in categories:
                missing.setdefault(f"category:{key}", txn.category.strip())
            merchant_key = normalize_key(txn.merchant)
            if self.settings.require_merchant_mappings and merchant_key and merchant_key not in merchants:
                missing.setdefault(f"merchant:{merchant_key}", txn.merchant.strip())
        return list(missing.values())

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        job: SyncJob,
        item: SyncJobItem,
        status: str,
        *,
        remote_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        item.status = status
        item.remote_id = remote_id
        item.error_code = error_code
        item.error_message = error_message
        item.processed_at = utcnow()
        if status == ITEM_SYNCED:
            job.successful_imports += 1
        else:
            job.failed_imports += 1

    def _fail_pending(self, job: SyncJob, code: str, message: str) -> None:
        for item in job.items:
            if item.status == ITEM_PENDING:
                self._record(job, item, ITEM_FAILED, error_code=code, error_message=message)

    async def _compare_and_set_status(self, job: SyncJob, expected: str, new: str) -> bool:
        """Move the job between statuses only if the stored status is still ``expected``."""
        result = await self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job.id, SyncJob.status == expected)
            .values(status=new)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(job, attribute_names=["status", "cancel_requested"])
        return result.rowcount == 1

    def _transition(self, job: SyncJob, new: str) -> None:
        if new not in JOB_TRANSITIONS.get(job.status, frozenset()):
            raise JobStateError(f"Cannot move job from {job.status} to {new}")
        job.status = new

    async def _finish(self, job: SyncJob, connection: Connection | None, *, cancelled: bool = False) -> SyncJob:
        if cancelled:
            self._transition(job, JOB_CANCELLED)
        elif job.failed_imports == 0:
            self._transition(job, JOB_COMPLETED)
        else:
            self._transition(job, JOB_FAILED)

        now = utcnow()
        job.completed_at = now
        codes = Counter(item.error_code for item in job.items if item.status == ITEM_FAILED)
        job.error_summary = ", ".join(f"{count} {code}" for code, count in codes.most_common()) or None
        if connection is not None and job.successful_imports:
            connection.last_synced_at = now
        await self.db.commit()

        logger.info(
            "sync_job_finished",
            job_id=job.id,
            status=job.status,
            successful=job.successful_imports,
            failed=job.failed_imports,
        )
        return job


def _item_code(error: IntegrationError) -> str:
    # Every credential failure is reported to the user as "reconnect"
    if isinstance(error, AuthExpired):
        return AuthExpired.code
    return error.code
