"""
Background worker that runs sync jobs off the request path.

Routes only enqueue job ids; the worker owns its own database sessions.
"""
import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from statementdesk.database import async_session_maker
from statementdesk.models.sync_job import JOB_RUNNING
from statementdesk.services.integrations import get_adapter
from statementdesk.services.oauth import AdapterFactory
from statementdesk.services.sync import SyncService

logger = structlog.get_logger(__name__)


class SyncWorker:
    """Consumes job ids from an in-process queue, one job at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="sync-worker")
            logger.info("sync_worker_started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sync_worker_stopped")

    async def enqueue(self, job_id: str) -> None:
        await self.queue.put(job_id)
        logger.debug("sync_job_enqueued", job_id=job_id, queued=self.queue.qsize())

    async def recover(self) -> None:
        """
        Pick up jobs left behind by a previous process.

        A job still ``running`` lost its worker mid-flight and is closed as
        failed; ``pending`` jobs never started and go back on the queue.
        """
        requeue = []
        async with self.session_factory() as session:
            service = SyncService(session, self.adapter_factory)
            for job_id, status in await service.unfinished_jobs():
                if status == JOB_RUNNING:
                    await service.fail_job(job_id, "Sync was interrupted by a restart")
                else:
                    requeue.append(job_id)
        for job_id in requeue:
            await self.enqueue(job_id)
        logger.info("sync_worker_recovered", requeued=len(requeue))

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def _run(self) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                await self.run_job(job_id)
            finally:
                self.queue.task_done()

    async def run_job(self, job_id: str) -> None:
        async with self.session_factory() as session:
            service = SyncService(session, self.adapter_factory)
            try:
                await service.process_job(job_id)
            except Exception as e:
                # Keep the worker alive; the job is closed as failed
                logger.exception("sync_job_crashed", job_id=job_id)
                await service.fail_job(job_id, f"Sync stopped unexpectedly: {e}")


sync_worker = SyncWorker()


def get_sync_worker() -> SyncWorker:
    """Dependency returning the application's worker."""
    return sync_worker
