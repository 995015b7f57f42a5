"""Post-commit background job dispatch.

Operations decide *that* a notification or shipment call should happen inside
their transaction, then hand the job to a dispatcher after commit. A dispatch
failure is logged and never propagates into the committed operation.

Two backends:
- ``ArqDispatcher`` enqueues onto the arq Redis queue consumed by the commerce
  worker; the dedupe key becomes arq's ``_job_id`` so repeated submissions of
  the same job are dropped by the queue.
- ``LocalDispatcher`` runs jobs on a bounded pool of asyncio workers inside the
  current process (single-node deployments, local development).
"""

import asyncio
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from libs.common.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[..., Awaitable[Any]]

JOB_SEND_NOTIFICATION = "task_send_notification"
JOB_CREATE_SHIPMENT = "task_create_shipment"
JOB_CANCEL_SHIPMENT = "task_cancel_shipment"


class BackgroundDispatcher:
    """Interface shared by dispatch backends."""

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def submit(
        self, job_name: str, *args: Any, dedupe_key: Optional[str] = None
    ) -> bool:
        raise NotImplementedError

    async def notify(self, kind: str, payload: dict, *, dedupe_key: str) -> bool:
        return await self.submit(
            JOB_SEND_NOTIFICATION, kind, payload, dedupe_key=f"notify:{dedupe_key}"
        )


class ArqDispatcher(BackgroundDispatcher):
    def __init__(self, redis_settings: RedisSettings, queue_name: str):
        self._redis_settings = redis_settings
        self._queue_name = queue_name
        self._pool: Optional[ArqRedis] = None

    async def start(self) -> None:
        if self._pool is None:
            self._pool = await create_pool(self._redis_settings)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def submit(
        self, job_name: str, *args: Any, dedupe_key: Optional[str] = None
    ) -> bool:
        try:
            await self.start()
            job = await self._pool.enqueue_job(
                job_name, *args, _job_id=dedupe_key, _queue_name=self._queue_name
            )
        except Exception:
            logger.exception(
                "Failed to enqueue %s",
                job_name,
                extra={"extra_fields": {"job": job_name, "dedupe_key": dedupe_key}},
            )
            return False

        if job is None:
            logger.info("Job %s already queued (%s), skipping", job_name, dedupe_key)
            return False
        return True


class LocalDispatcher(BackgroundDispatcher):
    """Bounded in-process worker pool.

    Handlers are called with an empty ctx dict first, matching arq's job
    signature so the same task functions serve both backends.
    """

    def __init__(
        self,
        handlers: dict[str, JobHandler],
        max_workers: int = 4,
        queue_size: int = 500,
        dedupe_capacity: int = 10_000,
    ):
        self._handlers = handlers
        self._max_workers = max_workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task] = []
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._dedupe_capacity = dedupe_capacity

    async def start(self) -> None:
        if self._workers:
            return
        for index in range(self._max_workers):
            self._workers.append(
                asyncio.create_task(self._run(), name=f"commerce-dispatch-{index}")
            )

    async def close(self) -> None:
        await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def _already_seen(self, dedupe_key: Optional[str]) -> bool:
        if dedupe_key is None:
            return False
        if dedupe_key in self._seen:
            return True
        self._seen[dedupe_key] = None
        if len(self._seen) > self._dedupe_capacity:
            self._seen.popitem(last=False)
        return False

    async def submit(
        self, job_name: str, *args: Any, dedupe_key: Optional[str] = None
    ) -> bool:
        if job_name not in self._handlers:
            logger.error("No handler registered for job %s", job_name)
            return False
        if self._already_seen(dedupe_key):
            logger.info("Job %s already submitted (%s), skipping", job_name, dedupe_key)
            return False

        await self.start()
        try:
            self._queue.put_nowait((job_name, args))
        except asyncio.QueueFull:
            logger.warning(
                "Dispatch queue full, dropping %s",
                job_name,
                extra={"extra_fields": {"job": job_name, "dedupe_key": dedupe_key}},
            )
            return False
        return True

    async def _run(self) -> None:
        while True:
            job_name, args = await self._queue.get()
            try:
                await self._handlers[job_name]({}, *args)
            except Exception:
                logger.exception("Background job %s failed", job_name)
            finally:
                self._queue.task_done()


def build_dispatcher(backend: str, **options: Any) -> BackgroundDispatcher:
    if backend == "local":
        from services.commerce_service.tasks import JOB_HANDLERS

        return LocalDispatcher(JOB_HANDLERS, **options)

    from libs.common.arq_config import COMMERCE_QUEUE_NAME, get_redis_settings

    return ArqDispatcher(get_redis_settings(), COMMERCE_QUEUE_NAME)
