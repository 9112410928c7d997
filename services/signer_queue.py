"""
Per-signer work queue.

Ledger transactions from one account must be sequenced (sequence numbers),
so every job touching a signer runs on that signer's single worker task.
The queue is bounded: a full queue fails fast with SignerBusy instead of
growing without limit. The wait timeout covers time spent queued; once a
job has started it runs to completion and its caller gets the outcome.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from config import Config
from services.settlement_errors import SignerBusy, TransferTimeout

logger = logging.getLogger(__name__)

Job = Tuple[Callable[[], Awaitable[Any]], asyncio.Future, asyncio.Event, str]


class SignerWorkQueue:
    """One bounded queue and one worker per signer address"""

    def __init__(self, max_size: Optional[int] = None, wait_timeout: Optional[float] = None):
        self.max_size = max_size or Config.SIGNER_QUEUE_SIZE
        self.wait_timeout = wait_timeout or Config.SIGNER_QUEUE_TIMEOUT_SECONDS
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def _ensure_worker(self, signer_address: str) -> asyncio.Queue:
        queue = self._queues.get(signer_address)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.max_size)
            self._queues[signer_address] = queue
        worker = self._workers.get(signer_address)
        if worker is None or worker.done():
            self._workers[signer_address] = asyncio.create_task(
                self._worker(signer_address, queue), name=f"signer-worker-{signer_address[:10]}"
            )
        return queue

    async def _worker(self, signer_address: str, queue: asyncio.Queue):
        while True:
            job_factory, future, started, label = await queue.get()
            try:
                if future.cancelled():
                    logger.info(f"⏭️ SIGNER_QUEUE: Skipping abandoned job {label}")
                    continue
                started.set()
                try:
                    result = await job_factory()
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()

    def depth(self, signer_address: str) -> int:
        queue = self._queues.get(signer_address)
        return queue.qsize() if queue else 0

    async def submit(self, signer_address: str, job_factory: Callable[[], Awaitable[Any]], label: str = "") -> Any:
        """Run job_factory() on the signer's worker and return its result"""
        queue = self._ensure_worker(signer_address)
        future = asyncio.get_running_loop().create_future()
        started = asyncio.Event()
        try:
            queue.put_nowait((job_factory, future, started, label))
        except asyncio.QueueFull:
            logger.warning(f"🚦 SIGNER_QUEUE: {signer_address} busy ({queue.qsize()} queued) - rejecting {label}")
            raise SignerBusy(f"Signer is busy with {queue.qsize()} queued transfers, try again shortly")

        try:
            await asyncio.wait_for(started.wait(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            if not started.is_set():
                future.cancel()
                logger.warning(f"⏰ SIGNER_QUEUE: {label} not started within {self.wait_timeout}s - abandoned")
                raise TransferTimeout(f"Transfer {label} did not start within {self.wait_timeout}s")
        return await future

    async def shutdown(self):
        for worker in self._workers.values():
            worker.cancel()
        for worker in self._workers.values():
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._queues.clear()
