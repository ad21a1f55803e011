# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Acknowledged dispatch queue.

Background work (running a restarted execution) is submitted as a job and
picked up by asyncio worker tasks. Every job gets a ticket that is
acknowledged once the job finishes. Jobs that raise are retried; a job
that exhausts its attempts is recorded in ``failures`` and handed to
``on_failure`` so the execution it belongs to can be marked failed.

Usage:
    queue = DispatchQueue(run_job, max_attempts=3)
    ticket = queue.submit(DispatchJob(execution_id, "node_a"))
    await ticket.wait()
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, List, Optional

logger = logging.getLogger("loyaltyflow.dispatch")


@dataclass(frozen=True)
class DispatchJob:
    execution_id: str
    start_node_id: Optional[str] = None
    kind: str = "restart"


@dataclass
class DispatchTicket:
    """Acknowledgement handle of one submitted job"""
    job: DispatchJob
    attempts: int = 0
    acknowledged: bool = False
    failed: bool = False
    error: Optional[str] = None
    result: Any = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    _callbacks: List[Callable[["DispatchTicket"], Any]] = field(default_factory=list, repr=False)

    async def wait(self, timeout: Optional[float] = None) -> "DispatchTicket":
        await asyncio.wait_for(self.done.wait(), timeout=timeout)
        return self

    def add_done_callback(self, callback: Callable[["DispatchTicket"], Any]) -> None:
        """Call ``callback(ticket)`` once the job is acknowledged or failed"""
        if self.done.is_set():
            callback(self)
        else:
            self._callbacks.append(callback)

    def settle(self) -> None:
        self.done.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"Done callback raised for {self.job.execution_id}")


JobHandler = Callable[[DispatchJob], Awaitable[Any]]
FailureHandler = Callable[[DispatchTicket], Any]


class DispatchQueue:
    """asyncio queue with worker tasks, retries and acknowledgement"""

    def __init__(
        self,
        handler: JobHandler,
        max_attempts: int = 3,
        retry_delay_ms: int = 500,
        workers: int = 1,
        on_failure: Optional[FailureHandler] = None,
        history: int = 100,
    ):
        self.handler = handler
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_ms = retry_delay_ms
        self.worker_count = max(1, workers)
        self.on_failure = on_failure
        # Most recent settled tickets only
        self.failures: Deque[DispatchTicket] = deque(maxlen=history)
        self.acknowledged: Deque[DispatchTicket] = deque(maxlen=history)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    def submit(self, job: DispatchJob) -> DispatchTicket:
        """
        Queue a job and return immediately.

        Must be called from a running event loop; workers start lazily.
        """
        self._ensure_workers()
        ticket = DispatchTicket(job=job)
        self._queue.put_nowait(ticket)
        logger.debug(f"Queued {job.kind} job for {job.execution_id}")
        return ticket

    def _ensure_workers(self) -> None:
        loop = asyncio.get_running_loop()
        alive = [w for w in self._workers if not w.done() and w.get_loop() is loop]
        if self._queue is None or not alive:
            self._queue = asyncio.Queue()
            self._workers = [
                loop.create_task(self._worker(i)) for i in range(self.worker_count)
            ]

    async def _worker(self, index: int):
        queue = self._queue
        while True:
            ticket = await queue.get()
            try:
                await self._process(ticket)
            finally:
                queue.task_done()

    async def _process(self, ticket: DispatchTicket):
        job = ticket.job
        while True:
            ticket.attempts += 1
            try:
                ticket.result = await self.handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                ticket.error = f"{e.__class__.__name__}: {e}"
                if ticket.attempts < self.max_attempts:
                    logger.warning(
                        f"Dispatch of {job.execution_id} failed (attempt {ticket.attempts}/"
                        f"{self.max_attempts}): {ticket.error}"
                    )
                    await asyncio.sleep(self.retry_delay_ms / 1000)
                    continue

                logger.error(
                    f"Dispatch of {job.execution_id} failed after {ticket.attempts} attempts: {ticket.error}"
                )
                ticket.failed = True
                self.failures.append(ticket)
                await self._notify_failure(ticket)
                ticket.settle()
                return

            ticket.acknowledged = True
            ticket.error = None
            self.acknowledged.append(ticket)
            ticket.settle()
            return

    async def _notify_failure(self, ticket: DispatchTicket):
        if self.on_failure is None:
            return
        try:
            result = self.on_failure(ticket)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Failure handler raised for {ticket.job.execution_id}")

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def join(self):
        """Wait until every submitted job is acknowledged or failed"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        """Stop the worker tasks"""
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
