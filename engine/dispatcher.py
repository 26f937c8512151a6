"""
Bounded Dispatcher — runs a batch with at most K units in flight.

A fixed pool of K worker tasks drains a bounded asyncio.Queue of
(position, job) pairs; results land in a pre-sized list at their input
position, so the output order is the batch order, not completion order.
The batch completes when every worker has drained the queue.

Failure isolation: each unit is wrapped so that an exception or timeout
becomes a failed SendOutcome for that unit only. No retries in dispatch();
run_jobs() offers bounded retry for side operations (credential pre-flight).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import config
from engine.models import SendOutcome, SendRequest
from utils.logging_utils import async_retry_with_backoff

logger = logging.getLogger("mailfill.dispatcher")

_STOP = object()


async def _run_pool(jobs: Sequence[Any], concurrency: int, unit: Callable[[Any], Awaitable[Any]]) -> List[Any]:
    """Feed `jobs` through `concurrency` workers; `unit` must not raise."""
    results: List[Any] = [None] * len(jobs)
    if not jobs:
        return results

    workers_count = max(1, min(concurrency, len(jobs)))
    queue: asyncio.Queue = asyncio.Queue(maxsize=workers_count)

    async def worker():
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                position, job = item
                results[position] = await unit(job)
            finally:
                queue.task_done()

    workers = [asyncio.create_task(worker(), name=f"dispatch_worker_{n}") for n in range(workers_count)]
    try:
        for position, job in enumerate(jobs):
            await queue.put((position, job))
        for _ in workers:
            await queue.put(_STOP)
        await asyncio.gather(*workers)
    finally:
        for task in workers:
            if not task.done():
                task.cancel()
    return results


class Dispatcher:
    """
    Executes SendRequests through a send function with capped concurrency.

    Usage:
        dispatcher = Dispatcher(SmtpSender().send)
        outcomes = await dispatcher.dispatch(batch, concurrency=10)
    """

    def __init__(self, send: Callable[[SendRequest], Awaitable[SendOutcome]], timeout: float = None):
        self._send = send
        self.timeout = timeout or config.SEND_TIMEOUT_SECONDS

    async def _send_one(self, request: SendRequest) -> SendOutcome:
        try:
            outcome = await asyncio.wait_for(self._send(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            return SendOutcome.failed(f"Send timed out after {self.timeout:.0f}s ({request.sender.address})")
        except Exception as e:
            return SendOutcome.failed(f"{type(e).__name__}: {e}")
        if not isinstance(outcome, SendOutcome):
            return SendOutcome.failed(f"send returned {type(outcome).__name__}, expected SendOutcome")
        return outcome

    async def dispatch(self, requests: Sequence[SendRequest], concurrency: int) -> List[SendOutcome]:
        """Send every request once. Returns exactly len(requests) outcomes, in input order."""
        outcomes = await _run_pool(requests, concurrency, self._send_one)
        failed = sum(1 for o in outcomes if not o.success)
        logger.debug(
            "batch_dispatched",
            extra={"requests": len(requests), "concurrency": concurrency, "failed": failed},
        )
        return outcomes


class JobOutcome:
    """Result of one side-operation job: value on success, error text on failure."""

    __slots__ = ("success", "value", "error")

    def __init__(self, success: bool, value: Any = None, error: Optional[str] = None):
        self.success = success
        self.value = value
        self.error = error

    def __repr__(self):
        return f"JobOutcome(success={self.success}, error={self.error!r})"


async def run_jobs(
    jobs: Sequence[Any],
    action: Callable[[Any], Awaitable[Any]],
    concurrency: int = None,
    attempts: int = None,
    backoff_seconds: float = None,
) -> List[JobOutcome]:
    """
    Same pooling pattern as Dispatcher.dispatch, for side operations.

    Each job gets up to `attempts` tries with a fixed `backoff_seconds`
    between them. Outcomes are returned in input order.
    """
    concurrency = concurrency or config.PREFLIGHT_CONCURRENCY
    attempts = attempts or config.PREFLIGHT_ATTEMPTS
    backoff_seconds = config.PREFLIGHT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    def _log_retry(attempt, exc, delay):
        logger.info(f"job_retry: attempt {attempt} failed ({exc}), retrying in {delay:.0f}s")

    retrying = async_retry_with_backoff(
        max_retries=max(0, attempts - 1),
        initial_delay=backoff_seconds,
        backoff_factor=1.0,
        on_retry=_log_retry,
    )(action)

    async def unit(job) -> JobOutcome:
        try:
            return JobOutcome(True, value=await retrying(job))
        except Exception as e:
            return JobOutcome(False, error=f"{type(e).__name__}: {e}")

    return await _run_pool(jobs, concurrency, unit)
