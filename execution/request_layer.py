"""
Resilient Request Layer
Single serialization point for every exchange call: FIFO queue, one worker,
minimum inter-call spacing, retry with exponential backoff and a one-shot
rate-limit cooldown.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger

from config import RequestConfig
from exchange.errors import ErrorKind, ExchangeError, RequestLayerClosed
from monitoring.metrics import EXCHANGE_REQUESTS, EXCHANGE_RETRIES, REQUEST_QUEUE_DEPTH

T = TypeVar("T")


@dataclass
class _QueuedCall:
    operation: str
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class ResilientRequestLayer:
    """
    Wraps exchange calls with retry/backoff and rate-limited serialization.

    Callers simply `await layer.submit("fetch_price", adapter.fetch_price, sym)`;
    the queue and worker are managed internally.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0,
                 rate_limit_cooldown: float = 60.0, min_spacing: float = 0.2,
                 max_queue_size: int = 256,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None,
                 clock: Optional[Callable[[], float]] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.min_spacing = min_spacing
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._worker_task: Optional[asyncio.Task] = None
        self._closed = False
        self._last_call_at: Optional[float] = None
        self._stats = {"submitted": 0, "succeeded": 0, "failed": 0,
                       "retries": 0, "rate_limited": 0}

    @classmethod
    def from_config(cls, cfg: RequestConfig) -> "ResilientRequestLayer":
        return cls(max_attempts=cfg.max_attempts, base_delay=cfg.base_delay_sec,
                   rate_limit_cooldown=cfg.rate_limit_cooldown_sec,
                   min_spacing=cfg.min_spacing_sec, max_queue_size=cfg.max_queue_size)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the worker (idempotent). Must be called from a running loop."""
        if self._closed:
            raise RequestLayerClosed("request layer already stopped")
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker(), name="request-layer")
            logger.info(f"Request layer started (attempts={self.max_attempts}, "
                        f"base={self.base_delay}s, spacing={self.min_spacing}s)")

    async def stop(self) -> None:
        """Refuse new work, then let queued and in-flight calls finish."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None and not self._worker_task.done():
            await self._queue.put(None)
            await self._worker_task
        logger.info(f"Request layer stopped: {self.get_stats()}")

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    # ── Public API ───────────────────────────────────────────────────────

    async def submit(self, operation: str, fn: Callable[..., Awaitable[T]],
                     *args, **kwargs) -> T:
        """Enqueue a call and await its eventual result or error."""
        if self._closed:
            raise RequestLayerClosed(f"cannot submit {operation}: request layer stopped")
        self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_QueuedCall(operation, lambda: fn(*args, **kwargs), future))
        self._stats["submitted"] += 1
        REQUEST_QUEUE_DEPTH.set(self._queue.qsize())
        return await future

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "queue_depth": self._queue.qsize()}

    # ── Worker ───────────────────────────────────────────────────────────

    async def _worker(self) -> None:
        while True:
            call = await self._queue.get()
            REQUEST_QUEUE_DEPTH.set(self._queue.qsize())
            if call is None:
                self._queue.task_done()
                break
            if call.future.cancelled():
                self._queue.task_done()
                continue
            try:
                result = await self._execute_with_retry(call.operation, call.fn)
            except Exception as e:
                self._stats["failed"] += 1
                EXCHANGE_REQUESTS.labels(call.operation, "error").inc()
                if not call.future.done():
                    call.future.set_exception(e)
            else:
                self._stats["succeeded"] += 1
                EXCHANGE_REQUESTS.labels(call.operation, "ok").inc()
                if not call.future.done():
                    call.future.set_result(result)
            finally:
                self._queue.task_done()

    async def _pace(self) -> None:
        """Enforce the minimum spacing between consecutive exchange calls."""
        if self._last_call_at is not None and self.min_spacing > 0:
            wait = self.min_spacing - (self._clock() - self._last_call_at)
            if wait > 0:
                await self._sleep(wait)
        self._last_call_at = self._clock()

    async def _execute_with_retry(self, operation: str,
                                  fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        rate_limit_retry_used = False
        while True:
            attempt += 1
            await self._pace()
            try:
                return await fn()
            except ExchangeError as e:
                if e.kind is ErrorKind.RATE_LIMIT:
                    if rate_limit_retry_used:
                        logger.error(f"{operation}: still rate limited after cooldown")
                        raise
                    rate_limit_retry_used = True
                    attempt -= 1  # cooldown retry does not consume the budget
                    self._stats["rate_limited"] += 1
                    EXCHANGE_RETRIES.labels(operation, "rate_limit").inc()
                    logger.warning(f"⏳ Rate limit hit on {operation}, "
                                   f"waiting {self.rate_limit_cooldown:.0f}s...")
                    await self._sleep(self.rate_limit_cooldown)
                    continue
                if not e.retryable:
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"{operation}: giving up after {attempt} attempts: {e}")
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                self._stats["retries"] += 1
                EXCHANGE_RETRIES.labels(operation, e.kind.value).inc()
                logger.warning(f"⚠️  {operation} failed ({e.kind.value}), retrying in "
                               f"{delay:.2f}s... ({attempt}/{self.max_attempts})")
                await self._sleep(delay)
