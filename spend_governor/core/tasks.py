"""
Background task queue for side effects off the request path.

Messages are published to a topic and handled by a single worker with a
bounded retry policy. Handler failures are logged, never raised to the
publisher.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay * 2**(attempt - 1), capped."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass
class _Message:
    topic: str
    payload: Any
    attempt: int = 1


@dataclass
class TaskQueueStats:
    published: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dropped_topics: Dict[str, int] = field(default_factory=dict)


class TaskQueue:
    """In-process async queue with per-topic handlers.

    When the worker is not running, ``publish`` runs the handler inline so
    callers without an event-loop lifecycle still get their side effects.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, maxsize: int = 1000):
        self.retry_policy = retry_policy or RetryPolicy()
        self.stats = TaskQueueStats()
        self._handlers: Dict[str, Handler] = {}
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def register(self, topic: str, handler: Handler) -> None:
        """Register the handler for a topic, replacing any previous one."""
        self._handlers[topic] = handler

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._worker = asyncio.create_task(self._run(), name="spend-governor-tasks")

    async def stop(self) -> None:
        """Drain pending messages and stop the worker."""
        if not self.running:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None

    async def publish(self, topic: str, payload: Any) -> None:
        """Publish a message; never raises for handler failures."""
        if topic not in self._handlers:
            self.stats.dropped_topics[topic] = self.stats.dropped_topics.get(topic, 0) + 1
            logger.warning("No handler registered for topic %r, message dropped", topic)
            return

        self.stats.published += 1
        message = _Message(topic=topic, payload=payload)
        if self.running:
            try:
                self._queue.put_nowait(message)
                return
            except asyncio.QueueFull:
                logger.warning("Task queue full, handling %r inline", topic)
        await self._handle(message, inline=True)

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._handle(message, inline=False)
            finally:
                self._queue.task_done()

    async def _handle(self, message: _Message, inline: bool) -> None:
        handler = self._handlers[message.topic]
        policy = self.retry_policy
        while True:
            try:
                await handler(message.payload)
                self.stats.succeeded += 1
                return
            except Exception:
                if message.attempt >= policy.max_attempts:
                    self.stats.failed += 1
                    logger.exception(
                        "Task %r failed after %d attempts", message.topic, message.attempt
                    )
                    return
                self.stats.retried += 1
                logger.warning(
                    "Task %r failed (attempt %d/%d), retrying",
                    message.topic, message.attempt, policy.max_attempts,
                )
                await asyncio.sleep(policy.delay_for(message.attempt))
                message.attempt += 1
