"""Bounded channel between the strategy monitor and trigger consumers.

The monitor ``publish``es StrategyTrigger events; a consumer task drains
them with ``consume``. The queue is bounded: when it is full, ``publish``
waits (back-pressure on the monitor) instead of dropping events.

Delivery is at-least-once: if the handler raises, the same trigger is
handed to it again after ``retry_delay`` seconds, up to ``max_attempts``
attempts in total, before it is dropped with an error log.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from core.models.strategy import StrategyTrigger

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[StrategyTrigger], Awaitable[None]]


class TriggerChannel:
    """Bounded asyncio queue of strategy triggers."""

    def __init__(self, maxsize: int = 1000, max_attempts: int = 3, retry_delay: float = 0.5):
        self._queue: asyncio.Queue[StrategyTrigger] = asyncio.Queue(maxsize=maxsize)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.published = 0
        self.delivered = 0
        self.dropped = 0

    async def publish(self, trigger: StrategyTrigger) -> None:
        """Enqueue a trigger, waiting while the channel is full."""
        await self._queue.put(trigger)
        self.published += 1

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> StrategyTrigger:
        return await self._queue.get()

    async def _deliver(self, trigger: StrategyTrigger, handler: TriggerHandler) -> bool:
        while True:
            trigger.attempts += 1
            try:
                await handler(trigger)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if trigger.attempts >= self.max_attempts:
                    logger.error(
                        f"Dropping trigger for strategy {trigger.strategy_id} after "
                        f"{trigger.attempts} failed attempts: {e}"
                    )
                    return False
                logger.warning(
                    f"Trigger delivery failed for strategy {trigger.strategy_id} "
                    f"(attempt {trigger.attempts}/{self.max_attempts}): {e}"
                )
                await asyncio.sleep(self.retry_delay)

    async def consume(self, handler: TriggerHandler) -> None:
        """Deliver triggers to ``handler`` until cancelled."""
        while True:
            trigger = await self._queue.get()
            try:
                if await self._deliver(trigger, handler):
                    self.delivered += 1
                else:
                    self.dropped += 1
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued trigger has been handled."""
        await self._queue.join()

    def stats(self) -> dict[str, int]:
        return {
            "queued": self.qsize(),
            "published": self.published,
            "delivered": self.delivered,
            "dropped": self.dropped,
        }
