"""
Usage recording.

Appends one immutable UsageEvent per metered call attempt. Metering must
never break the caller's primary response, so store failures are logged
and swallowed; during a store outage spend is under-counted.
"""

import asyncio
import logging
from typing import Optional

from spend_governor.core.policy import REEVALUATE_TOPIC
from spend_governor.core.tasks import TaskQueue
from spend_governor.storage.models import UsageEvent
from spend_governor.storage.repository import GovernanceRepository

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Writes usage events and queues a budget re-evaluation."""

    def __init__(self, repository: GovernanceRepository, tasks: Optional[TaskQueue] = None):
        self._repository = repository
        self._tasks = tasks

    async def record(self, event: UsageEvent) -> bool:
        """Append a usage event to the ledger.

        Args:
            event: The usage event for one call attempt, failed or not

        Returns:
            True if the event was stored, False if the store failed
        """
        stored = True
        try:
            await asyncio.to_thread(self._repository.insert_usage_event, event)
        except Exception:
            stored = False
            logger.exception(
                "Failed to record usage event %s (%s/%s, $%.6f)",
                event.id, event.principal, event.model, event.cost,
            )

        if self._tasks is not None:
            await self._tasks.publish(REEVALUATE_TOPIC, event.principal)
        return stored
