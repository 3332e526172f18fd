"""Fire-and-forget hand-off to the notification collaborator."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED = "payment.confirmed"
REFUND_ISSUED = "refund.issued"


class Notifier(ABC):
    @abstractmethod
    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver ``event`` to the notification component."""


class LoggingNotifier(Notifier):
    """Default notifier: records events in the application log."""

    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("notification %s %s", event, payload)


class NotificationDispatcher:
    """Schedules notifications without ever blocking or failing the caller."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(
                self._deliver(event, payload)
            )
        except RuntimeError:
            logger.warning("No running loop; dropping notification %s", event)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self._notifier.publish(event, payload)
        except Exception:
            logger.exception("Notification %s failed; payload %s", event, payload)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
