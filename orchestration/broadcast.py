import logging
from typing import Optional

from api.metrics import metrics
from delivery.queue import DeliveryQueue
from orchestration.registry import DestinationRegistry


logger = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, registry: DestinationRegistry, queue: DeliveryQueue):
        self.registry = registry
        self.queue = queue

    async def broadcast(self, strategy: str, text: str, image: Optional[bytes] = None) -> bool:
        """Queue ``text`` (or ``image`` captioned with it) for every destination of ``strategy``.

        Returns as soon as the entries are queued, not when they are delivered.
        """
        destinations = await self.registry.resolve(strategy)
        if not destinations:
            logger.warning("No destinations registered for strategy '%s'", strategy)
            metrics.record_broadcast(strategy, False)
            return False

        for destination in destinations:
            self.send_to(destination, text, image)
        logger.info("Queued broadcast for '%s' to %s destination(s)", strategy, len(destinations))
        metrics.record_broadcast(strategy, True)
        return True

    def send_to(self, destination: str, text: str, image: Optional[bytes] = None) -> None:
        if image is not None:
            self.queue.enqueue_image(destination, image, text)
        else:
            self.queue.enqueue_text(destination, text)
