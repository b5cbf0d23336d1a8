"""Single ordered outbound queue for the messaging platform.

All destinations share one FIFO so the bot account's send rate is respected
globally. A throttled head entry blocks everything behind it until it is
retried successfully or its retry budget runs out.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Optional

from api.metrics import metrics
from delivery.telegram_client import DeliveryFailed, DeliveryThrottled


logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    destination: str
    text: Optional[str] = None
    image: Optional[bytes] = None
    caption: Optional[str] = None
    enqueued_at: float = field(default_factory=time.time)
    throttle_retries: int = 0

    @property
    def is_image(self) -> bool:
        return self.image is not None


class DeliveryQueue:
    def __init__(
        self,
        sender,
        min_interval_s: float = 1.0,
        default_retry_after_s: float = 5.0,
        max_throttle_retries: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sender = sender
        self.min_interval_s = min_interval_s
        self.default_retry_after_s = default_retry_after_s
        self.max_throttle_retries = max_throttle_retries
        self._clock = clock
        self._sleep = sleep
        self._entries: Deque[QueueEntry] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._last_sent_at: Optional[float] = None

    @property
    def depth(self) -> int:
        return len(self._entries)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue_text(self, destination: str, text: str) -> None:
        self._enqueue(QueueEntry(destination=str(destination), text=text))

    def enqueue_image(self, destination: str, image: bytes, caption: Optional[str] = None) -> None:
        self._enqueue(QueueEntry(destination=str(destination), image=image, caption=caption))

    def _enqueue(self, entry: QueueEntry) -> None:
        self._entries.append(entry)
        metrics.update_queue_depth(len(self._entries))
        if not self.is_draining:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _wait_for_slot(self) -> None:
        if self._last_sent_at is None:
            return
        elapsed = self._clock() - self._last_sent_at
        if elapsed < self.min_interval_s:
            await self._sleep(self.min_interval_s - elapsed)

    async def _send(self, entry: QueueEntry) -> None:
        started = time.perf_counter()
        try:
            if entry.is_image:
                await self.sender.send_photo(entry.destination, entry.image, entry.caption)
            else:
                await self.sender.send_message(entry.destination, entry.text)
        finally:
            metrics.record_send_latency(time.perf_counter() - started)

    def _finish(self, outcome: str, wait_seconds: Optional[float] = None) -> None:
        self._entries.popleft()
        metrics.record_delivery(outcome, wait_seconds)
        metrics.update_queue_depth(len(self._entries))

    async def _drain(self) -> None:
        try:
            while self._entries:
                entry = self._entries[0]
                await self._wait_for_slot()
                try:
                    await self._send(entry)
                except DeliveryThrottled as exc:
                    metrics.record_throttle()
                    entry.throttle_retries += 1
                    if entry.throttle_retries > self.max_throttle_retries:
                        logger.error(
                            "Dropping message to %s after %s throttled attempts",
                            entry.destination,
                            entry.throttle_retries,
                        )
                        self._finish('abandoned')
                        continue
                    retry_after = exc.retry_after if exc.retry_after is not None else self.default_retry_after_s
                    logger.warning(
                        "Rate limited sending to %s, waiting %ss (attempt %s)",
                        entry.destination,
                        retry_after,
                        entry.throttle_retries,
                    )
                    await self._sleep(float(retry_after))
                    continue
                except DeliveryFailed as exc:
                    logger.error("Dropping message to %s: %s", entry.destination, exc)
                    self._finish('failed')
                    continue
                except Exception:
                    logger.exception("Unexpected error sending to %s; dropping message", entry.destination)
                    self._finish('failed')
                    continue

                self._last_sent_at = self._clock()
                self._finish('sent', max(0.0, time.time() - entry.enqueued_at))
                logger.debug("Delivered %s to %s", 'image' if entry.is_image else 'text', entry.destination)
        finally:
            self._drain_task = None

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until the queue is idle; returns False if ``timeout`` expired first."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._drain_task is not None:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            try:
                await asyncio.wait_for(asyncio.shield(self._drain_task), remaining)
            except asyncio.TimeoutError:
                return False
        return not self._entries

    async def close(self) -> None:
        task = self._drain_task
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._entries:
            logger.warning("Delivery queue closed with %s undelivered entries", len(self._entries))
