import asyncio
import sys

sys.path.insert(0, '.')

from delivery.queue import DeliveryQueue
from delivery.telegram_client import DeliveryFailed, DeliveryThrottled
from tests.dummies import FakeClock, RecordingSender


def _queue(responses=None, **kwargs):
    clock = FakeClock()
    sender = RecordingSender(responses, clock=clock)
    queue = DeliveryQueue(sender, clock=clock, sleep=clock.sleep, **kwargs)
    return queue, sender, clock


def test_sends_in_fifo_order_across_destinations():
    async def _run():
        queue, sender, _ = _queue()
        queue.enqueue_text('-1', 'A')
        queue.enqueue_text('-2', 'B')
        queue.enqueue_text('-1', 'C')
        assert await queue.join(timeout=5)
        assert [(chat, text) for _, chat, text, _ in sender.sent] == [('-1', 'A'), ('-2', 'B'), ('-1', 'C')]
        assert queue.depth == 0
        assert not queue.is_draining

    asyncio.run(_run())


def test_spacing_between_successful_sends():
    async def _run():
        queue, sender, clock = _queue(min_interval_s=1.0)
        for text in ('A', 'B', 'C'):
            queue.enqueue_text('-1', text)
        await queue.join(timeout=5)
        stamps = [stamp for *_, stamp in sender.sent]
        assert stamps == [1000.0, 1001.0, 1002.0]
        assert clock.sleeps == [1.0, 1.0]

    asyncio.run(_run())


def test_no_wait_when_previous_send_is_old_enough():
    async def _run():
        queue, _, clock = _queue()
        queue.enqueue_text('-1', 'A')
        await queue.join(timeout=5)
        clock.advance(3)
        queue.enqueue_text('-1', 'B')
        await queue.join(timeout=5)
        assert clock.sleeps == []

    asyncio.run(_run())


def test_throttled_entry_is_retried_at_head():
    async def _run():
        queue, sender, clock = _queue([DeliveryThrottled(retry_after=7)])
        queue.enqueue_text('-1', 'A')
        queue.enqueue_text('-2', 'B')
        await queue.join(timeout=5)

        attempts = [text for _, _, text, _ in sender.attempts]
        assert attempts == ['A', 'A', 'B']
        assert [text for _, _, text, _ in sender.sent] == ['A', 'B']
        assert clock.sleeps == [7.0, 1.0]

    asyncio.run(_run())


def test_throttle_without_hint_waits_default():
    async def _run():
        queue, sender, clock = _queue([DeliveryThrottled(retry_after=None)], default_retry_after_s=5.0)
        queue.enqueue_text('-1', 'A')
        await queue.join(timeout=5)
        assert clock.sleeps == [5.0]
        assert len(sender.sent) == 1

    asyncio.run(_run())


def test_zero_retry_hint_retries_immediately():
    async def _run():
        queue, sender, clock = _queue([DeliveryThrottled(retry_after=0)], default_retry_after_s=5.0)
        queue.enqueue_text('-1', 'A')
        await queue.join(timeout=5)
        assert clock.sleeps == [0.0]
        assert [text for _, _, text, _ in sender.sent] == ['A']

    asyncio.run(_run())


def test_throttle_retries_are_bounded():
    async def _run():
        throttles = [DeliveryThrottled(retry_after=1) for _ in range(4)]
        queue, sender, _ = _queue(throttles, max_throttle_retries=2)
        queue.enqueue_text('-1', 'A')
        queue.enqueue_text('-1', 'B')
        await queue.join(timeout=5)
        assert [text for _, _, text, _ in sender.attempts] == ['A', 'A', 'A', 'B', 'B']
        assert [text for _, _, text, _ in sender.sent] == ['B']

    asyncio.run(_run())


def test_non_retryable_failure_drops_entry_and_continues():
    async def _run():
        queue, sender, clock = _queue([DeliveryFailed("bot was kicked", status=403), RuntimeError("boom")])
        queue.enqueue_text('-1', 'A')
        queue.enqueue_text('-2', 'B')
        queue.enqueue_text('-3', 'C')
        assert await queue.join(timeout=5)
        assert [text for _, _, text, _ in sender.attempts] == ['A', 'B', 'C']
        assert [text for _, _, text, _ in sender.sent] == ['C']
        # spacing only counts successful sends
        assert clock.sleeps == []

    asyncio.run(_run())


def test_single_drain_task_and_idle_transition():
    async def _run():
        queue, sender, _ = _queue()
        assert not queue.is_draining
        queue.enqueue_text('-1', 'A')
        first_task = queue._drain_task
        assert queue.is_draining
        queue.enqueue_text('-1', 'B')
        assert queue._drain_task is first_task
        assert queue.depth == 2

        await queue.join(timeout=5)
        assert not queue.is_draining

        queue.enqueue_image('-1', b'\x89PNG', 'caption')
        assert queue.is_draining
        assert queue._drain_task is not first_task
        await queue.join(timeout=5)
        assert sender.sent[-1][:3] == ('photo', '-1', 'caption')

    asyncio.run(_run())


def test_close_cancels_pending_entries():
    async def _run():
        blocker = asyncio.Event()

        class SlowSender(RecordingSender):
            async def send_message(self, chat_id, text):
                await blocker.wait()

        queue = DeliveryQueue(SlowSender())
        queue.enqueue_text('-1', 'A')
        assert not await queue.join(timeout=0.05)
        await queue.close()
        assert queue.depth == 1
        assert not queue.is_draining

    asyncio.run(_run())
