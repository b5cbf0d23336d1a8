import asyncio
import logging
from typing import Optional

from api.metrics import metrics
from charts.renderer import ChartRenderer
from delivery.relays import ExecutorRelay, ForwardingRelay
from orchestration.broadcast import Broadcaster
from storage.state_store import StateStore
from strategy.alert_types import Alert, Correlation
from strategy.correlator import SignalCorrelator
from strategy.formatting import format_opening, format_result


logger = logging.getLogger(__name__)


class AlertPipeline:
    """Runs an admitted alert through correlation, formatting and broadcast.

    ``handle`` is the boundary after the webhook has been acknowledged:
    nothing raised below it reaches the HTTP caller.
    """

    def __init__(
        self,
        store: StateStore,
        correlator: SignalCorrelator,
        broadcaster: Broadcaster,
        renderer: Optional[ChartRenderer] = None,
        forwarder: Optional[ForwardingRelay] = None,
        executor: Optional[ExecutorRelay] = None,
        default_strategy: str = 'vip',
        allow_direct_routing: bool = False,
        render_timeout_s: float = 15.0,
    ):
        self.store = store
        self.correlator = correlator
        self.broadcaster = broadcaster
        self.renderer = renderer
        self.forwarder = forwarder
        self.executor = executor
        self.default_strategy = default_strategy
        self.allow_direct_routing = allow_direct_routing
        self.render_timeout_s = render_timeout_s

    async def handle(self, alert: Alert) -> None:
        try:
            await self.process(alert)
        except Exception:
            logger.exception("Alert processing failed for %s/%s", alert.strategy, alert.ticker)
            metrics.record_processing_error()

    async def process(self, alert: Alert) -> Optional[Correlation]:
        if not await self.store.get_system_active():
            logger.info("System inactive - ignoring %s signal for %s", alert.signal, alert.ticker)
            metrics.record_ignored()
            return None

        correlation = await self.correlator.correlate(alert)
        metrics.record_correlation(
            correlation.kind.value,
            correlation.outcome.value if correlation.outcome else None,
            correlation.history_found,
        )
        if correlation.is_result:
            await self._handle_result(alert, correlation)
        else:
            await self._handle_opening(alert, correlation)
        return correlation

    async def _deliver(self, alert: Alert, text: str, image: Optional[bytes] = None) -> bool:
        if self.allow_direct_routing and alert.chat_id:
            self.broadcaster.send_to(alert.chat_id, text, image)
            return True
        return await self.broadcaster.broadcast(alert.strategy, text, image)

    def _executor_key(self, correlation: Correlation) -> str:
        return f"executor:{correlation.key}"

    def _uses_executor(self, alert: Alert) -> bool:
        return self.executor is not None and self.executor.enabled and alert.strategy == self.default_strategy

    async def _handle_opening(self, alert: Alert, correlation: Correlation) -> None:
        message = format_opening(correlation, alert.signal, alert.time)
        if await self._deliver(alert, message):
            logger.info("Opening %s %s queued for '%s'", alert.ticker, alert.signal, alert.strategy)

        if self.forwarder is not None:
            await self.forwarder.forward(alert.forward_payload())

        if self._uses_executor(alert):
            signal_id = await self.executor.create_signal(alert)
            if signal_id:
                await self.store.set(self._executor_key(correlation), signal_id)

    async def _handle_result(self, alert: Alert, correlation: Correlation) -> None:
        message = format_result(correlation)
        image = await self._render_chart(correlation)
        if await self._deliver(alert, message, image):
            logger.info(
                "Result %s for %s queued for '%s' (%s)",
                correlation.outcome.value,
                alert.ticker,
                alert.strategy,
                'chart' if image is not None else 'text only',
            )

        if self._uses_executor(alert):
            signal_id = await self.store.get(self._executor_key(correlation))
            await self.executor.send_result(signal_id, correlation.outcome)

    async def _render_chart(self, correlation: Correlation) -> Optional[bytes]:
        if self.renderer is None:
            return None
        context = {
            'is_win': correlation.is_win,
            'price': correlation.price,
            'opening_direction': correlation.opening_direction,
        }
        try:
            return await asyncio.wait_for(
                self.renderer.render(correlation.ticker, context), self.render_timeout_s
            )
        except Exception as exc:
            logger.warning("Chart renderer failed for %s, sending text only: %s", correlation.ticker, exc)
            return None
