import logging
import time
from typing import Any, Dict, List, Optional

from api.admission import AdmissionGate, FixedWindowRateLimiter
from api.metrics import start_metrics_server
from charts.renderer import ChartRenderer
from config import config
from config.config_loader import SectionProxy
from delivery.queue import DeliveryQueue
from delivery.relays import ExecutorRelay, ForwardingRelay
from delivery.telegram_client import TelegramClient
from monitoring.logging_utils import setup_logging
from orchestration.broadcast import Broadcaster
from orchestration.pipeline import AlertPipeline
from orchestration.registry import DestinationRegistry
from storage.state_store import StateStore
from strategy.alert_types import normalize_strategy
from strategy.correlator import SignalCorrelator


logger = logging.getLogger(__name__)


def _section(source: Any, name: str) -> SectionProxy:
    if isinstance(source, dict):
        value = source.get(name)
        return SectionProxy(value if isinstance(value, dict) else {})
    return source.section(name)


def _split_destinations(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [part.strip() for part in str(raw).split(',') if part.strip()]


class SignalRelay:
    """Build the relay's long-lived services once and own their lifecycle."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        store: Optional[StateStore] = None,
        sender: Optional[Any] = None,
        renderer: Optional[ChartRenderer] = None,
        queue_kwargs: Optional[Dict[str, Any]] = None,
    ):
        self.config = config_obj if config_obj is not None else config
        webhook_cfg = _section(self.config, 'webhook')
        redis_cfg = _section(self.config, 'redis')
        telegram_cfg = _section(self.config, 'telegram')
        delivery_cfg = _section(self.config, 'delivery')
        correlation_cfg = _section(self.config, 'correlation')
        forwarding_cfg = _section(self.config, 'forwarding')
        executor_cfg = _section(self.config, 'executor')
        charts_cfg = _section(self.config, 'charts')
        admin_cfg = _section(self.config, 'admin')
        self.monitoring_cfg = _section(self.config, 'monitoring')

        self.default_strategy = normalize_strategy(webhook_cfg.get('default_strategy', 'vip'))
        self.admin_secret: Optional[str] = admin_cfg.get('secret')
        self.shutdown_grace_s = float(delivery_cfg.get('shutdown_grace_s', 10))

        self.store = store or StateStore(
            url=redis_cfg.get('url'),
            timeout_s=float(redis_cfg.get('timeout_s', 5)),
        )
        self.sender = sender or TelegramClient(
            telegram_cfg.get('bot_token'),
            api_base=telegram_cfg.get('api_base', 'https://api.telegram.org'),
            timeout_s=float(telegram_cfg.get('timeout_s', 10)),
        )
        self.queue = DeliveryQueue(
            self.sender,
            min_interval_s=float(delivery_cfg.get('min_interval_s', 1.0)),
            default_retry_after_s=float(delivery_cfg.get('default_retry_after_s', 5.0)),
            max_throttle_retries=int(delivery_cfg.get('max_throttle_retries', 10)),
            **(queue_kwargs or {}),
        )
        self.registry = DestinationRegistry(
            self.store,
            self.default_strategy,
            _split_destinations(telegram_cfg.get('static_destinations')),
        )
        self.broadcaster = Broadcaster(self.registry, self.queue)
        self.correlator = SignalCorrelator(
            self.store,
            self.default_strategy,
            str(correlation_cfg.get('default_direction', 'BUY')),
        )
        self.gate = AdmissionGate(
            self.default_strategy,
            FixedWindowRateLimiter(
                limit=int(webhook_cfg.get('rate_limit', 30)),
                window_s=float(webhook_cfg.get('rate_window_s', 60)),
            ),
            secret=webhook_cfg.get('secret'),
            require_routing_id=bool(webhook_cfg.get('require_routing_id', False)),
        )
        self.renderer = renderer or ChartRenderer(
            enabled=bool(charts_cfg.get('enabled', True)),
            duration_minutes=int(charts_cfg.get('duration_minutes', 5)),
            timeout_s=float(charts_cfg.get('timeout_s', 10)),
        )
        self.pipeline = AlertPipeline(
            self.store,
            self.correlator,
            self.broadcaster,
            renderer=self.renderer,
            forwarder=ForwardingRelay(forwarding_cfg.get('url'), float(forwarding_cfg.get('timeout_s', 5))),
            executor=ExecutorRelay(
                executor_cfg.get('url'),
                executor_cfg.get('secret'),
                float(executor_cfg.get('timeout_s', 5)),
            ),
            default_strategy=self.default_strategy,
            allow_direct_routing=bool(webhook_cfg.get('allow_direct_routing', False)),
        )

        self.started_at = time.monotonic()
        self.running = False

    @property
    def uptime_s(self) -> float:
        return time.monotonic() - self.started_at

    async def start(self):
        self.started_at = time.monotonic()
        await self.store.connect()
        if not getattr(self.sender, 'enabled', True):
            logger.warning("TELEGRAM_BOT_TOKEN not set - deliveries will be dropped")
        port = int(self.monitoring_cfg.get('prometheus_port', 0) or 0)
        if port:
            start_metrics_server(port)
        self.running = True
        logger.info("Signal relay started (default strategy '%s')", self.default_strategy)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if not await self.queue.join(self.shutdown_grace_s):
            logger.warning("Delivery queue did not drain within %ss", self.shutdown_grace_s)
        await self.queue.close()
        close = getattr(self.sender, 'close', None)
        if close is not None:
            await close()
        await self.store.close()
        logger.info("Signal relay stopped")


if __name__ == "__main__":
    import uvicorn
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    api_cfg = config.section('api')
    uvicorn.run(
        "api.fastapi_server:app",
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 3000)),
        log_level="info"
    )
