import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.alerts_admitted = Counter('alerts_admitted_total', 'Webhook alerts admitted', ['strategy'])
        self.alerts_rejected = Counter('alerts_rejected_total', 'Webhook alerts rejected at admission', ['reason'])
        self.alerts_ignored = Counter('alerts_ignored_total', 'Admitted alerts skipped while the system is stopped')
        self.processing_errors = Counter('alert_processing_errors_total', 'Alerts whose background processing raised')

        self.correlations = Counter('correlations_total', 'Correlated alerts', ['kind', 'outcome'])
        self.correlation_misses = Counter('correlation_history_misses_total', 'Result alerts without a stored opening')

        self.broadcasts = Counter('broadcasts_total', 'Broadcast requests', ['strategy', 'status'])
        self.deliveries = Counter('deliveries_total', 'Delivery queue terminal outcomes', ['outcome'])
        self.throttles = Counter('delivery_throttles_total', 'Throttling responses from the messaging platform')
        self.queue_depth = Gauge('delivery_queue_depth', 'Entries waiting in the delivery queue')
        self.send_latency = Histogram('delivery_send_latency_seconds', 'Latency of a single platform send call')
        self.queue_wait = Histogram(
            'delivery_queue_wait_seconds',
            'Time from enqueue to successful send',
            buckets=(0.5, 1, 2, 5, 10, 30, 60, 120),
        )

        self.charts = Counter('charts_rendered_total', 'Chart render attempts', ['status'])
        self.relay_posts = Counter('relay_posts_total', 'Outbound relay calls', ['target', 'status'])

    def record_admitted(self, strategy: str):
        self.alerts_admitted.labels(strategy=strategy).inc()

    def record_rejected(self, reason: str):
        self.alerts_rejected.labels(reason=reason).inc()

    def record_ignored(self):
        self.alerts_ignored.inc()

    def record_processing_error(self):
        self.processing_errors.inc()

    def record_correlation(self, kind: str, outcome: Optional[str] = None, history_found: bool = True):
        self.correlations.labels(kind=kind, outcome=outcome or 'none').inc()
        if not history_found:
            self.correlation_misses.inc()

    def record_broadcast(self, strategy: str, delivered: bool):
        self.broadcasts.labels(strategy=strategy, status='queued' if delivered else 'no_destinations').inc()

    def record_delivery(self, outcome: str, wait_seconds: Optional[float] = None):
        self.deliveries.labels(outcome=outcome).inc()
        if wait_seconds is not None:
            self.queue_wait.observe(wait_seconds)

    def record_throttle(self):
        self.throttles.inc()

    def record_send_latency(self, latency_seconds: float):
        self.send_latency.observe(latency_seconds)

    def update_queue_depth(self, depth: int):
        self.queue_depth.set(depth)

    def record_chart(self, status: str):
        self.charts.labels(status=status).inc()

    def record_relay(self, target: str, ok: bool):
        self.relay_posts.labels(target=target, status='ok' if ok else 'failed').inc()


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
