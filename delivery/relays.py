import logging
import re
from typing import Any, Dict, Optional

import aiohttp

from api.metrics import metrics
from strategy.alert_types import Alert, Outcome


logger = logging.getLogger(__name__)


def _configured(url: Optional[str]) -> bool:
    # Treat empty or placeholder URLs as disabled
    return bool(url) and 'your-' not in str(url) and not str(url).startswith('${')


async def _post_json(url: str, payload: Dict[str, Any], timeout_s: float,
                     headers: Optional[Dict[str, str]] = None) -> Optional[Any]:
    request_headers = {'Content-Type': 'application/json'}
    request_headers.update(headers or {})
    async with aiohttp.ClientSession() as session:
        async with session.post(
            url,
            json=payload,
            headers=request_headers,
            timeout=aiohttp.ClientTimeout(total=timeout_s)
        ) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(f"status {response.status}: {body[:200]}")
            try:
                return await response.json(content_type=None)
            except ValueError:
                return None


class ForwardingRelay:
    """Fire-and-forget copy of opening alerts to a secondary system."""

    def __init__(self, url: Optional[str], timeout_s: float = 5.0):
        self.url = url if _configured(url) else None
        self.enabled = self.url is not None
        self.timeout_s = timeout_s

    async def forward(self, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await _post_json(self.url, payload, self.timeout_s)
        except Exception as e:
            logger.error("[Forward] Failed to forward signal to %s: %s", self.url, e)
            metrics.record_relay('forwarding', False)
            return False
        logger.info("[Forward] Signal forwarded to %s", self.url)
        metrics.record_relay('forwarding', True)
        return True


class ExecutorRelay:
    """Reports opening signals and their results to the trade execution server."""

    def __init__(self, base_url: Optional[str], secret: Optional[str] = None, timeout_s: float = 5.0):
        self.base_url = base_url.rstrip('/') if _configured(base_url) else None
        self.enabled = self.base_url is not None
        self.secret = secret
        self.timeout_s = timeout_s

    def _headers(self) -> Dict[str, str]:
        return {'X-Admin-Secret': self.secret} if self.secret else {}

    @staticmethod
    def build_signal_payload(alert: Alert) -> Dict[str, Any]:
        raw_signal = (alert.signal or '').lower()
        action = 'buy' if 'buy' in raw_signal or 'call' in raw_signal else 'sell'

        if alert.time:
            duration = int(alert.time)
        elif '15min' in raw_signal:
            duration = 900
        elif '1min' in raw_signal:
            duration = 60
        elif '3min' in raw_signal:
            duration = 180
        else:
            duration = 300

        # OTC quotes execute against the real market symbol
        ticker = re.sub(r'OTC$', '', alert.ticker) or alert.ticker
        return {
            'ticker': ticker,
            'signal': action,
            'price': float(alert.price or 0),
            'time': duration,
        }

    async def create_signal(self, alert: Alert) -> Optional[str]:
        if not self.enabled:
            return None
        payload = self.build_signal_payload(alert)
        try:
            data = await _post_json(
                f"{self.base_url}/api/signals/create", payload, self.timeout_s, self._headers()
            )
        except Exception as e:
            logger.error("[Executor] Failed to create signal %s: %s", payload, e)
            metrics.record_relay('executor', False)
            return None
        signal_id = data.get('signalId') if isinstance(data, dict) else None
        metrics.record_relay('executor', signal_id is not None)
        if signal_id is None:
            logger.error("[Executor] Create response carried no signalId: %s", data)
            return None
        logger.info("[Executor] Signal created: %s", signal_id)
        return str(signal_id)

    async def send_result(self, signal_id: Optional[str], outcome: Outcome) -> bool:
        if not self.enabled or not signal_id:
            return False
        payload = {
            'signalId': signal_id,
            'signal': 'WIN' if outcome is Outcome.WIN else 'LOSS',
        }
        try:
            await _post_json(
                f"{self.base_url}/api/signals/result", payload, self.timeout_s, self._headers()
            )
        except Exception as e:
            logger.error("[Executor] Failed to report result for %s: %s", signal_id, e)
            metrics.record_relay('executor', False)
            return False
        logger.info("[Executor] Result %s reported for %s", payload['signal'], signal_id)
        metrics.record_relay('executor', True)
        return True
