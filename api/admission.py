import hmac
import logging
import math
import time
from typing import Any, Callable, Dict, Optional, Tuple

from strategy.alert_types import Alert, normalize_strategy, normalize_ticker


logger = logging.getLogger(__name__)

# legacy single-tenant route segment; carries no strategy
LEGACY_PATH_HINTS = frozenset({'tradingview'})
SECRET_FIELDS = ('secret', 'passphrase')


class AdmissionError(Exception):
    status_code = 400
    reason = 'invalid_payload'

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidPayload(AdmissionError):
    status_code = 400
    reason = 'invalid_payload'


class Unauthorized(AdmissionError):
    status_code = 401
    reason = 'unauthorized'


class RateLimited(AdmissionError):
    status_code = 429
    reason = 'rate_limited'


class FixedWindowRateLimiter:
    """At most ``limit`` hits per key within a window that opens on the key's first hit."""

    def __init__(self, limit: int = 30, window_s: float = 60.0, clock: Callable[[], float] = time.monotonic,
                 max_keys: int = 10000):
        self.limit = limit
        self.window_s = window_s
        self.max_keys = max_keys
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = self._clock()
        started, count = self._windows.get(key, (None, 0))
        if started is None or now - started >= self.window_s:
            self._windows.pop(key, None)
            if len(self._windows) >= self.max_keys:
                self._prune(now)
            self._windows[key] = (now, 1)
            return True
        if count >= self.limit:
            return False
        self._windows[key] = (started, count + 1)
        return True

    def _prune(self, now: float) -> None:
        """Drop expired windows; if every window is still live, evict the oldest ones."""
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window_s]
        for key in expired:
            del self._windows[key]
        # windows are reinserted when they reopen, so dict order is oldest first
        while len(self._windows) >= self.max_keys:
            oldest = next(iter(self._windows))
            logger.debug("Rate limiter full, evicting window for %s", oldest)
            del self._windows[oldest]


def _text_field(payload: Dict[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric price %r", value)
        return None
    return price if math.isfinite(price) else None


def _optional_duration(value: Any) -> Optional[int]:
    """Positive whole seconds, or None for anything unusable (``inf``, ``nan``, negatives)."""
    if value is None or value == '':
        return None
    try:
        seconds = int(float(value))
    except (TypeError, ValueError, OverflowError):
        logger.debug("Ignoring unusable duration %r", value)
        return None
    return seconds if seconds > 0 else None


class AdmissionGate:
    def __init__(
        self,
        default_strategy: str,
        rate_limiter: FixedWindowRateLimiter,
        secret: Optional[str] = None,
        require_routing_id: bool = False,
    ):
        self.default_strategy = default_strategy
        self.rate_limiter = rate_limiter
        self.secret = secret
        self.require_routing_id = require_routing_id

    def _check_secret(self, payload: Dict[str, Any], header_secret: Optional[str]) -> None:
        if not self.secret:
            return
        supplied = header_secret or next(
            (str(payload[name]) for name in SECRET_FIELDS if payload.get(name) is not None), None
        )
        if supplied is None or not hmac.compare_digest(supplied.encode(), self.secret.encode()):
            raise Unauthorized("Invalid webhook secret")

    def resolve_strategy(self, payload: Dict[str, Any], path_strategy: Optional[str]) -> str:
        candidate = _text_field(payload, 'strategy')
        if candidate is None and path_strategy and path_strategy.lower() not in LEGACY_PATH_HINTS:
            candidate = path_strategy
        if candidate is None:
            return self.default_strategy
        try:
            return normalize_strategy(candidate)
        except ValueError as exc:
            raise InvalidPayload(str(exc)) from exc

    def admit(
        self,
        payload: Any,
        origin: Optional[str],
        path_strategy: Optional[str] = None,
        header_secret: Optional[str] = None,
    ) -> Alert:
        if not isinstance(payload, dict):
            raise InvalidPayload("Invalid payload")

        self._check_secret(payload, header_secret)

        ticker = normalize_ticker(_text_field(payload, 'ticker'))
        signal = _text_field(payload, 'signal')
        chat_id = _text_field(payload, 'chat_id')
        if not ticker or not signal:
            raise InvalidPayload("Missing required fields")
        if self.require_routing_id and not (chat_id or _text_field(payload, 'strategy')):
            raise InvalidPayload("Missing required fields")

        strategy = self.resolve_strategy(payload, path_strategy)

        rate_key = f"{origin or 'unknown'}:{ticker}"
        if not self.rate_limiter.allow(rate_key):
            logger.warning("Rate limit exceeded for %s", rate_key)
            raise RateLimited("Rate limit exceeded")

        raw = {k: v for k, v in payload.items() if k not in SECRET_FIELDS}
        return Alert(
            ticker=ticker,
            signal=signal,
            strategy=strategy,
            price=_optional_float(payload.get('price')),
            origin=origin,
            chat_id=chat_id,
            time=_optional_duration(payload.get('time')),
            raw=raw,
        )
