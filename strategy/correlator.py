import logging
from typing import Optional

from storage.state_store import StateStore
from strategy.alert_types import (
    LOSS_TOKENS,
    OUTCOME_TOKENS,
    WIN_TOKENS,
    Alert,
    AlertKind,
    Correlation,
    Outcome,
)


logger = logging.getLogger(__name__)


class SignalCorrelator:
    """Pairs result alerts with the last opening direction seen for a ticker.

    Opening alerts overwrite the stored direction unconditionally and result
    alerts read it back. The read and the write are separate Redis calls, so
    two alerts for the same key racing each other resolve as last write wins.
    """

    def __init__(self, store: StateStore, default_strategy: str, default_direction: str = 'BUY'):
        self.store = store
        self.default_strategy = default_strategy
        self.default_direction = default_direction

    def correlation_key(self, strategy: str, ticker: str) -> str:
        # the default strategy keeps the un-namespaced keys written before tenants existed
        if strategy == self.default_strategy:
            return f"{ticker}:last_signal"
        return f"{strategy}:{ticker}:last_signal"

    @staticmethod
    def classify(signal: str) -> AlertKind:
        text = (signal or '').upper()
        if any(token in text for token in OUTCOME_TOKENS):
            return AlertKind.RESULT
        return AlertKind.OPENING

    @staticmethod
    def normalize_outcome(signal: str) -> Outcome:
        text = (signal or '').upper()
        if any(token in text for token in WIN_TOKENS):
            return Outcome.WIN
        if any(token in text for token in LOSS_TOKENS):
            return Outcome.LOSS
        return Outcome.RESULT

    async def correlate(self, alert: Alert) -> Correlation:
        key = self.correlation_key(alert.strategy, alert.ticker)
        kind = self.classify(alert.signal)

        if kind is AlertKind.OPENING:
            stored = await self.store.set(key, alert.signal)
            if not stored:
                logger.warning("Opening %s for %s not persisted; a later result will use the default", alert.signal, key)
            return Correlation(
                kind=kind,
                ticker=alert.ticker,
                strategy=alert.strategy,
                key=key,
                price=alert.price,
                opening_direction=alert.signal,
            )

        previous: Optional[str] = await self.store.get(key)
        history_found = previous is not None
        if not history_found:
            logger.info("No opening stored under %s; assuming %s", key, self.default_direction)
        outcome = self.normalize_outcome(alert.signal)
        logger.info("Result %s for %s correlated with opening %s", outcome.value, key, previous or self.default_direction)
        return Correlation(
            kind=kind,
            ticker=alert.ticker,
            strategy=alert.strategy,
            key=key,
            price=alert.price,
            opening_direction=previous if history_found else self.default_direction,
            outcome=outcome,
            history_found=history_found,
        )
