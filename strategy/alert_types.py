import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

TICKER_SEPARATORS = re.compile(r"[\s/\-_.:]+")
STRATEGY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")

WIN_TOKENS = ('WIN', 'WON')
LOSS_TOKENS = ('LOSS', 'LOST')
OUTCOME_TOKENS = WIN_TOKENS + LOSS_TOKENS


def normalize_ticker(raw: Any) -> str:
    return TICKER_SEPARATORS.sub('', str(raw or '')).upper()


def normalize_strategy(raw: Any) -> str:
    """Lowercase a strategy name and reject anything outside the key-safe alphabet."""
    value = str(raw).strip().lower()
    if not STRATEGY_PATTERN.match(value):
        raise ValueError(f"invalid strategy name: {raw!r}")
    return value


class AlertKind(Enum):
    OPENING = "opening"
    RESULT = "result"


class Outcome(Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    RESULT = "RESULT"


@dataclass
class Alert:
    """Normalized inbound webhook alert."""

    ticker: str
    signal: str
    strategy: str
    price: Optional[float] = None
    origin: Optional[str] = None
    chat_id: Optional[str] = None
    time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def forward_payload(self) -> Dict[str, Any]:
        """The inbound body (secrets already removed) with the normalized fields applied."""
        data: Dict[str, Any] = dict(self.raw)
        data.update(ticker=self.ticker, signal=self.signal, strategy=self.strategy, price=self.price)
        if self.time is not None:
            data["time"] = self.time
        else:
            data.pop("time", None)
        return data


@dataclass
class Correlation:
    """Outcome of pairing an alert with the stored opening direction."""

    kind: AlertKind
    ticker: str
    strategy: str
    key: str
    price: Optional[float] = None
    opening_direction: Optional[str] = None
    outcome: Optional[Outcome] = None
    history_found: bool = True

    @property
    def is_result(self) -> bool:
        return self.kind is AlertKind.RESULT

    @property
    def is_win(self) -> bool:
        return self.outcome is Outcome.WIN
