"""Display text for relayed alerts (Telegram HTML parse mode)."""
import re
from html import escape
from typing import Optional

from strategy.alert_types import Correlation, Outcome

PAIR_FLAGS = {
    'EURUSD': '🇪🇺🇺🇸',
    'GBPUSD': '🇬🇧🇺🇸',
    'USDJPY': '🇺🇸🇯🇵',
    'AUDUSD': '🇦🇺🇺🇸',
    'USDCAD': '🇺🇸🇨🇦',
    'XAUUSD': '🥇🇺🇸',
}
DEFAULT_FLAG = '🎯'

BULLISH_WORDS = ('BUY', 'CALL', 'LONG', 'UP')
BEARISH_WORDS = ('SELL', 'PUT', 'SHORT', 'DOWN')
WORD_PATTERN = re.compile(r"[A-Z]+")

# checked in order so 15MIN is not read as 5MIN
TIMEFRAME_TOKENS = (
    ('15MIN', '15 MINUTES'),
    ('1MIN', '1 MINUTE'),
    ('3MIN', '3 MINUTES'),
    ('5MIN', '5 MINUTES'),
)
DEFAULT_TIMEFRAME = '1 MINUTE'

OUTCOME_BADGES = {
    Outcome.WIN: '🏆',
    Outcome.LOSS: '🚫',
    Outcome.RESULT: '📊',
}


def pair_flag(ticker: str) -> str:
    for pair, flag in PAIR_FLAGS.items():
        if ticker.startswith(pair):
            return flag
    return DEFAULT_FLAG


def direction_marker(direction: str) -> str:
    words = set(WORD_PATTERN.findall((direction or '').upper()))
    if words.intersection(BEARISH_WORDS):
        return '🔴'
    if words.intersection(BULLISH_WORDS):
        return '🟢'
    return '⚪'


def extract_timeframe(signal: str, seconds: Optional[int] = None) -> str:
    if seconds:
        minutes = max(1, int(seconds) // 60)
        return f"{minutes} MINUTE" if minutes == 1 else f"{minutes} MINUTES"
    text = (signal or '').upper()
    for token, label in TIMEFRAME_TOKENS:
        if token in text:
            return label
    return DEFAULT_TIMEFRAME


def format_price(price: Optional[float]) -> str:
    if price is None:
        return '-'
    return f"{price:.5f}".rstrip('0').rstrip('.')


def format_opening(correlation: Correlation, signal: str, seconds: Optional[int] = None) -> str:
    direction = escape(signal.upper())
    return (
        "⚡ <b>INCOMING SIGNAL</b>\n\n"
        f"{pair_flag(correlation.ticker)} <b>{escape(correlation.ticker)}</b>\n"
        f"{direction_marker(signal)} <b>{direction}</b>\n"
        f"⏰ <b>{extract_timeframe(signal, seconds)}</b>\n"
    )


def format_result(correlation: Correlation) -> str:
    outcome = correlation.outcome or Outcome.RESULT
    opening = correlation.opening_direction or ''
    lines = [
        f"{OUTCOME_BADGES[outcome]} <b>{outcome.value}</b>",
        "",
        f"{pair_flag(correlation.ticker)} <b>{escape(correlation.ticker)}</b>",
        f"{direction_marker(opening)} Entry: <b>{escape(opening.upper())}</b>",
    ]
    if correlation.price is not None:
        lines.append(f"💲 Close: <b>{format_price(correlation.price)}</b>")
    return "\n".join(lines) + "\n"
