"""Win/loss result charts built from recent one-minute closes."""
import asyncio
import io
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from matplotlib.figure import Figure

from api.metrics import metrics


logger = logging.getLogger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"

WIN_COLORS = {'background': '#011b0b', 'line': '#8fe4be'}
LOSS_COLORS = {'background': '#2e0707', 'line': '#f78e8e'}


class RendererUnavailable(Exception):
    pass


class ChartRenderer:
    def __init__(self, enabled: bool = True, duration_minutes: int = 5, timeout_s: float = 10.0,
                 base_url: str = YAHOO_CHART_URL):
        self.enabled = enabled
        self.duration_minutes = max(2, int(duration_minutes))
        self.timeout_s = timeout_s
        self.base_url = base_url

    @staticmethod
    def yahoo_symbol(ticker: str) -> str:
        if ticker.endswith('OTC'):
            ticker = ticker[:-3]
        return f"{ticker}=X"

    async def fetch_prices(self, ticker: str) -> List[float]:
        url = self.base_url.format(symbol=self.yahoo_symbol(ticker))
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    params={'range': '1d', 'interval': '1m'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as resp:
                    if resp.status != 200:
                        raise RendererUnavailable(f"price history request failed with status {resp.status}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RendererUnavailable(f"price history unavailable: {exc}") from exc

        try:
            closes = data['chart']['result'][0]['indicators']['quote'][0]['close']
        except (KeyError, IndexError, TypeError) as exc:
            raise RendererUnavailable("price history response had no quotes") from exc

        prices = [float(p) for p in closes if p is not None][-self.duration_minutes:]
        if len(prices) < 2:
            raise RendererUnavailable(f"not enough price points for {ticker}")
        return prices

    def draw(self, prices: List[float], ticker: str, is_win: bool, close_price: Optional[float] = None) -> bytes:
        colors = WIN_COLORS if is_win else LOSS_COLORS
        open_price = prices[0]
        close_price = close_price if close_price is not None else prices[-1]
        change = close_price - open_price
        change_pct = (change / open_price) * 100 if open_price else 0.0

        fig = Figure(figsize=(6, 4), dpi=100, facecolor=colors['background'])
        ax = fig.add_subplot(1, 1, 1)
        ax.set_facecolor(colors['background'])
        ax.plot(range(len(prices)), prices, color=colors['line'], linewidth=3)
        ax.scatter([0, len(prices) - 1], [prices[0], prices[-1]], color=colors['line'], s=40, zorder=3)
        ax.set_title(f"{ticker} • {'WIN' if is_win else 'LOSS'}", color='white', fontweight='bold', loc='left')
        ax.set_xticks([0, len(prices) - 1])
        ax.set_xticklabels([f"{len(prices)} MIN AGO", 'NOW'])
        ax.tick_params(colors='white')
        for spine in ax.spines.values():
            spine.set_visible(False)
        fig.text(0.02, 0.02, f"OPEN: {open_price:.5f}", color='white', fontweight='bold')
        fig.text(0.62, 0.02, f"CLOSE: {close_price:.5f}", color='white', fontweight='bold')
        fig.text(
            0.30, 0.08,
            f"CHANGE: {'+' if change >= 0 else ''}{change:.5f} ({change_pct:.3f}%)",
            color='white',
        )
        fig.subplots_adjust(bottom=0.22)

        buf = io.BytesIO()
        fig.savefig(buf, format='png', facecolor=fig.get_facecolor())
        return buf.getvalue()

    async def render(self, ticker: str, context: Dict[str, Any]) -> Optional[bytes]:
        """Return PNG bytes for a result chart, or None when a chart cannot be produced."""
        if not self.enabled:
            return None
        try:
            prices = await self.fetch_prices(ticker)
            loop = asyncio.get_running_loop()
            image = await loop.run_in_executor(
                None, self.draw, prices, ticker, bool(context.get('is_win')), context.get('price')
            )
        except Exception as exc:
            logger.warning("Chart for %s unavailable: %s", ticker, exc)
            metrics.record_chart('failed')
            return None
        metrics.record_chart('rendered')
        return image
