import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp


logger = logging.getLogger(__name__)


class DeliveryFailed(Exception):
    def __init__(self, message: str, status: Optional[int] = None, description: Optional[str] = None):
        self.status = status
        self.description = description
        super().__init__(message)


class DeliveryThrottled(Exception):
    """Telegram answered 429; the same message may be retried after ``retry_after`` seconds."""

    def __init__(self, retry_after: Optional[float] = None, description: Optional[str] = None):
        self.retry_after = retry_after
        self.description = description
        super().__init__(f"Telegram throttled (retry_after={retry_after})")


class TelegramClient:
    def __init__(
        self,
        bot_token: Optional[str],
        api_base: str = "https://api.telegram.org",
        timeout_s: float = 10.0,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(self, method: str, json_body: Optional[Dict[str, Any]] = None,
                       form: Optional[aiohttp.FormData] = None) -> Any:
        if not self.enabled:
            raise DeliveryFailed("Telegram bot token not configured")

        session = await self._get_session()
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        try:
            async with session.post(url, json=json_body, data=form) as resp:
                text = await resp.text()
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = None
                if not isinstance(payload, dict):
                    payload = {}
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise DeliveryFailed(f"Telegram {method} timed out") from exc
        except aiohttp.ClientError as exc:
            raise DeliveryFailed(f"Telegram {method} transport error: {exc}") from exc

        description = payload.get("description")
        if status == 429:
            parameters = payload.get("parameters")
            retry_after = parameters.get("retry_after") if isinstance(parameters, dict) else None
            if not isinstance(retry_after, (int, float)) or isinstance(retry_after, bool) or retry_after < 0:
                retry_after = None
            raise DeliveryThrottled(retry_after, description)
        if status >= 400 or not payload.get("ok", False):
            raise DeliveryFailed(
                f"Telegram {method} failed (status={status}, description={description})",
                status=status,
                description=description,
            )
        return payload.get("result")

    async def send_message(self, chat_id: str, text: str) -> Any:
        return await self._request(
            "sendMessage",
            json_body={
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
        )

    async def send_photo(self, chat_id: str, image: bytes, caption: Optional[str] = None) -> Any:
        form = aiohttp.FormData()
        form.add_field("chat_id", str(chat_id))
        if caption:
            form.add_field("caption", caption)
            form.add_field("parse_mode", "HTML")
        form.add_field("photo", image, filename="chart.png", content_type="image/png")
        return await self._request("sendPhoto", form=form)
