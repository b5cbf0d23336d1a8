"""Redis-backed shared state for the relay.

Holds the system activity flag, per-ticker correlation markers and the
per-strategy destination sets. Every read falls back to a permissive
default when Redis is unreachable so alert processing never stalls on the
store.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

SYSTEM_ACTIVE_KEY = 'system:active'
CHANNELS_PREFIX = 'channels:'


class StoreUnavailable(Exception):
    """Redis could not be reached or answered with an error."""


class StateStore:
    def __init__(self, url: Optional[str] = None, client: Optional[Any] = None, timeout_s: float = 5.0):
        self.url = url or 'redis://localhost:6379'
        self.timeout_s = timeout_s
        self._client = client
        self._connected = False

    async def connect(self) -> bool:
        if self._client is None:
            self._client = Redis.from_url(
                self.url,
                decode_responses=True,
                encoding='utf-8',
                socket_timeout=self.timeout_s,
                socket_connect_timeout=self.timeout_s,
            )
        self._connected = await self.ping()
        if self._connected:
            logger.info("Redis connected at %s", self.url)
        else:
            logger.error("Redis connection failed - running without shared state")
        return self._connected

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as exc:
            logger.debug("Redis close failed: %s", exc)
        finally:
            self._client = None
            self._connected = False

    def is_ready(self) -> bool:
        return self._connected

    async def ping(self) -> bool:
        try:
            await self._call('ping')
            return True
        except StoreUnavailable:
            return False

    async def _call(self, command: str, *args: Any) -> Any:
        if self._client is None:
            raise StoreUnavailable("Redis client not initialised")
        try:
            result = await asyncio.wait_for(getattr(self._client, command)(*args), self.timeout_s)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            self._connected = False
            raise StoreUnavailable(f"Redis {command.upper()} failed: {exc}") from exc
        self._connected = True
        return result

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._call('get', key)
        except StoreUnavailable as exc:
            logger.warning("%s - returning no value for %s", exc, key)
            return None
        logger.debug("Redis GET %s = %s", key, value)
        return value

    async def set(self, key: str, value: str) -> bool:
        try:
            await self._call('set', key, value)
        except StoreUnavailable as exc:
            logger.warning("%s - %s not stored", exc, key)
            return False
        logger.debug("Redis SET %s = %s", key, value)
        return True

    async def get_system_active(self) -> bool:
        # a missing flag means nobody has stopped the system
        state = await self.get(SYSTEM_ACTIVE_KEY)
        if state is None:
            return True
        return state == 'true'

    async def set_system_active(self, active: bool) -> bool:
        return await self.set(SYSTEM_ACTIVE_KEY, 'true' if active else 'false')

    async def add_destination(self, strategy: str, destination: str) -> bool:
        key = f"{CHANNELS_PREFIX}{strategy.lower()}"
        try:
            await self._call('sadd', key, str(destination))
        except StoreUnavailable as exc:
            logger.error("Failed to add destination %s to %s: %s", destination, strategy, exc)
            return False
        logger.info("Added destination %s to strategy '%s'", destination, strategy)
        return True

    async def remove_destination(self, strategy: str, destination: str) -> bool:
        key = f"{CHANNELS_PREFIX}{strategy.lower()}"
        try:
            await self._call('srem', key, str(destination))
        except StoreUnavailable as exc:
            logger.error("Failed to remove destination %s from %s: %s", destination, strategy, exc)
            return False
        logger.info("Removed destination %s from strategy '%s'", destination, strategy)
        return True

    async def get_destinations(self, strategy: str) -> List[str]:
        key = f"{CHANNELS_PREFIX}{strategy.lower()}"
        try:
            members = await self._call('smembers', key)
        except StoreUnavailable as exc:
            logger.error("Failed to get destinations for %s: %s", strategy, exc)
            return []
        return sorted(members or [])

    async def get_all_strategies(self) -> Dict[str, int]:
        try:
            keys = await self._call('keys', f"{CHANNELS_PREFIX}*")
            strategies: Dict[str, int] = {}
            for key in sorted(keys or []):
                strategies[key[len(CHANNELS_PREFIX):]] = int(await self._call('scard', key))
        except StoreUnavailable as exc:
            logger.error("Failed to list strategies: %s", exc)
            return {}
        return strategies
