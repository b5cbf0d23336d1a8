import logging
from typing import Dict, Iterable, List

from storage.state_store import StateStore
from strategy.alert_types import normalize_strategy


logger = logging.getLogger(__name__)


class DestinationRegistry:
    """Maps a strategy to the chat ids that receive its broadcasts.

    The default strategy also receives the statically configured chat ids;
    every other strategy relies solely on what has been registered in Redis.
    """

    def __init__(self, store: StateStore, default_strategy: str, static_destinations: Iterable[str] = ()):
        self.store = store
        self.default_strategy = default_strategy
        self.static_destinations: List[str] = []
        for destination in static_destinations:
            destination = str(destination).strip()
            if destination and destination not in self.static_destinations:
                self.static_destinations.append(destination)

    async def resolve(self, strategy: str) -> List[str]:
        dynamic = await self.store.get_destinations(strategy)
        if strategy != self.default_strategy:
            return dynamic
        merged = list(self.static_destinations)
        for destination in dynamic:
            if destination not in merged:
                merged.append(destination)
        return merged

    async def register(self, strategy: str, destination: str) -> bool:
        try:
            strategy = normalize_strategy(strategy)
        except ValueError as exc:
            logger.warning("Refusing to register %s: %s", destination, exc)
            return False
        return await self.store.add_destination(strategy, str(destination))

    async def unregister(self, strategy: str, destination: str) -> bool:
        try:
            strategy = normalize_strategy(strategy)
        except ValueError as exc:
            logger.warning("Refusing to unregister %s: %s", destination, exc)
            return False
        return await self.store.remove_destination(strategy, str(destination))

    async def list_strategies(self) -> Dict[str, int]:
        return await self.store.get_all_strategies()
