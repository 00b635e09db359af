"""
Backing Store Interface

Contract for the slower system of record the cache sits in front of.
The engine treats every call as an opaque remote operation.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional


class BackingStore(ABC):
    """
    Abstract backing store.

    Implementations raise NotFoundException from ``load`` when the key
    does not exist. Any other exception is treated as a backing store
    failure.
    """

    @abstractmethod
    async def load(self, key: str) -> Any:
        """Load the value for ``key``."""
        pass

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Persist ``value`` under ``key``."""
        pass

    async def save_batch(
        self, entries: Mapping[str, Any]
    ) -> Dict[str, Optional[Exception]]:
        """
        Persist several entries.

        Returns a mapping of key to None on success or the exception that
        failed that entry. Stores with a native bulk write should override.
        """
        results: Dict[str, Optional[Exception]] = {}
        for key, value in entries.items():
            try:
                await self.save(key, value)
                results[key] = None
            except Exception as e:
                results[key] = e
        return results

    async def close(self) -> None:
        """Release backing store resources."""
        pass
