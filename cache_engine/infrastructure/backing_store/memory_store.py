"""
In-memory backing store.

Reference BackingStore implementation for tests, examples and local
development. Optional latency simulates a remote call.
"""

import asyncio
import copy
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ...domain.cache.exceptions import NotFoundException
from ...domain.cache.repository_interfaces import BackingStore


class InMemoryBackingStore(BackingStore):
    """Dict-backed store that records every call it receives."""

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        latency: float = 0.0,
    ):
        self._data: Dict[str, Any] = dict(data or {})
        self.latency = latency
        self.loads: List[str] = []
        self.saves: List[Tuple[str, Any]] = []
        self.batches: List[Dict[str, Any]] = []

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    async def load(self, key: str) -> Any:
        self.loads.append(key)
        await self._simulate_latency()
        if key not in self._data:
            raise NotFoundException(key)
        return copy.deepcopy(self._data[key])

    async def save(self, key: str, value: Any) -> None:
        await self._simulate_latency()
        self.saves.append((key, value))
        self._data[key] = copy.deepcopy(value)

    async def save_batch(
        self, entries: Mapping[str, Any]
    ) -> Dict[str, Optional[Exception]]:
        await self._simulate_latency()
        self.batches.append(dict(entries))
        for key, value in entries.items():
            self.saves.append((key, value))
            self._data[key] = copy.deepcopy(value)
        return {key: None for key in entries}

    def get(self, key: str, default: Any = None) -> Any:
        """Synchronous peek at stored data."""
        return self._data.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
