"""
Payload serialization at the backing store boundary.

The engine stores values as-is; stores that need bytes are wrapped in
SerializingBackingStore with a pluggable Serializer.
"""

import json
import pickle
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from ...domain.cache.repository_interfaces import BackingStore


class Serializer(ABC):
    """Encodes values to bytes and back."""

    @abstractmethod
    def dumps(self, value: Any) -> bytes:
        pass

    @abstractmethod
    def loads(self, payload: bytes) -> Any:
        pass


class JsonSerializer(Serializer):
    """UTF-8 JSON. Unknown types are stringified."""

    def dumps(self, value: Any) -> bytes:
        return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")

    def loads(self, payload: bytes) -> Any:
        return json.loads(payload.decode("utf-8"))


class PickleSerializer(Serializer):
    """Pickle for trusted stores holding arbitrary Python objects."""

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def dumps(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=self.protocol)

    def loads(self, payload: bytes) -> Any:
        return pickle.loads(payload)


class SerializingBackingStore(BackingStore):
    """Encodes on save and decodes on load around another BackingStore."""

    def __init__(self, inner: BackingStore, serializer: Optional[Serializer] = None):
        self.inner = inner
        self.serializer = serializer or JsonSerializer()

    async def load(self, key: str) -> Any:
        return self.serializer.loads(await self.inner.load(key))

    async def save(self, key: str, value: Any) -> None:
        await self.inner.save(key, self.serializer.dumps(value))

    async def save_batch(
        self, entries: Mapping[str, Any]
    ) -> Dict[str, Optional[Exception]]:
        encoded = {key: self.serializer.dumps(value) for key, value in entries.items()}
        return await self.inner.save_batch(encoded)

    async def close(self) -> None:
        await self.inner.close()
