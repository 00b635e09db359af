"""
Backing store infrastructure.

Timeout/error gateway, reference in-memory store, loader retries and
payload serialization.
"""

from .gateway import BackingStoreGateway
from .memory_store import InMemoryBackingStore
from .resilience import retrying_loader
from .serialization import (
    JsonSerializer,
    PickleSerializer,
    Serializer,
    SerializingBackingStore,
)

__all__ = [
    "BackingStoreGateway",
    "InMemoryBackingStore",
    "JsonSerializer",
    "PickleSerializer",
    "Serializer",
    "SerializingBackingStore",
    "retrying_loader",
]
