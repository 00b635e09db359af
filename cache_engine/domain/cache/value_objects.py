"""
Cache Value Objects

Immutable value objects for the cache domain.
Keys, tags and TTLs are validated once at the boundary so the entry
store can treat them as plain strings and floats.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ...constants import MAX_KEY_LENGTH, MAX_TAG_LENGTH, MAX_TTL_SECONDS
from .exceptions import InvalidTTLException


class CacheEntryStatus(str, Enum):
    """Lifecycle state of a cache entry."""

    ACTIVE = "active"
    EXPIRED = "expired"


class WriteMode(str, Enum):
    """How `set` propagates a value to the backing store."""

    WRITE_THROUGH = "write_through"
    WRITE_BEHIND = "write_behind"


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache key value object.

    Keys are opaque to the engine but callers must namespace them
    (``"user:123"``, ``"product:42:price"``) so unrelated domains never
    collide. The engine does not enforce a namespace, only basic shape.
    """

    value: str

    def __post_init__(self) -> None:
        """Validate cache key format."""
        if not isinstance(self.value, str):
            raise TypeError(f"Cache key must be str, got {type(self.value).__name__}")

        if not self.value:
            raise ValueError("Cache key cannot be empty")

        if len(self.value) > MAX_KEY_LENGTH:
            raise ValueError(f"Cache key too long (max {MAX_KEY_LENGTH} characters)")

        if any(char.isspace() for char in self.value):
            raise ValueError("Cache key cannot contain whitespace")

    @classmethod
    def namespaced(cls, namespace: str, *parts: object) -> "CacheKey":
        """Build a ``namespace:part1:part2`` key."""
        if not namespace or ":" in namespace:
            raise ValueError("Invalid namespace")
        if not parts:
            raise ValueError("Namespaced key needs at least one part")
        return cls(":".join([namespace, *(str(part) for part in parts)]))

    @classmethod
    def coerce(cls, key: Union[str, "CacheKey"]) -> "CacheKey":
        """Accept either a raw string or an existing CacheKey."""
        if isinstance(key, CacheKey):
            return key
        return cls(key)

    @property
    def namespace(self) -> Optional[str]:
        """Leading segment of a namespaced key, if any."""
        head, sep, _ = self.value.partition(":")
        return head if sep else None

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CacheTag:
    """
    Cache tag (surrogate key) value object.

    Groups unrelated entries so they can be invalidated together.
    """

    value: str

    def __post_init__(self) -> None:
        """Validate tag value."""
        if not isinstance(self.value, str):
            raise TypeError(f"Cache tag must be str, got {type(self.value).__name__}")
        if not self.value:
            raise ValueError("Cache tag cannot be empty")
        if len(self.value) > MAX_TAG_LENGTH:
            raise ValueError(f"Cache tag too long (max {MAX_TAG_LENGTH} characters)")
        if any(char.isspace() for char in self.value):
            raise ValueError("Cache tag cannot contain whitespace")

    @classmethod
    def coerce(cls, tag: Union[str, "CacheTag"]) -> "CacheTag":
        if isinstance(tag, CacheTag):
            return tag
        return cls(tag)

    @classmethod
    def user(cls, user_id: object) -> "CacheTag":
        """Create user-specific cache tag."""
        return cls(f"user:{user_id}")

    @classmethod
    def category(cls, name: str) -> "CacheTag":
        """Create category cache tag."""
        return cls(f"category:{name}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TTL:
    """
    Time To Live value object.

    Seconds may be fractional. Zero or negative values raise InvalidTTL.
    """

    seconds: float

    def __post_init__(self) -> None:
        """Validate TTL value."""
        if isinstance(self.seconds, bool) or not isinstance(self.seconds, (int, float)):
            raise InvalidTTLException(self.seconds, "TTL must be a number of seconds")
        if self.seconds <= 0:
            raise InvalidTTLException(self.seconds)
        if self.seconds > MAX_TTL_SECONDS:
            raise InvalidTTLException(self.seconds, "TTL too large (max 1 year)")

    @classmethod
    def of(cls, seconds: float) -> "TTL":
        return cls(seconds)

    @classmethod
    def minutes(cls, minutes: float) -> "TTL":
        """Create TTL from minutes."""
        return cls(minutes * 60)

    @classmethod
    def hours(cls, hours: float) -> "TTL":
        """Create TTL from hours."""
        return cls(hours * 3600)

    @classmethod
    def days(cls, days: float) -> "TTL":
        """Create TTL from days."""
        return cls(days * 86400)

    @classmethod
    def coerce(cls, ttl: Union[None, int, float, "TTL"]) -> Optional["TTL"]:
        """Normalize raw seconds or a TTL. None stays None (never expires)."""
        if ttl is None or isinstance(ttl, TTL):
            return ttl
        return cls(ttl)

    def __str__(self) -> str:
        return f"{self.seconds:g}s"
