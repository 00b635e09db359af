"""
Invalidation Index

Tag -> key-set mapping ("surrogate keys") for group invalidation.
The index is derived state: the entry store decides liveness, so
resolved keys are always re-checked against it.
"""

import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Set

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from .entry_store import EntryStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class InvalidationIndex:
    """
    Thread-safe tag index.

    Invariant (maintained by EntryStore): a key is in a tag's set iff the
    key's current entry carries that tag. Empty sets are dropped.
    """

    def __init__(self) -> None:
        self._tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def tag(self, key: str, tags: Iterable[str]) -> None:
        """Associate ``key`` with each tag. Idempotent."""
        with self._lock:
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    def untag(self, key: str, tags: Iterable[str]) -> None:
        with self._lock:
            for tag in tags:
                keys = self._tags.get(tag)
                if keys is None:
                    continue
                keys.discard(key)
                if not keys:
                    del self._tags[tag]

    def resolve(self, tag: str) -> Set[str]:
        """
        Candidate keys for ``tag``.

        Returns a copy; callers must re-validate each key against the
        entry store before treating it as cached.
        """
        with self._lock:
            return set(self._tags.get(tag, ()))

    def tags(self) -> List[str]:
        with self._lock:
            return list(self._tags)

    def clear(self) -> None:
        with self._lock:
            self._tags.clear()

    def __contains__(self, tag: object) -> bool:
        with self._lock:
            return tag in self._tags

    def __len__(self) -> int:
        with self._lock:
            return len(self._tags)


class CacheInvalidationService:
    """Tag invalidation fan-out on top of the entry store."""

    def __init__(self, store: "EntryStore"):
        self.store = store
        self.index = store.index

    def invalidate_tag(self, tag: str) -> int:
        """
        Remove every entry tagged with ``tag``.

        Returns the number of live entries removed, which can be lower than
        the candidate count when some entries had already expired.
        """
        with tracer.start_as_current_span("cache.invalidate_tag") as span:
            span.set_attribute("cache.tag", tag)

            candidates = self.index.resolve(tag)
            removed = self.store.remove_all(candidates)

            # Removing an entry untags it, so whatever is left was re-tagged
            # by a concurrent put after resolve() and stays.
            span.set_attribute("cache.candidates", len(candidates))
            span.set_attribute("cache.removed", removed)

            logger.info(
                "cache_tag_invalidated",
                tag=tag,
                candidates=len(candidates),
                removed=removed,
            )
            return removed

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        return sum(self.invalidate_tag(tag) for tag in set(tags))
