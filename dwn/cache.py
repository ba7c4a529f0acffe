"""
DWN Lookup Caches

Caching is never implicit: the engine talks to whatever resolver and store it
is handed. Deployments that want to avoid repeated DID resolution or
protocol-definition lookups wrap their collaborators:

    resolver = CachingDidResolver(DidKeyResolver(), ttl_seconds=300)
    store = CachingRecordStore(backing_store, ttl_seconds=60)
    authorizer = Authorizer(tenant, store, resolver)

    # after a Protocols.Configure is stored
    store.invalidate(protocol_uri)

Both wrappers are backed by `TTLCache`: TTL expiry with LRU eviction once
`max_size` is reached. The cache lock guards only dictionary operations and
is never held across an `await`; two concurrent misses for one key both go
to the backing collaborator and the later result wins.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from dwn.config import CacheConfig
from dwn.core import clean_url
from dwn.did import DidResolver
from dwn.messages import Message
from dwn.protocols import ProtocolDefinition
from dwn.store import Record, RecordStore

K = TypeVar("K")
V = TypeVar("V")


# ════════════════════════════════════════════════════════════════════════════
# CACHE ENTRY
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class CacheEntry(Generic[V]):
    """A cache entry with its expiry."""
    value: V
    expires_at: float
    access_count: int = 0


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def hit_ratio(self) -> float:
        """Cache hit ratio (0.0 - 1.0)."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
            "hit_ratio": round(self.hit_ratio, 4),
        }


# ════════════════════════════════════════════════════════════════════════════
# TTL CACHE
# ════════════════════════════════════════════════════════════════════════════


class TTLCache(Generic[K, V]):
    """
    Cache with Time-To-Live expiration.

    Entries expire after their TTL; when full, expired entries go first and
    then the least recently used.

    `clock` defaults to `time.monotonic` and can be replaced for tests.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._cache: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.Lock()
        self._metrics = CacheMetrics()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Get value if present and not expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._metrics.misses += 1
                return default

            if self._clock() > entry.expires_at:
                del self._cache[key]
                self._metrics.expirations += 1
                self._metrics.misses += 1
                return default

            entry.access_count += 1
            self._cache.move_to_end(key)
            self._metrics.hits += 1
            return entry.value

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        with self._lock:
            ttl = ttl if ttl is not None else self._default_ttl
            if key in self._cache:
                del self._cache[key]
            while len(self._cache) >= self._max_size:
                self._evict_one()
            self._cache[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def delete(self, key: K) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self._metrics.invalidations += 1
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._metrics.invalidations += len(self._cache)
            self._cache.clear()

    def keys(self) -> List[K]:
        with self._lock:
            return list(self._cache.keys())

    def size(self) -> int:
        """Current number of entries (including expired)."""
        with self._lock:
            return len(self._cache)

    @property
    def metrics(self) -> CacheMetrics:
        with self._lock:
            return CacheMetrics(**self._metrics.__dict__)

    def _evict_one(self) -> None:
        """Evict an expired entry if any, else the least recently used."""
        now = self._clock()
        for key, entry in self._cache.items():
            if now > entry.expires_at:
                del self._cache[key]
                self._metrics.expirations += 1
                return
        self._cache.popitem(last=False)
        self._metrics.evictions += 1


# ════════════════════════════════════════════════════════════════════════════
# CACHING COLLABORATORS
# ════════════════════════════════════════════════════════════════════════════


class CachingDidResolver(DidResolver):
    """Caches resolved verification keys by DID URL. Failures are not cached."""

    def __init__(
        self,
        inner: DidResolver,
        ttl_seconds: float = 300.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.cache: TTLCache[str, Ed25519PublicKey] = TTLCache(max_size, ttl_seconds, clock)

    @classmethod
    def from_config(cls, inner: DidResolver, config: CacheConfig) -> "CachingDidResolver":
        return cls(inner, ttl_seconds=config.did_key_ttl_seconds.get(), max_size=config.max_entries.get())

    async def resolve_verification_key(self, did_url: str) -> Ed25519PublicKey:
        key = self.cache.get(did_url)
        if key is not None:
            return key
        key = await self.inner.resolve_verification_key(did_url)
        self.cache.set(did_url, key)
        return key

    def invalidate(self, did: Optional[str] = None) -> None:
        """Drop one DID (all of its key ids) or, with no argument, everything."""
        if did is None:
            self.cache.clear()
            return
        base = did.split("#", 1)[0]
        for k in self.cache.keys():
            if k == did or k.split("#", 1)[0] == base:
                self.cache.delete(k)


class CachingRecordStore(RecordStore):
    """Caches protocol definitions; every other lookup goes to the backing store."""

    def __init__(
        self,
        inner: RecordStore,
        ttl_seconds: float = 60.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.cache: TTLCache[str, ProtocolDefinition] = TTLCache(max_size, ttl_seconds, clock)

    @classmethod
    def from_config(cls, inner: RecordStore, config: CacheConfig) -> "CachingRecordStore":
        return cls(inner, ttl_seconds=config.protocol_ttl_seconds.get(), max_size=config.max_entries.get())

    async def get_protocol_definition(self, protocol: str) -> Optional[ProtocolDefinition]:
        uri = clean_url(protocol)
        definition = self.cache.get(uri)
        if definition is not None:
            return definition
        definition = await self.inner.get_protocol_definition(uri)
        if definition is not None:
            self.cache.set(uri, definition)
        return definition

    def invalidate(self, protocol: Optional[str] = None) -> None:
        if protocol is None:
            self.cache.clear()
        else:
            self.cache.delete(clean_url(protocol))

    async def get_record(self, record_id: str) -> Optional[Record]:
        return await self.inner.get_record(record_id)

    async def get_ancestors(self, context_id: str) -> List[Record]:
        return await self.inner.get_ancestors(context_id)

    async def get_latest_revocation(self, grant_id: str, at: Optional[str] = None) -> Optional[Message]:
        return await self.inner.get_latest_revocation(grant_id, at)

    async def get_role_records(self, protocol: str, role_path: str, recipient: str) -> List[Record]:
        return await self.inner.get_role_records(protocol, role_path, recipient)
