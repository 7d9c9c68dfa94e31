"""Tiered in-memory cache with a fixed TTL per tier."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final, Literal

from gdbuild.config import Settings

logger = logging.getLogger(__name__)

CacheTier = Literal["templates", "game_structure", "validation", "assets"]
CACHE_TIERS: tuple[CacheTier, ...] = ("templates", "game_structure", "validation", "assets")


class _Miss:
  """Sentinel returned by ``BuildCache.get`` when no live entry exists."""

  _instance: _Miss | None = None

  def __new__(cls) -> _Miss:
    if cls._instance is None:
      cls._instance = super().__new__(cls)
    return cls._instance

  def __repr__(self) -> str:
    return "MISS"

  def __bool__(self) -> bool:
    return False


MISS: Final = _Miss()


@dataclass
class CacheEntry:
  key: str
  value: Any
  written_at: float
  ttl: float

  def expired(self, now: float) -> bool:
    return now > self.written_at + self.ttl


@dataclass
class _TierCounters:
  hits: int = 0
  misses: int = 0
  writes: int = 0
  evictions: int = 0


class BuildCache:
  """Short-lived key/value store split into independent tiers."""

  def __init__(self, *, ttls: dict[str, float], enabled: bool = True, clock: Callable[[], float] = time.monotonic) -> None:
    if set(ttls) != set(CACHE_TIERS):
      raise ValueError(f"Cache TTLs must cover exactly the tiers {list(CACHE_TIERS)}, got {sorted(ttls)}")
    self._ttls = dict(ttls)
    self._enabled = enabled
    self._clock = clock
    self._lock = threading.Lock()
    self._entries: dict[str, dict[str, CacheEntry]] = {tier: {} for tier in CACHE_TIERS}
    self._counters: dict[str, _TierCounters] = {tier: _TierCounters() for tier in CACHE_TIERS}

  @classmethod
  def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> BuildCache:
    ttls = {
      "templates": settings.template_cache_ttl,
      "game_structure": settings.game_structure_cache_ttl,
      "validation": settings.validation_cache_ttl,
      "assets": settings.assets_cache_ttl,
    }
    return cls(ttls=ttls, enabled=settings.cache_enabled, clock=clock)

  @property
  def enabled(self) -> bool:
    return self._enabled

  def _tier(self, tier: str) -> dict[str, CacheEntry]:
    entries = self._entries.get(tier)
    if entries is None:
      raise ValueError(f"Unknown cache tier: {tier}")
    return entries

  def get(self, tier: str, key: str) -> Any:
    """Return the live value for ``key`` or ``MISS``."""
    entries = self._tier(tier)
    counters = self._counters[tier]
    # A disabled cache never answers, whatever it holds.
    if not self._enabled:
      counters.misses += 1
      return MISS
    with self._lock:
      entry = entries.get(key)
      if entry is None:
        counters.misses += 1
        return MISS
      if entry.expired(self._clock()):
        # Expired reads evict so stale artifacts are never served.
        del entries[key]
        counters.evictions += 1
        counters.misses += 1
        return MISS
      counters.hits += 1
      return entry.value

  def put(self, tier: str, key: str, value: Any) -> None:
    """Store ``value`` under ``key``; the latest write wins."""
    entries = self._tier(tier)
    if not self._enabled:
      return
    with self._lock:
      entries[key] = CacheEntry(key=key, value=value, written_at=self._clock(), ttl=float(self._ttls[tier]))
      self._counters[tier].writes += 1

  def invalidate(self, tier: str, key: str) -> bool:
    entries = self._tier(tier)
    with self._lock:
      removed = entries.pop(key, None)
    if removed is not None:
      logger.debug("Cache entry invalidated: tier=%s key=%s", tier, key)
    return removed is not None

  def purge_expired(self) -> int:
    """Drop expired entries across all tiers and return how many were removed."""
    removed = 0
    with self._lock:
      now = self._clock()
      for tier, entries in self._entries.items():
        stale = [key for key, entry in entries.items() if entry.expired(now)]
        for key in stale:
          del entries[key]
        self._counters[tier].evictions += len(stale)
        removed += len(stale)
    return removed

  def clear(self, tier: str | None = None) -> None:
    with self._lock:
      tiers = [tier] if tier is not None else list(CACHE_TIERS)
      for name in tiers:
        self._tier(name).clear()

  def statistics(self) -> dict[str, Any]:
    with self._lock:
      tiers = {
        tier: {
          "entries": len(self._entries[tier]),
          "ttl_seconds": self._ttls.get(tier),
          "hits": counters.hits,
          "misses": counters.misses,
          "writes": counters.writes,
          "evictions": counters.evictions,
        }
        for tier, counters in self._counters.items()
      }
    return {"enabled": self._enabled, "tiers": tiers}
