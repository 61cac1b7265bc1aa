from __future__ import annotations

import copy
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from hashlib import sha256
from typing import Callable

from contactscout.models.contacts import AggregatedResult
from contactscout.models.search import SearchConfiguration
from contactscout.services.similarity import normalize_query

CACHE_VERSION = 1


def cache_key(configuration: SearchConfiguration) -> str:
    """Hash of everything in a configuration that changes the result.

    Priority and timeouts only affect scheduling, so they are left out.
    """
    criteria = {
        name: sorted(v.strip().lower() for v in values)
        for name, values in configuration.criteria.to_dict().items()
    }
    options = configuration.options
    material = {
        "v": CACHE_VERSION,
        "query": normalize_query(configuration.query),
        "criteria": criteria,
        "max_results": options.max_results,
        "max_contacts_per_source": options.max_contacts_per_source,
        "ai": options.enable_ai_enhancement,
        "scrape": options.enable_content_scraping,
        "extract": options.enable_contact_extraction,
        "threshold": options.confidence_threshold,
    }
    return sha256(json.dumps(material, sort_keys=True).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class _Entry:
    value: AggregatedResult
    expires_at: float


class SearchResultCache:
    """In-process TTL + LRU cache of aggregated search results."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.enabled = enabled
        self._clock = clock
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, configuration: SearchConfiguration) -> AggregatedResult | None:
        if not self.enabled:
            return None
        key = cache_key(configuration)
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._data[key]
            self.misses += 1
            return None
        self._data.move_to_end(key)
        self.hits += 1
        return copy.deepcopy(entry.value)

    def set(self, configuration: SearchConfiguration, value: AggregatedResult) -> None:
        if not self.enabled or self.ttl_seconds <= 0:
            return
        key = cache_key(configuration)
        self._data.pop(key, None)
        self._data[key] = _Entry(copy.deepcopy(value), self._clock() + self.ttl_seconds)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._data),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
