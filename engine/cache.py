"""Read-only result cache and the file content registry.

Both are shared by concurrently running read tools, so every access holds a lock.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def make_key(tool: str, params: Dict[str, str]) -> CacheKey:
    return tool, json.dumps(params or {}, sort_keys=True)


@dataclass
class CacheEntry:
    key: CacheKey
    result: str
    timestamp: float
    hit_count: int = 0


class ResultCache:
    """TTL memo of read-only tool output. Overflow evicts the oldest insertion, not the least used."""

    def __init__(self, ttl: float = 120.0, max_entries: int = 50,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def get(self, tool: str, params: Dict[str, str]) -> Optional[str]:
        key = make_key(tool, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            return entry.result

    def put(self, tool: str, params: Dict[str, str], text: str) -> None:
        key = make_key(tool, params)
        with self._lock:
            now = self._clock()
            # re-insert so a refreshed entry counts as newest
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, result=text, timestamp=now)
            self._purge_expired(now)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache evicted {evicted[0]}")

    def _purge_expired(self, now: float) -> None:
        stale = [k for k, e in self._entries.items() if self._expired(e, now)]
        for k in stale:
            del self._entries[k]

    def invalidate(self, tool: Optional[str] = None) -> None:
        with self._lock:
            if tool is None:
                self._entries.clear()
            else:
                for k in [k for k in self._entries if k[0] == tool]:
                    del self._entries[k]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}


@dataclass
class FileRegistryEntry:
    path: str
    content_hash: str
    last_access: float


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()


class FileRegistry:
    """Hash ledger of files read this session; only used to annotate, never to skip a read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, FileRegistryEntry] = {}
        self._lock = threading.Lock()

    def is_known(self, path: str) -> bool:
        with self._lock:
            return path in self._entries

    def get(self, path: str) -> Optional[FileRegistryEntry]:
        with self._lock:
            return self._entries.get(path)

    def is_unchanged(self, path: str, content: str) -> bool:
        with self._lock:
            entry = self._entries.get(path)
            return entry is not None and entry.content_hash == content_hash(content)

    def register(self, path: str, content: str) -> str:
        digest = content_hash(content)
        with self._lock:
            self._entries[path] = FileRegistryEntry(path=path, content_hash=digest, last_access=self._clock())
        return digest

    def forget(self, path: Optional[str] = None) -> None:
        with self._lock:
            if path is None:
                self._entries.clear()
            else:
                self._entries.pop(path, None)
