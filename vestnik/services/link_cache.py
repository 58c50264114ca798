from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class CachedLink:
    href: str
    expires_at: datetime

    def usable(self, now: datetime) -> bool:
        return now < self.expires_at


class LinkCache:
    """Process-wide map of (asset id, preview size) to the last issued download href.

    Entries are immutable snapshots, so concurrent writers simply overwrite each
    other (last writer wins) and no locking is needed. The map is an LRU bounded
    by ``max_entries``; an evicted entry is only a lost warm-up.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self.max_entries = max(int(max_entries), 1)
        self._entries: OrderedDict[str, CachedLink] = OrderedDict()

    @staticmethod
    def key(asset_id: str, size: str | None = None) -> str:
        return f"{asset_id}:{size}" if size else asset_id

    def get(self, asset_id: str, size: str | None, now: datetime) -> CachedLink | None:
        key = self.key(asset_id, size)
        entry = self._entries.get(key)
        if entry is None or not entry.usable(now):
            return None
        self._entries.move_to_end(key)
        return entry

    def put(self, asset_id: str, size: str | None, href: str, expires_at: datetime) -> CachedLink:
        key = self.key(asset_id, size)
        entry = CachedLink(href=href, expires_at=expires_at)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry

    def peek(self, asset_id: str, size: str | None = None) -> CachedLink | None:
        return self._entries.get(self.key(asset_id, size))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
