import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from app.core.datastore import KeyValueStore
from app.models.activity import ItemKey
from app.utils.timezone import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)


class HiddenSet:
    """
    Feed items a user dismissed, persisted in the key-value store.

    Independent of watermarks: hiding only filters the rendered feed, never
    the unseen counts. Entries remember when they were hidden so the set can
    be bounded by age (``ttl``) and size (``max_entries``).
    """

    def __init__(
        self,
        store: KeyValueStore,
        user_id: str,
        ttl: Optional[timedelta] = timedelta(days=30),
        max_entries: Optional[int] = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.user_id = user_id
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: dict[ItemKey, datetime] = self._load()

    @property
    def storage_key(self) -> str:
        return f"hidden:{self.user_id}"

    def __contains__(self, key: ItemKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> frozenset[ItemKey]:
        return frozenset(self._entries)

    def add(self, key: ItemKey) -> bool:
        return self.add_many([key]) == 1

    def add_many(self, keys: Iterable[ItemKey]) -> int:
        now = self.clock()
        entries = dict(self._entries)
        added = 0
        for key in keys:
            if key not in entries:
                added += 1
            entries[key] = now
        if not added:
            return 0
        entries = self._evict(entries)
        self._save(entries)
        self._entries = entries
        return added

    def _evict(self, entries: dict[ItemKey, datetime]) -> dict[ItemKey, datetime]:
        if self.ttl is not None:
            cutoff = self.clock() - self.ttl
            entries = {k: ts for k, ts in entries.items() if ts >= cutoff}
        if self.max_entries is not None and len(entries) > self.max_entries:
            newest = sorted(entries.items(), key=lambda kv: kv[1], reverse=True)[: self.max_entries]
            entries = dict(newest)
        return entries

    def _load(self) -> dict[ItemKey, datetime]:
        raw = self.store.get(self.storage_key) or {}
        entries: dict[ItemKey, datetime] = {}
        for encoded, hidden_at in raw.items():
            try:
                key = ItemKey.decode(encoded)
            except ValueError:
                logger.warning("Dropping unreadable hidden entry '%s' for user %s", encoded, self.user_id)
                continue
            entries[key] = parse_timestamp(hidden_at) or self.clock()
        return self._evict(entries)

    def _save(self, entries: dict[ItemKey, datetime]) -> None:
        self.store.set(self.storage_key, {k.encode(): to_iso(ts) for k, ts in entries.items()})
