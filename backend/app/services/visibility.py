import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from app.core.security import SessionIdentity
from app.models.activity import Category, ItemKey
from app.services.aggregator import ActivityAggregator
from app.services.hidden_set import HiddenSet
from app.services.watermark_store import WatermarkStore
from app.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class VisibilityController:
    """
    The user-triggered mutations of the activity state.

    "Seen" and "hidden" are kept apart on purpose. ``mark_category_seen``
    advances the category watermark and re-opens its stream, which zeroes
    the count. ``hide_item`` / ``hide_all`` only add to the hidden set and
    leave every count untouched.
    """

    def __init__(
        self,
        aggregator: ActivityAggregator,
        watermarks: WatermarkStore,
        hidden: HiddenSet,
        clock: Callable[[], datetime] = utcnow,
        identity: Optional[SessionIdentity] = None,
    ):
        self.aggregator = aggregator
        self.watermarks = watermarks
        self.hidden = hidden
        self.clock = clock
        self.identity = identity
        self._locks: dict[Category, asyncio.Lock] = {}

    async def mark_category_seen(self, category: Category) -> datetime:
        category = Category(category)
        identity = self.identity or self.aggregator.identity
        if identity is None:
            raise RuntimeError("No active activity session")

        # Overlapping calls for one category run one after the other
        async with self._locks.setdefault(category, asyncio.Lock()):
            previous = await self.watermarks.get_watermark(identity.user_id, identity.role, category)
            candidate = max(ensure_utc(self.clock()), previous)

            # Raises WatermarkPersistenceError; the stream is left as it was
            seen_at = await self.watermarks.advance_watermark(identity.user_id, identity.role, category, candidate)

            current = self.aggregator.watermark_of(category)
            if current is None or seen_at > current:
                await self.aggregator.resubscribe(category, seen_at, identity=identity)

        logger.info("User %s (%s) marked '%s' seen at %s", identity.user_id, identity.role, category.value, seen_at.isoformat())
        return seen_at

    def hide_item(self, category: Category, item_id: str) -> bool:
        added = self.hidden.add(ItemKey(Category(category), str(item_id)))
        self.aggregator.refresh_feed()
        return added

    def hide_all(self) -> int:
        keys = [item.key for item in self.aggregator.feed()]
        added = self.hidden.add_many(keys)
        self.aggregator.refresh_feed()
        return added
