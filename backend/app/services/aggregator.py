import asyncio
import itertools
import logging
from contextlib import suppress
from typing import Mapping, Optional

from app.core.security import SessionIdentity
from app.models.activity import ActivityItem, Category
from app.services.categories import DEFAULT_CATEGORY_CONFIGS, CategoryConfig
from app.services.category_subscriber import CategorySnapshot, CategorySubscriber
from app.services.document_store import DocumentStore
from app.services.hidden_set import HiddenSet
from app.services.watermark_store import WatermarkStore

logger = logging.getLogger(__name__)

DEFAULT_FEED_LIMIT = 20


class ActivityAggregator:
    """
    Merges the category streams into unseen counts and one ranked feed.

    Subscribers only post ``CategorySnapshot`` messages to a queue; a single
    reducer task folds them into the category -> items map, so state is never
    touched by interleaved partial updates. Every fold replaces that
    category's slice, recomputes its count and rebuilds the feed from
    scratch (volumes are bounded by the watermark).

    Lifecycle: ``start`` and ``stop`` must alternate. Starting twice raises;
    the owner stops the old instance before starting one for a new identity.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        watermarks: WatermarkStore,
        hidden: HiddenSet,
        configs: Optional[Mapping[Category, CategoryConfig]] = None,
        feed_limit: int = DEFAULT_FEED_LIMIT,
    ):
        self.document_store = document_store
        self.watermarks = watermarks
        self.hidden = hidden
        self.configs = dict(configs or DEFAULT_CATEGORY_CONFIGS)
        self.feed_limit = feed_limit

        self._identity: Optional[SessionIdentity] = None
        self._generation = 0
        self._tokens = itertools.count(1)
        self._subscribers: dict[Category, CategorySubscriber] = {}
        self._items: dict[Category, list[ActivityItem]] = {}
        self._counts: dict[Category, int] = {}
        self._errors: dict[Category, str] = {}
        self._feed: list[ActivityItem] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._reset_state()

    # --- lifecycle ---

    @property
    def identity(self) -> Optional[SessionIdentity]:
        return self._identity

    @property
    def running(self) -> bool:
        return self._identity is not None

    async def start(self, identity: SessionIdentity) -> None:
        if self.running:
            raise RuntimeError("Aggregator already started; stop() it before starting again")

        self._generation += 1
        generation = self._generation
        self._identity = identity
        self._reset_state()
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(self._queue), name=f"activity-reducer-{identity.user_id}")

        lower_bounds = {}
        for category in self.configs:
            lower_bounds[category] = await self.watermarks.get_watermark(identity.user_id, identity.role, category)
            if generation != self._generation:
                # stop() ran while we were reading watermarks
                return

        for category, config in self.configs.items():
            self._subscribe(config, lower_bounds[category])
        logger.info(
            "Activity aggregator started for user=%s role=%s tenant=%s (%d categories)",
            identity.user_id,
            identity.role,
            identity.tenant_id,
            len(self._subscribers),
        )

    async def stop(self) -> None:
        if not self.running:
            logger.debug("Activity aggregator stop() without a running session")
            return

        identity = self._identity
        self._generation += 1
        self._identity = None

        # Unsubscribe synchronously before anything else can be started
        for subscriber in self._subscribers.values():
            subscriber.close()
        self._subscribers.clear()

        task, self._task = self._task, None
        self._queue = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        self._reset_state()
        logger.info("Activity aggregator stopped for user=%s", identity.user_id)

    async def resubscribe(self, category: Category, watermark, identity: Optional[SessionIdentity] = None) -> bool:
        """
        Replaces a category's stream with one starting at ``watermark``.

        Returns False without touching anything when the aggregator was
        stopped, or restarted for another identity, while the caller was
        persisting the watermark. The next ``start`` reads it from storage.
        """
        category = Category(category)
        if not self.running or (identity is not None and identity != self._identity):
            logger.info("Skipping re-subscribe of '%s': session is no longer active", category.value)
            return False
        old = self._subscribers.pop(category, None)
        if old is not None:
            old.close()
        self._items[category] = []
        self._counts[category] = 0
        self._errors.pop(category, None)
        self._recompute_feed()
        self._subscribe(self.configs[category], watermark)
        logger.info("Re-subscribed '%s' from %s", category.value, watermark.isoformat())
        return True

    async def refresh(self) -> int:
        """
        Forces a recount: re-reads every watermark and re-opens each stream.

        Picks up watermarks written by another process sharing the store.
        Returns the number of categories re-opened.
        """
        identity = self._identity
        if identity is None:
            return 0
        generation = self._generation
        lower_bounds = {}
        for category in self.configs:
            lower_bounds[category] = await self.watermarks.get_watermark(identity.user_id, identity.role, category)
            if generation != self._generation:
                return 0
        reopened = 0
        for category, stored in lower_bounds.items():
            current = self.watermark_of(category)
            watermark = max(stored, current) if current is not None else stored
            if await self.resubscribe(category, watermark, identity=identity):
                reopened += 1
        return reopened

    async def settle(self) -> None:
        """Waits until every queued snapshot has been folded."""
        if self._queue is not None:
            await self._queue.join()

    # --- read side ---

    @property
    def counts(self) -> dict[str, int]:
        return {category.value: self._counts.get(category, 0) for category in self.configs}

    def total_count(self) -> int:
        return sum(self._counts.values())

    def feed(self) -> list[ActivityItem]:
        return list(self._feed)

    @property
    def errors(self) -> dict[str, str]:
        return {category.value: code for category, code in self._errors.items()}

    def watermark_of(self, category: Category):
        subscriber = self._subscribers.get(Category(category))
        return subscriber.watermark if subscriber else None

    def refresh_feed(self) -> None:
        """Rebuilds the feed after the hidden set changed."""
        self._recompute_feed()

    # --- internals ---

    def _reset_state(self) -> None:
        self._items = {category: [] for category in self.configs}
        self._counts = {category: 0 for category in self.configs}
        self._errors = {}
        self._feed = []

    def _subscribe(self, config: CategoryConfig, watermark) -> None:
        subscriber = CategorySubscriber(
            config=config,
            store=self.document_store,
            tenant_id=self._identity.tenant_id,
            watermark=watermark,
            sink=self._post,
            token=next(self._tokens),
        )
        self._subscribers[config.category] = subscriber
        subscriber.open()

    def _post(self, snapshot: CategorySnapshot) -> None:
        if self._queue is None:
            return
        self._queue.put_nowait(snapshot)

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            snapshot = await queue.get()
            try:
                self._fold(snapshot)
            except Exception:
                logger.exception("Failed to fold snapshot for '%s'", snapshot.category.value)
            finally:
                queue.task_done()

    def _fold(self, snapshot: CategorySnapshot) -> None:
        current = self._subscribers.get(snapshot.category)
        if current is None or current.closed or current.token != snapshot.token:
            logger.debug("Dropping stale snapshot for '%s' (token %s)", snapshot.category.value, snapshot.token)
            return

        if snapshot.error:
            self._errors[snapshot.category] = snapshot.error
        else:
            self._errors.pop(snapshot.category, None)

        self._items[snapshot.category] = list(snapshot.items)
        self._counts[snapshot.category] = len(snapshot.items)
        self._recompute_feed()
        logger.debug(
            "Folded '%s': %d items, total unseen %d",
            snapshot.category.value,
            len(snapshot.items),
            self.total_count(),
        )

    def _recompute_feed(self) -> None:
        hidden = self.hidden.keys()
        merged: dict = {}
        for items in self._items.values():
            for item in items:
                if item.key in hidden or item.key in merged:
                    continue
                merged[item.key] = item
        ranked = sorted(
            merged.values(),
            key=lambda item: (item.timestamp, item.category.value, item.id),
            reverse=True,
        )
        self._feed = ranked[: self.feed_limit]
