import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from app.models.activity import ActivityItem, Category
from app.services.categories import CategoryConfig, project_item
from app.services.document_store import Document, DocumentStore, LiveQuery, Unsubscribe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategorySnapshot:
    """One emission of a category stream, addressed to the aggregator."""

    category: Category
    token: int
    items: list[ActivityItem] = field(default_factory=list)
    error: Optional[str] = None


class CategorySubscriber:
    """
    Live "items since watermark" stream for one category and tenant.

    Every emission is forwarded to ``sink`` as a full ``CategorySnapshot``
    tagged with ``token``. Errors are logged and forwarded as an empty
    snapshot so a broken stream reads as zero items and never affects the
    other categories. After ``close`` nothing more is forwarded.
    """

    def __init__(
        self,
        config: CategoryConfig,
        store: DocumentStore,
        tenant_id: str,
        watermark: datetime,
        sink: Callable[[CategorySnapshot], None],
        token: int,
    ):
        self.config = config
        self.store = store
        self.tenant_id = tenant_id
        self.watermark = watermark
        self.sink = sink
        self.token = token
        self._unsubscribe: Optional[Unsubscribe] = None
        self._closed = False

    @property
    def category(self) -> Category:
        return self.config.category

    @property
    def closed(self) -> bool:
        return self._closed

    def query(self) -> LiveQuery:
        return LiveQuery(
            collection=self.config.collection,
            tenant_field=self.config.tenant_field,
            tenant_id=self.tenant_id,
            timestamp_field=self.config.timestamp_field,
            lower_bound=self.watermark,
        )

    def open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Subscriber for '{self.category.value}' already closed")
        if self._unsubscribe is not None:
            return
        try:
            self._unsubscribe = self.store.watch(self.query(), self._on_snapshot, self._on_error)
        except Exception as exc:
            # watch() itself may refuse (bad index, auth transition)
            self._on_error(exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            finally:
                self._unsubscribe = None

    def _on_snapshot(self, documents: list[Document]) -> None:
        if self._closed:
            return
        items = []
        for doc in documents:
            item = project_item(self.config, doc)
            if item is not None:
                items.append(item)
        self.sink(CategorySnapshot(category=self.category, token=self.token, items=items))

    def _on_error(self, exc: Exception) -> None:
        if self._closed:
            return
        code = getattr(exc, "code", type(exc).__name__)
        logger.warning("Activity stream '%s' failed (%s): %s", self.category.value, code, exc)
        self.sink(CategorySnapshot(category=self.category, token=self.token, error=str(code)))
