import logging
from datetime import datetime, timezone
from typing import Optional

from app.core.security import SessionIdentity
from app.core.settings import InboxConfig
from app.models.inbox import InboxKind, InboxNotification
from app.services.document_store import DocumentStoreError, InMemoryDocumentStore, LiveQuery
from app.utils.timezone import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InboxNotFoundError(LookupError):
    """The notification does not exist or belongs to someone else."""


class InboxService:
    """
    Per-recipient notifications with a read flag.

    Unlike the category counts, "unread" here is a property of each
    document, so marking one read is visible to every session of its
    recipient. Reads that the store refuses degrade to an empty inbox.
    """

    def __init__(
        self,
        store: InMemoryDocumentStore,
        identity: SessionIdentity,
        config: Optional[InboxConfig] = None,
    ):
        self.store = store
        self.identity = identity
        self.config = config or InboxConfig()

    @property
    def enabled(self) -> bool:
        roles = self.config.roles
        return roles is None or self.identity.role in roles

    def _query(self) -> LiveQuery:
        return LiveQuery(
            collection=self.config.collection,
            tenant_field=self.config.tenant_field,
            tenant_id=self.identity.tenant_id,
            timestamp_field=self.config.timestamp_field,
            lower_bound=_EPOCH,
        )

    def _project(self, doc: dict) -> Optional[InboxNotification]:
        created_at = parse_timestamp(doc.get(self.config.timestamp_field))
        if created_at is None:
            return None
        try:
            kind = InboxKind(doc.get("kind") or InboxKind.SYSTEM)
        except ValueError:
            kind = InboxKind.SYSTEM
        return InboxNotification(
            id=str(doc["id"]),
            recipient_id=str(doc.get(self.config.recipient_field)),
            title=str(doc.get("title") or ""),
            message=str(doc.get("message") or ""),
            kind=kind,
            link=doc.get("link"),
            created_at=created_at,
            read=bool(doc.get(self.config.read_field, False)),
        )

    def _own_documents(self) -> list[dict]:
        if not self.enabled:
            return []
        try:
            docs = self.store.query(self._query())
        except DocumentStoreError as exc:
            logger.warning("Inbox for %s unavailable (%s): %s", self.identity.user_id, exc.code, exc)
            return []
        return [d for d in docs if d.get(self.config.recipient_field) == self.identity.user_id]

    def notifications(self) -> list[InboxNotification]:
        """Newest first."""
        items = []
        for doc in self._own_documents():
            item = self._project(doc)
            if item is not None:
                items.append(item)
        return items

    def unread_count(self) -> int:
        return sum(1 for item in self.notifications() if not item.read)

    def mark_read(self, notification_id: str) -> bool:
        """Returns False when it was already read."""
        doc = self.store.get(self.config.collection, notification_id) if self.enabled else None
        if (
            doc is None
            or doc.get(self.config.tenant_field) != self.identity.tenant_id
            or doc.get(self.config.recipient_field) != self.identity.user_id
        ):
            raise InboxNotFoundError(notification_id)
        if doc.get(self.config.read_field):
            return False
        self.store.update(self.config.collection, notification_id, {self.config.read_field: True})
        return True

    def mark_all_read(self) -> int:
        unread = [doc["id"] for doc in self._own_documents() if not doc.get(self.config.read_field)]
        count = self.store.update_many(
            self.config.collection, {doc_id: {self.config.read_field: True} for doc_id in unread}
        )
        if count:
            logger.info("Marked %d inbox notifications read for %s", count, self.identity.user_id)
        return count

    def post(
        self,
        recipient_id: str,
        title: str,
        message: str = "",
        kind: InboxKind = InboxKind.SYSTEM,
        link: Optional[str] = None,
    ) -> str:
        """Sends a notification to a user of the caller's tenant."""
        return self.store.add(
            self.config.collection,
            {
                self.config.tenant_field: self.identity.tenant_id,
                self.config.recipient_field: recipient_id,
                self.config.timestamp_field: utcnow(),
                self.config.read_field: False,
                "title": title,
                "message": message,
                "kind": InboxKind(kind).value,
                "link": link,
            },
        )
