"""
Live-queryable document store.

The activity engine only needs one capability from its backing store: "tell
me, now and on every change, the full set of documents of a tenant newer
than X". ``DocumentStore`` is that contract; ``InMemoryDocumentStore`` is the
in-process implementation used by the service and the tests.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from app.utils.timezone import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

Document = dict[str, Any]
SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class DocumentStoreError(Exception):
    """Raised (or delivered to a listener) when a query cannot be served."""

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.code = code


class PermissionDeniedError(DocumentStoreError):
    def __init__(self, collection: str):
        super().__init__(f"Missing or insufficient permissions for '{collection}'", code="permission-denied")
        self.collection = collection


@dataclass(frozen=True)
class LiveQuery:
    collection: str
    tenant_field: str
    tenant_id: str
    timestamp_field: str
    lower_bound: datetime

    def matches(self, document: Document) -> bool:
        if document.get(self.tenant_field) != self.tenant_id:
            return False
        ts = parse_timestamp(document.get(self.timestamp_field))
        return ts is not None and ts >= self.lower_bound

    def sort_key(self, document: Document) -> datetime:
        return parse_timestamp(document.get(self.timestamp_field))


class DocumentStore(Protocol):
    def watch(self, query: LiveQuery, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Unsubscribe:
        ...


class _Listener:
    def __init__(self, query: LiveQuery, on_snapshot: SnapshotCallback, on_error: ErrorCallback):
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class InMemoryDocumentStore:
    """
    Collections of dict documents with push-style live queries.

    ``watch`` delivers an initial snapshot immediately and then a complete,
    re-evaluated result set on every write to the watched collection. No
    diffing is done: listeners always receive the full matching set ordered
    by the query's timestamp field, newest first.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._listeners: dict[str, list[_Listener]] = {}
        self._denied: set[str] = set()

    # --- writes ---

    def add(self, collection: str, document: Document) -> str:
        doc = dict(document)
        doc_id = str(doc.get("id") or uuid.uuid4().hex)
        doc["id"] = doc_id
        self._collections.setdefault(collection, {})[doc_id] = doc
        self._notify(collection)
        return doc_id

    def update(self, collection: str, doc_id: str, changes: Document) -> None:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise KeyError(f"{collection}/{doc_id}")
        docs[doc_id] = {**docs[doc_id], **changes, "id": doc_id}
        self._notify(collection)

    def update_many(self, collection: str, changes_by_id: dict[str, Document]) -> int:
        """Applies several updates as one write; listeners see a single snapshot."""
        docs = self._collections.get(collection, {})
        missing = [doc_id for doc_id in changes_by_id if doc_id not in docs]
        if missing:
            raise KeyError(f"{collection}/{missing[0]}")
        for doc_id, changes in changes_by_id.items():
            docs[doc_id] = {**docs[doc_id], **changes, "id": doc_id}
        if changes_by_id:
            self._notify(collection)
        return len(changes_by_id)

    def delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection, {})
        if docs.pop(doc_id, None) is not None:
            self._notify(collection)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return dict(doc) if doc else None

    # --- access control simulation ---

    def deny(self, collection: str) -> None:
        """Rejects current and future listeners of a collection."""
        self._denied.add(collection)
        error = PermissionDeniedError(collection)
        for listener in list(self._listeners.get(collection, [])):
            if listener.active:
                listener.on_error(error)

    def allow(self, collection: str) -> None:
        self._denied.discard(collection)
        self._notify(collection)

    # --- live queries ---

    def query(self, query: LiveQuery) -> list[Document]:
        if query.collection in self._denied:
            raise PermissionDeniedError(query.collection)
        matching = [dict(d) for d in self._collections.get(query.collection, {}).values() if query.matches(d)]
        matching.sort(key=query.sort_key, reverse=True)
        return matching

    def watch(self, query: LiveQuery, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Unsubscribe:
        listener = _Listener(query, on_snapshot, on_error)
        self._listeners.setdefault(query.collection, []).append(listener)
        self._deliver(listener)

        def unsubscribe() -> None:
            if not listener.active:
                return
            listener.active = False
            listeners = self._listeners.get(query.collection, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def listener_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._listeners.get(collection, []))
        return sum(len(v) for v in self._listeners.values())

    def _notify(self, collection: str) -> None:
        for listener in list(self._listeners.get(collection, [])):
            self._deliver(listener)

    def _deliver(self, listener: _Listener) -> None:
        if not listener.active:
            return
        try:
            snapshot = self.query(listener.query)
        except DocumentStoreError as exc:
            listener.on_error(exc)
            return
        listener.on_snapshot(snapshot)


def stamp_created_at(document: Document, field: str = "created_at") -> Document:
    doc = dict(document)
    if not doc.get(field):
        doc[field] = utcnow()
    return doc
