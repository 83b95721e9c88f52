from datetime import timedelta

import pytest

from app.core.security import SessionIdentity
from app.core.settings import InboxConfig
from app.models.inbox import InboxKind
from app.services.inbox import InboxNotFoundError, InboxService

from conftest import NOON


def _note(doc_id, at, recipient="u1", tenant="T1", read=False, **extra):
    return {
        "id": doc_id,
        "company_id": tenant,
        "recipient_id": recipient,
        "created_at": at,
        "title": f"Note {doc_id}",
        "read": read,
        **extra,
    }


@pytest.fixture
def inbox(doc_store, identity):
    return InboxService(doc_store, identity)


def test_lists_own_notifications_newest_first(doc_store, inbox):
    doc_store.add("notifications", _note("n1", NOON - timedelta(days=3)))
    doc_store.add("notifications", _note("n2", NOON, kind="fault", link="/faults/f1"))
    doc_store.add("notifications", _note("other-user", NOON, recipient="u2"))
    doc_store.add("notifications", _note("other-tenant", NOON, tenant="T2"))

    items = inbox.notifications()

    assert [item.id for item in items] == ["n2", "n1"]
    assert items[0].kind is InboxKind.FAULT
    assert items[0].link == "/faults/f1"
    assert inbox.unread_count() == 2


def test_unknown_kind_falls_back_to_system(doc_store, inbox):
    doc_store.add("notifications", _note("n1", NOON, kind="yorum"))
    assert inbox.notifications()[0].kind is InboxKind.SYSTEM


def test_mark_read(doc_store, inbox):
    doc_store.add("notifications", _note("n1", NOON))

    assert inbox.mark_read("n1") is True
    assert inbox.mark_read("n1") is False
    assert inbox.unread_count() == 0
    assert doc_store.get("notifications", "n1")["read"] is True


def test_cannot_mark_someone_elses_notification(doc_store, inbox):
    doc_store.add("notifications", _note("theirs", NOON, recipient="u2"))

    with pytest.raises(InboxNotFoundError):
        inbox.mark_read("theirs")
    with pytest.raises(InboxNotFoundError):
        inbox.mark_read("missing")
    assert doc_store.get("notifications", "theirs")["read"] is False


def test_mark_all_read_is_one_write(doc_store, inbox):
    for i in range(3):
        doc_store.add("notifications", _note(f"n{i}", NOON - timedelta(minutes=i)))
    doc_store.add("notifications", _note("done", NOON, read=True))
    doc_store.add("notifications", _note("theirs", NOON, recipient="u2"))
    snapshots = []
    doc_store.watch(inbox._query(), snapshots.append, pytest.fail)

    assert inbox.mark_all_read() == 3
    assert inbox.mark_all_read() == 0

    assert len(snapshots) == 2
    assert inbox.unread_count() == 0
    assert doc_store.get("notifications", "theirs")["read"] is False


def test_denied_collection_reads_as_empty(doc_store, inbox):
    doc_store.add("notifications", _note("n1", NOON))
    doc_store.deny("notifications")

    assert inbox.notifications() == []
    assert inbox.unread_count() == 0


def test_roles_without_inbox(doc_store, identity):
    doc_store.add("notifications", _note("n1", NOON))
    inbox = InboxService(doc_store, identity, InboxConfig(roles=["manager", "technician"]))

    assert not inbox.enabled
    assert inbox.notifications() == []
    with pytest.raises(InboxNotFoundError):
        inbox.mark_read("n1")


def test_post_lands_in_the_callers_tenant(doc_store, inbox):
    doc_id = inbox.post("u2", "Shift handover", message="Check string 4", kind=InboxKind.STATUS)

    stored = doc_store.get("notifications", doc_id)
    assert stored["company_id"] == "T1"
    assert stored["recipient_id"] == "u2"
    assert stored["read"] is False

    recipient = InboxService(doc_store, SessionIdentity("u2", "technician", "T1"))
    assert [item.title for item in recipient.notifications()] == ["Shift handover"]
