from datetime import timedelta

from app.models.activity import Category, ItemKey
from app.services.hidden_set import HiddenSet


def test_hidden_items_persist_per_user(kv_store, clock):
    first = HiddenSet(kv_store, "u1", clock=clock)
    assert first.add(ItemKey(Category.FAULTS, "f1")) is True
    assert first.add(ItemKey(Category.FAULTS, "f1")) is False

    reloaded = HiddenSet(kv_store, "u1", clock=clock)
    other_user = HiddenSet(kv_store, "u2", clock=clock)

    assert ItemKey(Category.FAULTS, "f1") in reloaded
    assert ItemKey(Category.FAULTS, "f1") not in other_user


def test_same_id_in_another_category_is_a_different_item(hidden):
    hidden.add(ItemKey(Category.FAULTS, "42"))
    assert ItemKey(Category.POWER_OUTAGES, "42") not in hidden


def test_entries_expire_after_ttl(kv_store, clock):
    hidden = HiddenSet(kv_store, "u1", ttl=timedelta(days=30), clock=clock)
    hidden.add(ItemKey(Category.FAULTS, "old"))

    clock.advance(days=31)
    hidden.add(ItemKey(Category.FAULTS, "new"))

    assert ItemKey(Category.FAULTS, "old") not in hidden
    assert ItemKey(Category.FAULTS, "new") in hidden


def test_expired_entries_are_dropped_on_load(kv_store, clock):
    HiddenSet(kv_store, "u1", ttl=timedelta(days=1), clock=clock).add(ItemKey(Category.FAULTS, "f1"))
    clock.advance(days=2)
    assert len(HiddenSet(kv_store, "u1", ttl=timedelta(days=1), clock=clock)) == 0


def test_size_cap_keeps_most_recent(kv_store, clock):
    hidden = HiddenSet(kv_store, "u1", ttl=None, max_entries=3, clock=clock)
    for i in range(5):
        hidden.add(ItemKey(Category.WORK_REPORTS, f"r{i}"))
        clock.advance(minutes=1)

    assert len(hidden) == 3
    assert hidden.keys() == {ItemKey(Category.WORK_REPORTS, f"r{i}") for i in (2, 3, 4)}


def test_unbounded_when_limits_disabled(kv_store, clock):
    hidden = HiddenSet(kv_store, "u1", ttl=None, max_entries=None, clock=clock)
    added = hidden.add_many(ItemKey(Category.FAULTS, str(i)) for i in range(50))
    clock.advance(days=3650)
    assert added == 50
    assert len(HiddenSet(kv_store, "u1", ttl=None, max_entries=None, clock=clock)) == 50
