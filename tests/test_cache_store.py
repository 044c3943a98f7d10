import pytest

from ledgermirror.mirror.storage.db import CacheStore
from ledgermirror.protocol.types.common import CacheWriteConflict, StateWriteConflict
from ledgermirror.protocol.types.player import OwnershipView
from ledgermirror.protocol.types.state import PropertyStateView, SetCooldownView, StateKind, StealCooldownView


def view(wallet, pid, slots=1, **fields):
    return OwnershipView(wallet=wallet, property_id=pid, slots_owned=slots, **fields)


def test_insert_and_read(store, wallet_a):
    entry = store.upsert_entry(view(wallet_a, 3, slots=2, purchase_timestamp=100), None)
    assert entry.last_synced_at > 0

    stored = store.get_entry(wallet_a, 3)
    assert stored == entry
    assert stored.view() == view(wallet_a, 3, slots=2, purchase_timestamp=100)
    assert store.get_entry(wallet_a, 4) is None


def test_insert_over_existing_entry_conflicts(store, wallet_a):
    store.upsert_entry(view(wallet_a, 3), None)
    with pytest.raises(CacheWriteConflict) as exc:
        store.upsert_entry(view(wallet_a, 3, slots=9), None)
    assert exc.value.pair == (wallet_a, 3)
    assert store.get_entry(wallet_a, 3).slots_owned == 1


def test_update_requires_current_token(store, wallet_a):
    first = store.upsert_entry(view(wallet_a, 3), None)
    second = store.upsert_entry(view(wallet_a, 3, slots=2), first.last_synced_at)
    assert second.last_synced_at > first.last_synced_at

    # Stale token: someone wrote since `first` was read
    with pytest.raises(CacheWriteConflict):
        store.upsert_entry(view(wallet_a, 3, slots=5), first.last_synced_at)
    assert store.get_entry(wallet_a, 3).slots_owned == 2


def test_update_of_missing_entry_conflicts(store, wallet_a):
    with pytest.raises(CacheWriteConflict):
        store.upsert_entry(view(wallet_a, 3), 12345)
    assert store.get_entry(wallet_a, 3) is None


def test_delete_requires_current_token(store, wallet_a):
    first = store.upsert_entry(view(wallet_a, 3), None)
    second = store.upsert_entry(view(wallet_a, 3, slots=2), first.last_synced_at)

    with pytest.raises(CacheWriteConflict):
        store.delete_entry(wallet_a, 3, first.last_synced_at)
    assert store.get_entry(wallet_a, 3) is not None

    store.delete_entry(wallet_a, 3, second.last_synced_at)
    assert store.get_entry(wallet_a, 3) is None


def test_queries_by_wallet_and_property(store, wallet_a, wallet_b):
    store.upsert_entry(view(wallet_a, 1), None)
    store.upsert_entry(view(wallet_a, 2), None)
    store.upsert_entry(view(wallet_b, 2), None)

    assert set(store.get_entries_for_wallet(wallet_a)) == {(wallet_a, 1), (wallet_a, 2)}
    assert set(store.get_entries_for_property(2)) == {(wallet_a, 2), (wallet_b, 2)}
    assert sorted(store.get_owners_of_property(2)) == sorted([wallet_a, wallet_b])
    assert len(store.get_all_entries()) == 3


def test_known_wallets(store, wallet_a, wallet_b):
    store.upsert_entry(view(wallet_a, 1), None)
    store.register_wallet(wallet_b)
    store.register_wallet(wallet_b)
    assert sorted(store.get_known_wallets()) == sorted([wallet_a, wallet_b])


def test_entries_survive_reopen(tmp_path, wallet_a):
    path = str(tmp_path / "persist.db")
    first = CacheStore(path)
    entry = first.upsert_entry(view(wallet_a, 7, slots=3), None)
    first.register_wallet(wallet_a)
    first.close()

    second = CacheStore(path)
    try:
        assert second.get_entry(wallet_a, 7) == entry
        assert second.get_known_wallets() == [wallet_a]
    finally:
        second.close()


def test_clear(store, wallet_a):
    store.upsert_entry(view(wallet_a, 1), None)
    store.register_wallet(wallet_a)
    store.clear()
    assert store.get_all_entries() == {}
    assert store.get_known_wallets() == []


def test_state_rows_use_the_same_token_rules(store, wallet_a):
    cooldown = SetCooldownView(wallet=wallet_a, set_id=2, last_purchase_timestamp=100,
                               cooldown_duration=3600, properties_mask=0b11, properties_count=2)
    first = store.upsert_state(cooldown, None)
    assert store.get_state(StateKind.SET_COOLDOWN, (wallet_a, 2)) == first

    with pytest.raises(StateWriteConflict) as exc:
        store.upsert_state(cooldown, None)
    assert exc.value.key == (wallet_a, 2)

    updated = cooldown.model_copy(update={"last_purchase_timestamp": 200})
    second = store.upsert_state(updated, first.last_synced_at)
    assert second.last_synced_at > first.last_synced_at
    with pytest.raises(StateWriteConflict):
        store.upsert_state(cooldown, first.last_synced_at)
    assert store.get_state(StateKind.SET_COOLDOWN, (wallet_a, 2)).value.last_purchase_timestamp == 200

    with pytest.raises(StateWriteConflict):
        store.delete_state(StateKind.SET_COOLDOWN, (wallet_a, 2), first.last_synced_at)
    store.delete_state(StateKind.SET_COOLDOWN, (wallet_a, 2), second.last_synced_at)
    assert store.get_state(StateKind.SET_COOLDOWN, (wallet_a, 2)) is None


def test_state_queries(store, wallet_a, wallet_b):
    store.upsert_state(StealCooldownView(wallet=wallet_a, property_id=4, last_steal_attempt_timestamp=10), None)
    store.upsert_state(StealCooldownView(wallet=wallet_a, property_id=5, last_steal_attempt_timestamp=11), None)
    store.upsert_state(StealCooldownView(wallet=wallet_b, property_id=4, last_steal_attempt_timestamp=12), None)
    store.upsert_state(PropertyStateView(property_id=4, available_slots=90, max_slots_per_property=100), None)

    assert set(store.get_states(StateKind.STEAL_COOLDOWN, wallet=wallet_a)) == {(wallet_a, 4), (wallet_a, 5)}
    assert len(store.get_states(StateKind.STEAL_COOLDOWN)) == 3
    assert store.get_state(StateKind.PROPERTY_STATE, (4,)).value.available_slots == 90

    # Wallets with only cooldown rows are still enumerated
    assert sorted(store.get_known_wallets()) == sorted([wallet_a, wallet_b])

    store.clear()
    assert store.get_states(StateKind.STEAL_COOLDOWN) == {}
    assert store.get_state(StateKind.PROPERTY_STATE, (4,)) is None
