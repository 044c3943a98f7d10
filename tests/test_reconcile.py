import argparse
import asyncio
import pytest

from conftest import FakeLedger, make_player, make_property, new_wallet, BASE_TS
from ledgermirror.mirror.cli.sync_cli import build_scope
from ledgermirror.mirror.core.reconcile import (
    ReconciliationEngine, UnresolvedTracker, diff_snapshots, ESCALATED_REASON,
)
from ledgermirror.protocol.config.params import MAX_PROPERTIES, MAX_SETS
from ledgermirror.protocol.types.common import AccountMode, DiffKind, ScopeNotFound
from ledgermirror.protocol.types.player import OwnershipView, OwnershipRecord
from ledgermirror.protocol.types.reconcile import CacheEntry, Scope
from ledgermirror.protocol.types.state import PropertyStateView, SetCooldownView, StateKind, StealCooldownView


def ledger_view(wallet, pid, slots=1, **fields):
    return OwnershipView(wallet=wallet, property_id=pid, slots_owned=slots,
                         purchase_timestamp=BASE_TS + pid, **fields)


def cache_view(wallet, pid, slots=1, **fields):
    return ledger_view(wallet, pid, slots, **fields)


def reconcile(engine, scope=None):
    return asyncio.run(engine.reconcile(scope))


# --- Pure diff ---

def test_diff_snapshots_classifies_each_pair():
    w = new_wallet()
    candidates = [(w, 0), (w, 1), (w, 2), (w, 3)]
    ledger = {
        (w, 0): ledger_view(w, 0),
        (w, 2): ledger_view(w, 2, shield_expiry=BASE_TS + 60),
        (w, 3): ledger_view(w, 3),
    }
    cache = {
        (w, 1): CacheEntry(**cache_view(w, 1).model_dump(), last_synced_at=1),
        (w, 2): CacheEntry(**cache_view(w, 2).model_dump(), last_synced_at=1),
        (w, 3): CacheEntry(**cache_view(w, 3).model_dump(), last_synced_at=1),
    }

    diffs = {d.pair: d for d in diff_snapshots(candidates, ledger, cache)}
    assert diffs[(w, 0)].kind == DiffKind.MISSING_IN_CACHE
    assert diffs[(w, 1)].kind == DiffKind.STALE_IN_CACHE
    assert diffs[(w, 2)].kind == DiffKind.FIELD_MISMATCH
    assert diffs[(w, 2)].fields == ["shield_expiry"]
    assert diffs[(w, 2)].mismatches() == {"shield_expiry": (BASE_TS + 60, 0)}
    assert (w, 3) not in diffs


def test_unresolved_pairs_are_never_classified():
    w = new_wallet()
    cache = {(w, 1): CacheEntry(**cache_view(w, 1).model_dump(), last_synced_at=1)}
    assert diff_snapshots([(w, 1)], {}, cache, unresolved=[(w, 1)]) == []


def test_zero_slot_ledger_view_counts_as_absent():
    w = new_wallet()
    ledger = {(w, 1): ledger_view(w, 1, slots=0)}
    assert diff_snapshots([(w, 1)], ledger, {}) == []


# --- Engine ---

def test_missing_in_cache(ledger, store, config, wallet_a):
    ledger.set_player(make_player(wallet_a, {3: 2}))
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.pairs_checked == MAX_PROPERTIES
    assert report.missing_in_cache == 1
    assert report.diffs[0].pair == (wallet_a, 3)
    assert report.diffs[0].ledger_value.slots_owned == 2
    # Read-only: nothing written
    assert store.get_all_entries() == {}


def test_stale_when_slots_drop_to_zero(ledger, store, config, wallet_a):
    store.upsert_entry(cache_view(wallet_a, 5, slots=1), None)
    ledger.set_player(make_player(wallet_a, {}))
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.stale_in_cache == 1
    assert report.diffs[0].cache_value.pair == (wallet_a, 5)


def test_stale_when_player_account_is_gone(ledger, store, config, wallet_a):
    store.upsert_entry(cache_view(wallet_a, 5), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.stale_in_cache == 1
    assert report.unresolved == 0


def test_field_mismatch(ledger, store, config, wallet_a):
    shield = [0] * MAX_PROPERTIES
    shield[2] = BASE_TS + 3600
    ledger.set_player(make_player(wallet_a, {2: 1}, property_shield_expiry=shield))
    store.upsert_entry(cache_view(wallet_a, 2), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.mismatched == 1
    assert report.diffs[0].fields == ["shield_expiry"]


def test_in_sync(ledger, store, config, wallet_a):
    ledger.set_player(make_player(wallet_a, {2: 1}))
    store.upsert_entry(cache_view(wallet_a, 2), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.in_sync
    assert report.diffs == []


def test_one_fetch_per_wallet(ledger, store, config, wallet_a):
    ledger.set_player(make_player(wallet_a, {1: 1, 2: 1}))
    engine = ReconciliationEngine(ledger, store, config)
    reconcile(engine, Scope.for_wallet(wallet_a))
    assert len(ledger.calls) == 1


def test_partial_failure_only_affects_failing_wallet(ledger, store, config, wallet_a, wallet_b):
    ledger.set_player(make_player(wallet_a, {1: 1}))
    ledger.fail_player(wallet_b)
    store.register_wallet(wallet_a)
    store.upsert_entry(cache_view(wallet_b, 4), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.everything())
    assert report.pairs_checked == 2 * MAX_PROPERTIES
    assert report.missing_in_cache == 1
    assert report.stale_in_cache == 0       # wallet_b's entry is not judged stale
    assert report.unresolved == MAX_PROPERTIES
    assert all(p.wallet == wallet_b for p in report.unresolved_pairs)
    assert report.unresolved_pairs[0].reason.startswith("transient:")
    assert not report.in_sync


def test_malformed_account_is_unresolved(ledger, store, config, wallet_a):
    ledger.accounts[ledger.player_address(wallet_a)] = b"\x00" * 1200
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.unresolved == MAX_PROPERTIES
    assert report.unresolved_pairs[0].reason.startswith("malformed:")
    # Malformed bytes are not retried
    assert len(ledger.calls) == 1


def test_owner_mismatch_is_malformed(ledger, store, config, wallet_a, wallet_b):
    # wallet_a's address holds wallet_b's account bytes
    ledger.set_player(make_player(wallet_b, {1: 1}))
    ledger.accounts[ledger.player_address(wallet_a)] = ledger.accounts[ledger.player_address(wallet_b)]
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.unresolved == MAX_PROPERTIES
    assert "does not match wallet" in report.unresolved_pairs[0].reason


def test_property_scope_uses_cached_owners_and_extra_wallets(ledger, store, config, wallet_a, wallet_b):
    store.upsert_entry(cache_view(wallet_a, 7), None)
    ledger.set_player(make_player(wallet_a, {7: 1}))
    ledger.set_player(make_player(wallet_b, {7: 3}))
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_property(7))
    assert report.pairs_checked == 1
    assert report.in_sync

    report = reconcile(engine, Scope.for_property(7, extra_wallets=[wallet_b]))
    assert report.pairs_checked == 2
    assert report.missing_in_cache == 1
    assert report.diffs[0].pair == (wallet_b, 7)


def test_invalid_cached_wallet_is_unresolved(ledger, store, config):
    store.upsert_entry(cache_view("not-a-wallet", 1), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_property(1))
    assert report.unresolved == 1
    assert report.unresolved_pairs[0].reason.startswith("invalid wallet:")


def test_unresolved_pairs_escalate(ledger, store, config, wallet_a):
    ledger.fail_player(wallet_a)
    engine = ReconciliationEngine(ledger, store, config)
    scope = Scope(wallet=wallet_a, property_id=3)

    for _ in range(config.max_unresolved_streak - 1):
        report = reconcile(engine, scope)
        assert report.escalated == []

    report = reconcile(engine, scope)
    assert len(report.escalated) == 1
    assert report.escalated[0].streak == config.max_unresolved_streak
    assert engine.tracker.is_flagged((wallet_a, 3))

    # Flagged pairs are reported but no longer fetched
    calls = len(ledger.calls)
    report = reconcile(engine, scope)
    assert len(ledger.calls) == calls
    assert report.unresolved_pairs[0].reason == ESCALATED_REASON

    # Cleared: fetched again
    ledger.failing.clear()
    ledger.set_player(make_player(wallet_a, {3: 1}))
    engine.tracker.clear_flag(wallet_a, 3)
    report = reconcile(engine, scope)
    assert report.missing_in_cache == 1
    assert report.unresolved == 0


def test_tracker_resets_on_resolution():
    tracker = UnresolvedTracker(threshold=2)
    pair = (new_wallet(), 1)
    assert tracker.record_unresolved(pair, "timeout").streak == 1
    tracker.record_resolved(pair)
    assert tracker.streak(pair) == 0
    assert not tracker.record_unresolved(pair, "timeout").escalated
    assert tracker.record_unresolved(pair, "timeout").escalated
    assert tracker.flagged() == [pair]


def test_ownership_account_mode(store, config, wallet_a):
    config.account_mode = AccountMode.OWNERSHIP
    ledger = FakeLedger()
    ledger.set_ownership(OwnershipRecord(
        player=wallet_a, property_id=3, slots_owned=2, slots_shielded=1,
        purchase_timestamp=BASE_TS, shield_expiry=BASE_TS + 10, shield_cooldown_duration=600,
        steal_protection_expiry=0, bump=251,
    ))
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope(wallet=wallet_a, property_id=3))
    assert len(ledger.calls) == 1
    assert report.missing_in_cache == 1
    assert report.diffs[0].ledger_value.shield_cooldown == 600

    # One fetch per pair across the whole wallet
    ledger.calls.clear()
    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert len(ledger.calls) == MAX_PROPERTIES
    assert report.missing_in_cache == 1


def test_fetch_player_record(ledger, store, config, wallet_a, wallet_b):
    record = make_player(wallet_a, {0: 1})
    ledger.set_player(record)
    engine = ReconciliationEngine(ledger, store, config)

    assert asyncio.run(engine.fetch_player_record(wallet_a)) == record
    with pytest.raises(ScopeNotFound):
        asyncio.run(engine.fetch_player_record(wallet_b))


def test_cancelled_fetch_returns_cancelled_report(ledger, store, config, wallet_a):
    ledger.set_player(make_player(wallet_a, {1: 1}))
    engine = ReconciliationEngine(ledger, store, config)

    report = asyncio.run(engine.reconcile(Scope.for_wallet(wallet_a), should_stop=lambda: True))
    assert report.cancelled
    assert report.diffs == []


def test_scope_rejects_out_of_range_property(wallet_a):
    with pytest.raises(ValueError, match="property_id"):
        Scope.for_property(MAX_PROPERTIES)
    with pytest.raises(ValueError, match="property_id"):
        Scope(wallet=wallet_a, property_id=-1)
    assert Scope.for_property(MAX_PROPERTIES - 1).property_id == MAX_PROPERTIES - 1


def test_cli_scope_with_out_of_range_property_is_an_error():
    args = argparse.Namespace(wallet=None, property=30, extra_wallet=[])
    with pytest.raises(ValueError, match="less than 22"):
        build_scope(args)


def test_tracker_counts_overlapping_passes_once():
    tracker = UnresolvedTracker(threshold=3)
    pair = (new_wallet(), 1)
    assert tracker.record_unresolved(pair, "timeout", (0.0, 2.0)).streak == 1
    # Started before the counted pass finished fetching
    assert tracker.record_unresolved(pair, "timeout", (1.0, 3.0)).streak == 1
    assert tracker.record_unresolved(pair, "timeout", (2.0, 4.0)).streak == 2
    assert not tracker.is_flagged(pair)


def test_concurrent_passes_extend_the_streak_once(ledger, store, config, wallet_a):
    ledger.fail_player(wallet_a)
    engine = ReconciliationEngine(ledger, store, config)
    scope = Scope(wallet=wallet_a, property_id=3)

    async def overlapping():
        return await asyncio.gather(engine.reconcile(scope), engine.reconcile(scope))

    first, second = asyncio.run(overlapping())
    assert first.unresolved == second.unresolved == 1
    assert engine.tracker.streak((wallet_a, 3)) == 1

    reconcile(engine, scope)
    assert engine.tracker.streak((wallet_a, 3)) == 2


def cooldown_player(wallet, slots=None, set_ts=BASE_TS + 1, steal_ts=BASE_TS + 2):
    set_timestamps = [0] * MAX_SETS
    set_timestamps[1] = set_ts
    masks = [0] * MAX_SETS
    masks[1] = 0b1
    steal = [0] * MAX_PROPERTIES
    steal[4] = steal_ts
    return make_player(wallet, slots or {3: 1}, set_cooldown_timestamp=set_timestamps,
                       set_properties_mask=masks, steal_cooldown_timestamp=steal)


def test_wallet_scope_checks_cooldowns(ledger, store, config, wallet_a):
    ledger.set_player(cooldown_player(wallet_a))
    store.upsert_state(SetCooldownView(wallet=wallet_a, set_id=1, last_purchase_timestamp=BASE_TS,
                                       properties_mask=0b1, properties_count=1), None)
    store.upsert_state(StealCooldownView(wallet=wallet_a, property_id=6, last_steal_attempt_timestamp=1), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_wallet(wallet_a))
    assert report.states_checked == MAX_SETS + MAX_PROPERTIES
    kinds = {(d.state_kind, d.key): d for d in report.state_diffs}
    assert set(kinds) == {
        (StateKind.SET_COOLDOWN, (wallet_a, 1)),
        (StateKind.STEAL_COOLDOWN, (wallet_a, 4)),
        (StateKind.STEAL_COOLDOWN, (wallet_a, 6)),
    }
    assert kinds[(StateKind.SET_COOLDOWN, (wallet_a, 1))].fields == ["last_purchase_timestamp"]
    assert kinds[(StateKind.STEAL_COOLDOWN, (wallet_a, 4))].kind == DiffKind.MISSING_IN_CACHE
    assert kinds[(StateKind.STEAL_COOLDOWN, (wallet_a, 6))].kind == DiffKind.STALE_IN_CACHE
    # Counted with the pair diffs (pair 3 is missing too)
    assert (report.missing_in_cache, report.stale_in_cache, report.mismatched) == (2, 1, 1)
    # Still one fetch for the wallet
    assert len(ledger.calls) == 1


def test_single_pair_scope_skips_cooldowns(ledger, store, config, wallet_a):
    ledger.set_player(cooldown_player(wallet_a))
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope(wallet=wallet_a, property_id=3))
    assert report.states_checked == 0
    assert report.state_diffs == []


def test_property_scope_checks_property_state(ledger, store, config):
    ledger.set_property(make_property(5, available_slots=80))
    store.upsert_state(PropertyStateView(property_id=5, set_id=1, available_slots=100,
                                         max_slots_per_property=100, max_per_player=10), None)
    store.upsert_state(PropertyStateView(property_id=6, available_slots=1), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_property(5))
    assert report.states_checked == 1
    assert len(report.state_diffs) == 1
    diff = report.state_diffs[0]
    assert diff.key == (5,)
    assert diff.mismatches() == {"available_slots": (80, 100)}

    # Full scope covers every property; 6 has no Property account
    report = reconcile(engine, Scope.everything())
    assert report.states_checked == MAX_PROPERTIES
    stale = [d for d in report.state_diffs if d.kind == DiffKind.STALE_IN_CACHE]
    assert [d.key for d in stale] == [(6,)]


def test_property_state_failure_is_unresolved(ledger, store, config):
    ledger.set_property(make_property(2))
    ledger.failing.add(ledger.property_address(2))
    store.upsert_state(PropertyStateView(property_id=2, available_slots=1), None)
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_property(2))
    assert report.state_diffs == []
    assert report.unresolved_states[0].key == (2,)
    assert report.unresolved_states[0].reason.startswith("transient:")
    assert not report.in_sync


def test_misplaced_property_account_is_malformed(ledger, store, config):
    ledger.set_property(make_property(3))
    ledger.accounts[ledger.property_address(2)] = ledger.accounts[ledger.property_address(3)]
    engine = ReconciliationEngine(ledger, store, config)

    report = reconcile(engine, Scope.for_property(2))
    assert report.unresolved_states[0].reason.startswith("malformed:")
