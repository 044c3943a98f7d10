# MIT License
# Copyright (c) 2025 Hashborn

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .snapshots import (
    LedgerSource, LedgerSnapshot, ledger_snapshot, scope_candidates, cache_snapshot, make_source,
    property_snapshot, fetch_property_state, scope_properties, state_cache_snapshot,
)
from ..ledger.reader import LedgerReader, fetch_with_retry
from ..storage.db import CacheStore
from ...protocol.codec.decoder import decode_player_account
from ...protocol.config.params import SyncConfig, CURRENT_NETWORK, MAX_PROPERTIES, MAX_SETS
from ...protocol.crypto.addresses import derive_player_address
from ...protocol.types.common import DiffKind, ScopeNotFound
from ...protocol.types.player import OwnershipView, PlayerRecord, OWNERSHIP_FIELDS
from ...protocol.types.reconcile import (
    CacheEntry, Pair, ReconciliationDiff, ReconciliationReport, Scope, UnresolvedPair,
)
from ...protocol.types.state import (
    CachedState, StateDiff, StateKey, StateKind, StateValue, UnresolvedState,
)

logger = logging.getLogger(__name__)

ESCALATED_REASON = "escalated: awaiting manual inspection"


def diff_pair(wallet: str, property_id: int,
              ledger_view: Optional[OwnershipView],
              cache_entry: Optional[CacheEntry]) -> Optional[ReconciliationDiff]:
    """Classifies one pair. The ledger is authoritative; None means in sync."""
    if ledger_view is not None and not ledger_view.exists:
        ledger_view = None

    if ledger_view is None and cache_entry is None:
        return None
    if cache_entry is None:
        return ReconciliationDiff(wallet=wallet, property_id=property_id,
                                  kind=DiffKind.MISSING_IN_CACHE, ledger_value=ledger_view)
    if ledger_view is None:
        return ReconciliationDiff(wallet=wallet, property_id=property_id,
                                  kind=DiffKind.STALE_IN_CACHE, cache_value=cache_entry)

    differing = [name for name in OWNERSHIP_FIELDS
                 if getattr(ledger_view, name) != getattr(cache_entry, name)]
    if not differing:
        return None
    return ReconciliationDiff(wallet=wallet, property_id=property_id, kind=DiffKind.FIELD_MISMATCH,
                              ledger_value=ledger_view, cache_value=cache_entry, fields=differing)


def diff_state(kind: StateKind, key: StateKey,
               ledger_view: Optional[StateValue],
               cached: Optional[CachedState]) -> Optional[StateDiff]:
    """diff_pair for cooldown and property-state rows."""
    if ledger_view is not None and not ledger_view.exists:
        ledger_view = None
    cache_value = cached.value if cached is not None else None
    token = cached.last_synced_at if cached is not None else None

    if ledger_view is None and cache_value is None:
        return None
    if cache_value is None:
        return StateDiff(state_kind=kind, key=key, kind=DiffKind.MISSING_IN_CACHE, ledger_value=ledger_view)
    if ledger_view is None:
        return StateDiff(state_kind=kind, key=key, kind=DiffKind.STALE_IN_CACHE,
                         cache_value=cache_value, cache_token=token)

    differing = [name for name in ledger_view.value_fields
                 if getattr(ledger_view, name) != getattr(cache_value, name)]
    if not differing:
        return None
    return StateDiff(state_kind=kind, key=key, kind=DiffKind.FIELD_MISMATCH, ledger_value=ledger_view,
                     cache_value=cache_value, cache_token=token, fields=differing)


def cooldown_views(wallet: str, record: Optional[PlayerRecord]) -> Dict[Tuple[StateKind, StateKey], Optional[StateValue]]:
    """Every cooldown key of a wallet; values are None when it has no PlayerAccount."""
    if record is not None:
        return {(view.state_kind, view.key): view for view in record.cooldown_views()}
    views: Dict[Tuple[StateKind, StateKey], Optional[StateValue]] = {}
    for set_id in range(MAX_SETS):
        views[(StateKind.SET_COOLDOWN, (wallet, set_id))] = None
    for property_id in range(MAX_PROPERTIES):
        views[(StateKind.STEAL_COOLDOWN, (wallet, property_id))] = None
    return views


def diff_snapshots(candidates: Iterable[Pair],
                   ledger: Dict[Pair, OwnershipView],
                   cache: Dict[Pair, CacheEntry],
                   unresolved: Iterable[Pair] = ()) -> List[ReconciliationDiff]:
    """
    Pure comparison of a ledger snapshot against a cache snapshot.

    Args:
        candidates: Pairs covered by the scope
        ledger: Pairs that exist on-chain
        cache: Cached entries
        unresolved: Pairs whose ledger side is unknown this pass; never classified

    Returns:
        Diffs in candidate order
    """
    skip = set(unresolved)
    diffs = []
    for pair in candidates:
        if pair in skip:
            continue
        diff = diff_pair(pair[0], pair[1], ledger.get(pair), cache.get(pair))
        if diff is not None:
            diffs.append(diff)
    return diffs


class UnresolvedTracker:
    """
    Counts consecutive unresolved passes per pair across cycles.
    At `threshold` the pair is flagged and no longer fetched until cleared.

    A pass is identified by its ledger fetch window (monotonic start, end).
    Passes whose windows overlap the last counted one (a periodic cycle and
    an on-demand cycle running together) saw the same outage and count once.
    """

    def __init__(self, threshold: int = 5):
        self.threshold = max(1, threshold)
        self._streaks: Dict[Pair, int] = {}
        self._windows: Dict[Pair, Tuple[float, float]] = {}
        self._flagged: Set[Pair] = set()

    def record_unresolved(self, pair: Pair, reason: str,
                          window: Optional[Tuple[float, float]] = None) -> UnresolvedPair:
        last = self._windows.get(pair)
        overlaps = (window is not None and last is not None
                    and window[0] < last[1] and last[0] < window[1])
        if overlaps:
            streak = self._streaks.get(pair, 0)
        else:
            streak = self._streaks.get(pair, 0) + 1
            self._streaks[pair] = streak
            if window is not None:
                self._windows[pair] = window

        if streak >= self.threshold and pair not in self._flagged:
            self._flagged.add(pair)
            logger.error(
                f"{pair[0]} property {pair[1]} unresolved for {streak} consecutive passes, "
                f"flagged for manual inspection (last reason: {reason})"
            )
        return UnresolvedPair(wallet=pair[0], property_id=pair[1], reason=reason,
                              streak=streak, escalated=pair in self._flagged)

    def record_resolved(self, pair: Pair):
        self._streaks.pop(pair, None)
        self._windows.pop(pair, None)

    def is_flagged(self, pair: Pair) -> bool:
        return pair in self._flagged

    def flagged(self) -> List[Pair]:
        return sorted(self._flagged)

    def streak(self, pair: Pair) -> int:
        return self._streaks.get(pair, 0)

    def clear_flag(self, wallet: str, property_id: int):
        pair = (wallet, property_id)
        self._flagged.discard(pair)
        self._streaks.pop(pair, None)
        self._windows.pop(pair, None)


@dataclass
class PassSnapshot:
    """Both sides of one reconciliation pass, as read."""
    scope: Scope
    candidates: List[Pair] = field(default_factory=list)
    ledger: LedgerSnapshot = field(default_factory=LedgerSnapshot)
    cache: Dict[Pair, CacheEntry] = field(default_factory=dict)
    skipped: List[Pair] = field(default_factory=list)   # flagged pairs, not fetched
    started_at: float = 0.0
    window: Tuple[float, float] = (0.0, 0.0)            # monotonic ledger fetch window

    # Cooldowns and property state, keyed by (kind, key)
    state_ledger: Dict[Tuple[StateKind, StateKey], Optional[StateValue]] = field(default_factory=dict)
    state_cache: Dict[Tuple[StateKind, StateKey], CachedState] = field(default_factory=dict)
    state_unresolved: Dict[Tuple[StateKind, StateKey], str] = field(default_factory=dict)
    properties_cancelled: bool = False

    @property
    def cancelled(self) -> bool:
        return self.ledger.cancelled or self.properties_cancelled
class ReconciliationEngine:
    def __init__(self,
                 reader: LedgerReader,
                 store: CacheStore,
                 config: Optional[SyncConfig] = None,
                 source: Optional[LedgerSource] = None,
                 tracker: Optional[UnresolvedTracker] = None):
        self.reader = reader
        self.store = store
        self.config = config or CURRENT_NETWORK
        self.source = source or make_source(
            self.config.account_mode, reader, self.config.program_id,
            attempts=self.config.fetch_retries, backoff=self.config.retry_backoff_sec,
        )
        self.tracker = tracker or UnresolvedTracker(self.config.max_unresolved_streak)

    async def fetch(self, scope: Optional[Scope] = None,
                    should_stop: Optional[Callable[[], bool]] = None) -> PassSnapshot:
        """Reads the ledger and cache sides of a scope."""
        scope = scope or Scope.everything()
        started_at = time.time()
        window_start = time.monotonic()

        candidates_by_wallet = await asyncio.to_thread(scope_candidates, self.store, scope)
        candidates = [(w, pid) for w, pids in candidates_by_wallet.items() for pid in pids]

        # Flagged pairs are reported but not fetched
        skipped = [pair for pair in candidates if self.tracker.is_flagged(pair)]
        to_fetch: Dict[str, List[int]] = {}
        for wallet, pid in candidates:
            if not self.tracker.is_flagged((wallet, pid)):
                to_fetch.setdefault(wallet, []).append(pid)

        # Property state first, then players
        property_ids = scope_properties(scope)
        properties = await property_snapshot(
            self.reader, self.source.program_id, property_ids,
            self.config.fetch_retries, self.config.retry_backoff_sec,
            self.config.max_concurrent_fetches, should_stop,
        )
        ledger = await ledger_snapshot(self.source, to_fetch, self.config.max_concurrent_fetches, should_stop)
        window = (window_start, time.monotonic())
        cache = await asyncio.to_thread(cache_snapshot, self.store, scope)

        state_ledger: Dict[Tuple[StateKind, StateKey], Optional[StateValue]] = {}
        for pid, state in properties.states.items():
            state_ledger[(StateKind.PROPERTY_STATE, (pid,))] = state
        state_unresolved = {
            (StateKind.PROPERTY_STATE, (pid,)): reason for pid, reason in properties.unresolved.items()
        }

        # Cooldowns ride along with whole-wallet passes only
        cooldown_wallets = list(ledger.records) if scope.property_id is None else []
        for wallet in cooldown_wallets:
            state_ledger.update(cooldown_views(wallet, ledger.records[wallet]))
        state_cache = await asyncio.to_thread(
            state_cache_snapshot, self.store, cooldown_wallets, list(properties.states)
        )

        return PassSnapshot(scope=scope, candidates=candidates, ledger=ledger, cache=cache,
                            skipped=skipped, started_at=started_at, window=window,
                            state_ledger=state_ledger, state_cache=state_cache,
                            state_unresolved=state_unresolved,
                            properties_cancelled=properties.cancelled)

    def diff(self, snapshot: PassSnapshot) -> ReconciliationReport:
        """Classifies a PassSnapshot. Pure apart from updating unresolved streaks."""
        report = ReconciliationReport(scope=str(snapshot.scope), started_at=snapshot.started_at)
        report.pairs_checked = len(snapshot.candidates)

        unresolved = set(snapshot.ledger.unresolved) | set(snapshot.skipped)
        for diff in diff_snapshots(snapshot.candidates, snapshot.ledger.views, snapshot.cache, unresolved):
            report.add_diff(diff)
            logger.info(f"Drift: {diff.describe()}")

        for pair in snapshot.candidates:
            if pair in snapshot.ledger.unresolved:
                report.add_unresolved(self.tracker.record_unresolved(
                    pair, snapshot.ledger.unresolved[pair], snapshot.window,
                ))
            elif pair in snapshot.skipped:
                report.add_unresolved(UnresolvedPair(
                    wallet=pair[0], property_id=pair[1], reason=ESCALATED_REASON,
                    streak=self.tracker.streak(pair), escalated=True,
                ))
            else:
                self.tracker.record_resolved(pair)

        report.states_checked = len(snapshot.state_ledger) + len(snapshot.state_unresolved)
        for (kind, key), ledger_view in snapshot.state_ledger.items():
            state_diff = diff_state(kind, key, ledger_view, snapshot.state_cache.get((kind, key)))
            if state_diff is not None:
                report.add_state_diff(state_diff)
                logger.info(f"Drift: {state_diff.describe()}")
        for (kind, key), reason in snapshot.state_unresolved.items():
            report.add_unresolved_state(UnresolvedState(state_kind=kind, key=key, reason=reason))

        report.finished_at = time.time()
        return report

    async def reconcile(self, scope: Optional[Scope] = None,
                        should_stop: Optional[Callable[[], bool]] = None) -> ReconciliationReport:
        snapshot = await self.fetch(scope, should_stop)
        if snapshot.cancelled:
            return ReconciliationReport(scope=str(snapshot.scope), cancelled=True,
                                        started_at=snapshot.started_at, finished_at=time.time())
        return self.diff(snapshot)

    async def fetch_player_record(self, wallet: str) -> PlayerRecord:
        """
        Fetches and decodes one wallet's PlayerAccount.

        Raises:
            ScopeNotFound: The ledger has no account for this wallet
            TransientError: Retries exhausted
            MalformedAccount: Account bytes do not match the schema
        """
        address = derive_player_address(self.config.program_id, wallet)
        result = await fetch_with_retry(self.reader, address, self.config.fetch_retries,
                                        self.config.retry_backoff_sec)
        if not result.is_found:
            raise ScopeNotFound(f"No PlayerAccount for wallet {wallet} (address {address})")
        return decode_player_account(result.data, address=str(address))

    async def fetch_pair_view(self, wallet: str, property_id: int) -> Optional[OwnershipView]:
        """
        Re-reads one pair from the ledger. None when the pair does not exist.

        Raises:
            TransientError: Retries exhausted
            MalformedAccount: Account bytes do not match the schema
        """
        unit = await self.source.fetch_unit(wallet, [property_id])
        view = unit.views.get(property_id)
        return view if view is not None and view.exists else None

    async def fetch_state_view(self, kind: StateKind, key: StateKey) -> Optional[StateValue]:
        """Same as fetch_pair_view, for one cooldown or property-state row."""
        if kind == StateKind.PROPERTY_STATE:
            return await fetch_property_state(self.reader, self.source.program_id, key[0],
                                              self.config.fetch_retries, self.config.retry_backoff_sec)

        wallet, index = key
        unit = await self.source.fetch_unit(wallet, [])
        if unit.record is None:
            return None
        if kind == StateKind.SET_COOLDOWN:
            view = unit.record.set_cooldown_view(index)
        else:
            view = unit.record.steal_cooldown_view(index)
        return view if view.exists else None
