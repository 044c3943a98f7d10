# MIT License
# Copyright (c) 2025 Hashborn

import asyncio
import contextlib
import logging
import sqlite3
import time
from enum import Enum, auto
from itertools import count
from typing import Callable, Dict, Hashable, List, Optional, Union

from .reconcile import ReconciliationEngine, diff_pair, diff_state
from ..observability.metrics import update_cycle_metrics
from ...protocol.config.params import SyncConfig
from ...protocol.crypto.addresses import is_valid_wallet
from ...protocol.types.common import (
    CacheWriteConflict, DiffKind, MalformedAccount, StateWriteConflict, TransientError,
)
from ...protocol.types.reconcile import Pair, ReconciliationDiff, ReconciliationReport, Scope
from ...protocol.types.state import StateDiff

logger = logging.getLogger(__name__)

AnyDiff = Union[ReconciliationDiff, StateDiff]


def _lock_key(diff: AnyDiff) -> Hashable:
    if isinstance(diff, StateDiff):
        return (diff.state_kind.value,) + tuple(diff.key)
    return diff.pair


def _label(diff: AnyDiff) -> str:
    if isinstance(diff, StateDiff):
        return f"{diff.state_kind.value} {diff.key}"
    return f"{diff.wallet[:8]}... property {diff.property_id}"


class SyncState(Enum):
    IDLE = auto()
    FETCHING = auto()
    DIFFING = auto()
    APPLYING = auto()
    REPORTING = auto()


class ApplyOutcome(Enum):
    APPLIED = auto()
    FAILED = auto()
    DEFERRED = auto()
    SKIPPED = auto()    # cancelled before the write started


class SyncCycle:
    """One run of fetch -> diff -> apply -> report."""

    def __init__(self, cycle_id: int, scope: Scope):
        self.cycle_id = cycle_id
        self.scope = scope
        self.state = SyncState.IDLE
        self.cancelled = False

    def transition(self, state: SyncState):
        logger.debug(f"Cycle {self.cycle_id} [{self.scope}]: {self.state.name} -> {state.name}")
        self.state = state


class SyncOrchestrator:
    """
    Drives sync cycles on a timer and on demand.

    Cycles may overlap (a periodic full cycle and an on-demand wallet cycle).
    Writes to the same (wallet, property) pair are serialized by a per-pair
    lock; writes to different pairs run concurrently. Cooldown and
    property-state rows follow the same rules. Every cache write is
    conditional on the last_synced_at read with the entry, so a pair changed
    by another writer in between is re-read from cache and ledger and
    re-checked instead of being overwritten.
    """

    def __init__(self, engine: ReconciliationEngine, config: Optional[SyncConfig] = None):
        self.engine = engine
        self.store = engine.store
        self.config = config or engine.config

        self._cycle_ids = count(1)
        self.active_cycles: Dict[int, SyncCycle] = {}
        self.last_report: Optional[ReconciliationReport] = None

        # Per-row write locks, dropped once nobody holds or waits on them
        self._pair_locks: Dict[Hashable, asyncio.Lock] = {}
        self._pair_lock_refs: Dict[Hashable, int] = {}

        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None

        # Callbacks (set by higher level)
        self.on_report: Optional[Callable[[ReconciliationReport], None]] = None

    @property
    def state(self) -> SyncState:
        """State of the most recently started active cycle (IDLE when none)."""
        if not self.active_cycles:
            return SyncState.IDLE
        return self.active_cycles[max(self.active_cycles)].state

    # --- Cycles ---

    async def run_sync_cycle(self, scope: Optional[Scope] = None) -> ReconciliationReport:
        """
        Runs one complete cycle for a scope (full scope when None).

        Returns the cycle's report. A cancelled cycle returns a report with
        cancelled=True; writes already committed before cancellation stay.
        """
        scope = scope or Scope.everything()
        cycle = SyncCycle(next(self._cycle_ids), scope)
        self.active_cycles[cycle.cycle_id] = cycle

        try:
            cycle.transition(SyncState.FETCHING)
            snapshot = await self.engine.fetch(scope, should_stop=lambda: cycle.cancelled)

            if snapshot.cancelled or cycle.cancelled:
                report = ReconciliationReport(scope=str(scope), cancelled=True, started_at=snapshot.started_at)
            else:
                cycle.transition(SyncState.DIFFING)
                report = self.engine.diff(snapshot)

                cycle.transition(SyncState.APPLYING)
                await self._apply(report, cycle)
                if cycle.cancelled:
                    report.cancelled = True

            cycle.transition(SyncState.REPORTING)
            report.finished_at = time.time()
            self._publish(report)
            return report
        finally:
            cycle.transition(SyncState.IDLE)
            self.active_cycles.pop(cycle.cycle_id, None)

    async def request_sync(self, scope: Scope) -> ReconciliationReport:
        """On-demand cycle for one wallet or property, e.g. after a user action."""
        logger.info(f"Sync requested for {scope}")
        return await self.run_sync_cycle(scope)

    def cancel(self):
        """Asks every active cycle to stop at its next checkpoint."""
        for cycle in self.active_cycles.values():
            if not cycle.cancelled:
                logger.info(f"Cancelling cycle {cycle.cycle_id} [{cycle.scope}] in state {cycle.state.name}")
                cycle.cancelled = True

    # --- Apply ---

    async def _apply(self, report: ReconciliationReport, cycle: SyncCycle):
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_writes))

        async def apply_one(diff: AnyDiff) -> ApplyOutcome:
            async with semaphore:
                if cycle.cancelled:
                    return ApplyOutcome.SKIPPED
                async with self._pair_lock(_lock_key(diff)):
                    return await self._apply_diff(diff)

        diffs: List[AnyDiff] = list(report.diffs) + list(report.state_diffs)
        outcomes = await asyncio.gather(*(apply_one(diff) for diff in diffs))
        for outcome in outcomes:
            if outcome == ApplyOutcome.APPLIED:
                report.applied += 1
            elif outcome == ApplyOutcome.FAILED:
                report.failed += 1
            elif outcome == ApplyOutcome.DEFERRED:
                report.deferred += 1

    async def _apply_diff(self, diff: AnyDiff) -> ApplyOutcome:
        """
        Applies one corrective write. On a write conflict both sides are read
        again: the cache for the other writer's value, the ledger for a value
        fresher than this cycle's snapshot. The write is retried once against
        that fresh diff. A pair whose ledger side cannot be re-read is deferred.
        """
        current = diff
        for attempt in range(2):
            try:
                await asyncio.to_thread(self._write, current)
                return ApplyOutcome.APPLIED
            except (CacheWriteConflict, StateWriteConflict):
                if attempt == 1:
                    logger.warning(f"{_label(diff)}: write conflict twice, deferring to next cycle")
                    return ApplyOutcome.DEFERRED
            except sqlite3.Error as e:
                logger.error(f"Cache write failed for {_label(diff)}: {e}")
                return ApplyOutcome.FAILED

            try:
                current = await self._recheck(current)
            except (TransientError, MalformedAccount, ValueError) as e:
                logger.warning(f"{_label(diff)}: ledger re-read after write conflict failed, deferring: {e}")
                return ApplyOutcome.DEFERRED
            except sqlite3.Error as e:
                logger.error(f"Cache re-read failed for {_label(diff)}: {e}")
                return ApplyOutcome.FAILED

            if current is None:
                # The other writer already stored the current ledger value
                return ApplyOutcome.APPLIED
            logger.debug(f"Retrying after conflict: {current.describe()}")

        return ApplyOutcome.DEFERRED

    async def _recheck(self, diff: AnyDiff) -> Optional[AnyDiff]:
        if isinstance(diff, StateDiff):
            ledger_value = await self.engine.fetch_state_view(diff.state_kind, diff.key)
            cached = await asyncio.to_thread(self.store.get_state, diff.state_kind, diff.key)
            return diff_state(diff.state_kind, diff.key, ledger_value, cached)

        wallet, property_id = diff.pair
        ledger_value = await self.engine.fetch_pair_view(wallet, property_id)
        cache_entry = await asyncio.to_thread(self.store.get_entry, wallet, property_id)
        return diff_pair(wallet, property_id, ledger_value, cache_entry)

    def _write(self, diff: AnyDiff):
        if isinstance(diff, StateDiff):
            if diff.kind == DiffKind.STALE_IN_CACHE:
                self.store.delete_state(diff.state_kind, diff.key, diff.cache_token)
            else:
                self.store.upsert_state(diff.ledger_value, diff.cache_token)
            return

        token = diff.cache_value.last_synced_at if diff.cache_value is not None else None
        if diff.kind == DiffKind.STALE_IN_CACHE:
            self.store.delete_entry(diff.wallet, diff.property_id, token)
        else:
            self.store.upsert_entry(diff.ledger_value, token)

    @contextlib.asynccontextmanager
    async def _pair_lock(self, pair: Hashable):
        # No await between lookup and refcount update, so this is atomic on the loop
        lock = self._pair_locks.setdefault(pair, asyncio.Lock())
        self._pair_lock_refs[pair] = self._pair_lock_refs.get(pair, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._pair_lock_refs[pair] -= 1
            if self._pair_lock_refs[pair] == 0:
                del self._pair_lock_refs[pair]
                del self._pair_locks[pair]

    # --- Report ---

    def _publish(self, report: ReconciliationReport):
        self.last_report = report
        if report.cancelled:
            logger.warning(f"Sync cycle cancelled: {report.summary()}")
        elif report.in_sync and report.applied == 0:
            logger.info(f"Cache in sync: {report.summary()}")
        else:
            logger.info(f"Sync cycle complete: {report.summary()}")

        for pair in report.escalated:
            logger.error(f"Escalated: {pair.wallet} property {pair.property_id} ({pair.reason}, streak {pair.streak})")

        update_cycle_metrics(report, flagged_count=len(self.engine.tracker.flagged()))

        if self.on_report:
            try:
                self.on_report(report)
            except Exception as e:
                logger.error(f"Error in on_report callback: {e}")

    # --- Wallets ---

    async def register_wallet(self, wallet: str):
        """Adds a wallet to the set that full-scope cycles enumerate."""
        if not is_valid_wallet(wallet):
            raise ValueError(f"Invalid wallet address: {wallet}")
        await asyncio.to_thread(self.store.register_wallet, wallet)
        logger.info(f"Registered wallet {wallet}")

    def flagged_pairs(self) -> List[Pair]:
        return self.engine.tracker.flagged()

    def clear_flag(self, wallet: str, property_id: int):
        self.engine.tracker.clear_flag(wallet, property_id)
        logger.info(f"Cleared escalation flag for {wallet} property {property_id}")

    # --- Periodic loop ---

    def start(self, interval: Optional[float] = None):
        """Starts periodic full-scope cycles on the running event loop."""
        if self.running:
            return
        self.running = True
        interval = interval if interval is not None else self.config.sync_interval_sec
        self._loop_task = asyncio.create_task(self._run_loop(interval))
        logger.info(
            f"Periodic sync started: every {interval}s, first run in {self.config.first_sync_delay_sec}s"
        )

    async def stop(self):
        self.running = False
        self.cancel()
        for task in (self._loop_task, self._periodic_task):
            if task is None:
                continue
            if task is self._loop_task:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._periodic_task = None
        logger.info("Periodic sync stopped")

    async def _run_loop(self, interval: float):
        await asyncio.sleep(self.config.first_sync_delay_sec)
        while self.running:
            if self._periodic_task is not None and not self._periodic_task.done():
                logger.info("Skipping sync - previous sync still running")
            else:
                self._periodic_task = asyncio.create_task(self._periodic_tick())
            await asyncio.sleep(interval)

    async def _periodic_tick(self):
        try:
            await self.run_sync_cycle(Scope.everything())
        except Exception as e:
            logger.error(f"Error in periodic sync: {e}")
