# MIT License
# Copyright (c) 2025 Hashborn

"""
Snapshot producers.

Both sides of a reconciliation pass are read here: the ledger through a
LedgerSource (network), the cache through the CacheStore (database). Nothing
in this module compares values; that is left to reconcile.diff_snapshots.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..ledger.reader import LedgerReader, fetch_with_retry
from ..storage.db import CacheStore
from ...protocol.codec.decoder import decode_player_account, decode_ownership_account, decode_property_account
from ...protocol.config.params import MAX_PROPERTIES
from ...protocol.crypto.addresses import (
    derive_player_address, derive_ownership_address, derive_property_address, to_pubkey,
)
from ...protocol.types.common import AccountMode, MalformedAccount, TransientError
from ...protocol.types.player import OwnershipView, PlayerRecord
from ...protocol.types.reconcile import CacheEntry, Pair, Scope
from ...protocol.types.state import CachedState, PropertyStateView, StateKey, StateKind

logger = logging.getLogger(__name__)

# One fetch covers one wallet and the properties it answers for
FetchUnit = Tuple[str, List[int]]


@dataclass
class UnitFetch:
    views: Dict[int, Optional[OwnershipView]]           # None where the ledger has no account
    record: Optional[PlayerRecord] = None               # decoded PlayerAccount, None if absent


@dataclass
class LedgerSnapshot:
    views: Dict[Pair, OwnershipView] = field(default_factory=dict)   # pairs that exist on-chain
    unresolved: Dict[Pair, str] = field(default_factory=dict)        # pair -> reason
    # wallet -> PlayerAccount (None: no account); only wallets fetched without error
    records: Dict[str, Optional[PlayerRecord]] = field(default_factory=dict)
    cancelled: bool = False


@dataclass
class PropertySnapshot:
    states: Dict[int, Optional[PropertyStateView]] = field(default_factory=dict)  # None: no account
    unresolved: Dict[int, str] = field(default_factory=dict)
    cancelled: bool = False


class LedgerSource(abc.ABC):
    """Turns fetch units into ledger-side OwnershipViews."""

    # Whether fetch_unit returns the wallet's PlayerAccount (and with it, its cooldowns)
    carries_cooldowns = False

    def __init__(self, reader: LedgerReader, program_id: str, attempts: int = 3, backoff: float = 0.5):
        self.reader = reader
        self.program_id = to_pubkey(program_id)
        self.attempts = attempts
        self.backoff = backoff

    @abc.abstractmethod
    def plan(self, candidates: Dict[str, List[int]]) -> List[FetchUnit]:
        ...

    @abc.abstractmethod
    async def fetch_unit(self, wallet: str, property_ids: List[int]) -> UnitFetch:
        """
        Returns property_id -> view, or None where the ledger has no account.

        Raises:
            TransientError: Retries exhausted
            MalformedAccount: Account bytes do not match the schema
        """
        ...


class PlayerAccountSource(LedgerSource):
    """One PlayerAccount per wallet holds every property's ownership state."""

    carries_cooldowns = True

    def plan(self, candidates: Dict[str, List[int]]) -> List[FetchUnit]:
        return [(wallet, sorted(pids)) for wallet, pids in candidates.items() if pids]

    async def fetch_record(self, wallet: str) -> Optional[PlayerRecord]:
        address = derive_player_address(self.program_id, wallet)
        result = await fetch_with_retry(self.reader, address, self.attempts, self.backoff)
        if not result.is_found:
            return None

        record = decode_player_account(result.data, address=str(address))
        if record.owner != wallet:
            raise MalformedAccount(f"PlayerAccount owner {record.owner} does not match wallet {wallet}", address=str(address))
        return record

    async def fetch_unit(self, wallet: str, property_ids: List[int]) -> UnitFetch:
        record = await self.fetch_record(wallet)
        if record is None:
            return UnitFetch({pid: None for pid in property_ids})
        return UnitFetch({pid: record.ownership_view(pid) for pid in property_ids}, record)


class OwnershipAccountSource(LedgerSource):
    """Legacy layout: one PropertyOwnership account per (wallet, property)."""

    def plan(self, candidates: Dict[str, List[int]]) -> List[FetchUnit]:
        return [(wallet, [pid]) for wallet, pids in candidates.items() for pid in sorted(pids)]

    async def fetch_unit(self, wallet: str, property_ids: List[int]) -> UnitFetch:
        views: Dict[int, Optional[OwnershipView]] = {}
        for pid in property_ids:
            address = derive_ownership_address(self.program_id, wallet, pid)
            result = await fetch_with_retry(self.reader, address, self.attempts, self.backoff)
            if not result.is_found:
                views[pid] = None
                continue

            record = decode_ownership_account(result.data, address=str(address))
            if record.player != wallet or record.property_id != pid:
                raise MalformedAccount(
                    f"PropertyOwnership belongs to {record.player} property {record.property_id}, "
                    f"expected {wallet} property {pid}",
                    address=str(address),
                )
            views[pid] = record.ownership_view()
        return UnitFetch(views)


def make_source(mode: AccountMode, reader: LedgerReader, program_id: str,
                attempts: int = 3, backoff: float = 0.5) -> LedgerSource:
    if AccountMode(mode) == AccountMode.OWNERSHIP:
        return OwnershipAccountSource(reader, program_id, attempts, backoff)
    return PlayerAccountSource(reader, program_id, attempts, backoff)


async def ledger_snapshot(
    source: LedgerSource,
    candidates: Dict[str, List[int]],
    max_concurrency: int = 8,
    should_stop: Optional[Callable[[], bool]] = None,
) -> LedgerSnapshot:
    """
    Fetches the ledger side for every candidate pair, at most max_concurrency
    fetches in flight. A failing unit marks only its own pairs unresolved.
    """
    snapshot = LedgerSnapshot()
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    stopped = should_stop or (lambda: False)

    async def run_unit(wallet: str, pids: List[int]):
        async with semaphore:
            if stopped():
                return
            try:
                unit = await source.fetch_unit(wallet, pids)
            except TransientError as e:
                logger.warning(f"Ledger unavailable for {wallet[:8]}... properties {pids}: {e.reason}")
                for pid in pids:
                    snapshot.unresolved[(wallet, pid)] = f"transient: {e.reason}"
                return
            except MalformedAccount as e:
                logger.error(f"Malformed account for {wallet}: {e}")
                for pid in pids:
                    snapshot.unresolved[(wallet, pid)] = f"malformed: {e}"
                return
            except ValueError as e:
                logger.error(f"Cannot derive account address for {wallet}: {e}")
                for pid in pids:
                    snapshot.unresolved[(wallet, pid)] = f"invalid wallet: {e}"
                return

            # Cancelled while the RPC call was in flight: discard the result
            if stopped():
                return
            for pid, view in unit.views.items():
                if view is not None and view.exists:
                    snapshot.views[(wallet, pid)] = view
            if source.carries_cooldowns:
                snapshot.records[wallet] = unit.record

    await asyncio.gather(*(run_unit(wallet, pids) for wallet, pids in source.plan(candidates)))

    if stopped():
        snapshot.cancelled = True
    return snapshot


def scope_candidates(store: CacheStore, scope: Scope) -> Dict[str, List[int]]:
    """wallet -> property ids that the scope covers."""
    all_properties = list(range(MAX_PROPERTIES))

    if scope.wallet is not None:
        pids = [scope.property_id] if scope.property_id is not None else all_properties
        return {scope.wallet: pids}

    if scope.property_id is not None:
        # The ledger has no "list all owners" query: enumerate owners the cache knows about
        wallets = store.get_owners_of_property(scope.property_id)
        for extra in scope.extra_wallets:
            if extra not in wallets:
                wallets.append(extra)
        return {wallet: [scope.property_id] for wallet in wallets}

    return {wallet: list(all_properties) for wallet in store.get_known_wallets()}


def cache_snapshot(store: CacheStore, scope: Scope) -> Dict[Pair, CacheEntry]:
    if scope.wallet is not None:
        entries = store.get_entries_for_wallet(scope.wallet)
        if scope.property_id is not None:
            entries = {pair: e for pair, e in entries.items() if pair[1] == scope.property_id}
        return entries
    if scope.property_id is not None:
        return store.get_entries_for_property(scope.property_id)
    return store.get_all_entries()


async def fetch_property_state(reader: LedgerReader, program_id, property_id: int,
                               attempts: int = 3, backoff: float = 0.5) -> Optional[PropertyStateView]:
    """
    Reads one Property account. None when the ledger has no such account.

    Raises:
        TransientError: Retries exhausted
        MalformedAccount: Account bytes do not match the schema, or the
            account describes another property
    """
    address = derive_property_address(program_id, property_id)
    result = await fetch_with_retry(reader, address, attempts, backoff)
    if not result.is_found:
        return None

    record = decode_property_account(result.data, address=str(address))
    if record.property_id != property_id:
        raise MalformedAccount(f"Property account holds property {record.property_id}, expected {property_id}",
                               address=str(address))
    return record.state_view()


async def property_snapshot(
    reader: LedgerReader,
    program_id,
    property_ids: List[int],
    attempts: int = 3,
    backoff: float = 0.5,
    max_concurrency: int = 8,
    should_stop: Optional[Callable[[], bool]] = None,
) -> PropertySnapshot:
    """Fetches the Property account of every listed property."""
    snapshot = PropertySnapshot()
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    stopped = should_stop or (lambda: False)

    async def run_one(pid: int):
        async with semaphore:
            if stopped():
                return
            try:
                state = await fetch_property_state(reader, program_id, pid, attempts, backoff)
            except TransientError as e:
                logger.warning(f"Ledger unavailable for property {pid}: {e.reason}")
                snapshot.unresolved[pid] = f"transient: {e.reason}"
                return
            except MalformedAccount as e:
                logger.error(f"Malformed Property account for property {pid}: {e}")
                snapshot.unresolved[pid] = f"malformed: {e}"
                return
            if not stopped():
                snapshot.states[pid] = state

    await asyncio.gather(*(run_one(pid) for pid in property_ids))

    if stopped():
        snapshot.cancelled = True
    return snapshot


def scope_properties(scope: Scope) -> List[int]:
    """Property ids whose Property-account state the scope covers."""
    if scope.wallet is not None:
        return []
    if scope.property_id is not None:
        return [scope.property_id]
    return list(range(MAX_PROPERTIES))


def state_cache_snapshot(store: CacheStore, wallets: List[str],
                         property_ids: List[int]) -> Dict[Tuple[StateKind, StateKey], CachedState]:
    """Cached cooldowns of `wallets` and cached state of `property_ids`."""
    cached: Dict[Tuple[StateKind, StateKey], CachedState] = {}
    for wallet in wallets:
        for kind in (StateKind.SET_COOLDOWN, StateKind.STEAL_COOLDOWN):
            for key, state in store.get_states(kind, wallet=wallet).items():
                cached[(kind, key)] = state
    for pid in property_ids:
        state = store.get_state(StateKind.PROPERTY_STATE, (pid,))
        if state is not None:
            cached[(StateKind.PROPERTY_STATE, (pid,))] = state
    return cached
