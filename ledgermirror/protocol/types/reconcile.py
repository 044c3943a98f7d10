# MIT License
# Copyright (c) 2025 Hashborn

"""
Reconciliation Data Structures

Values produced and consumed within one reconciliation pass, plus the report
handed to operators at the end of a sync cycle.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Tuple
from ..config.params import MAX_PROPERTIES
from .common import DiffKind
from .player import OwnershipView, OWNERSHIP_FIELDS
from .state import StateDiff, UnresolvedState

Pair = Tuple[str, int]   # (wallet, property_id)


class CacheEntry(OwnershipView):
    """Off-chain mirror of an OwnershipView."""
    last_synced_at: int = Field(0, description="Microseconds since epoch; compare-and-swap token")

    def view(self) -> OwnershipView:
        return OwnershipView(**self.model_dump(exclude={"last_synced_at"}))


class ReconciliationDiff(BaseModel):
    wallet: str
    property_id: int
    kind: DiffKind
    ledger_value: Optional[OwnershipView] = None
    cache_value: Optional[CacheEntry] = None
    fields: List[str] = Field(default_factory=list, description="Differing fields (FIELD_MISMATCH only)")

    @property
    def pair(self) -> Pair:
        return (self.wallet, self.property_id)

    def mismatches(self) -> Dict[str, Tuple[int, int]]:
        """field -> (ledger, cache)"""
        if not self.ledger_value or not self.cache_value:
            return {}
        return {
            name: (getattr(self.ledger_value, name), getattr(self.cache_value, name))
            for name in self.fields
        }

    def describe(self) -> str:
        who = f"{self.wallet[:8]}... property {self.property_id}"
        if self.kind == DiffKind.FIELD_MISMATCH:
            parts = ", ".join(f"{k}: ledger={l} cache={c}" for k, (l, c) in self.mismatches().items())
            return f"{who}: {self.kind.value} ({parts})"
        return f"{who}: {self.kind.value}"


class UnresolvedPair(BaseModel):
    wallet: str
    property_id: int
    reason: str
    streak: int = 1
    escalated: bool = False


class Scope(BaseModel):
    """
    Unit of reconciliation.

    wallet set   -> every property of that wallet
    property set -> every wallet known to the cache for that property (+ extra_wallets)
    neither      -> every known wallet
    """
    wallet: Optional[str] = None
    property_id: Optional[int] = Field(None, ge=0, lt=MAX_PROPERTIES)
    extra_wallets: List[str] = Field(default_factory=list)

    @classmethod
    def for_wallet(cls, wallet: str) -> "Scope":
        return cls(wallet=wallet)

    @classmethod
    def for_property(cls, property_id: int, extra_wallets: Optional[List[str]] = None) -> "Scope":
        return cls(property_id=property_id, extra_wallets=list(extra_wallets or []))

    @classmethod
    def everything(cls) -> "Scope":
        return cls()

    @property
    def is_full(self) -> bool:
        return self.wallet is None and self.property_id is None

    def __str__(self) -> str:
        if self.wallet is not None and self.property_id is not None:
            return f"wallet {self.wallet} property {self.property_id}"
        if self.wallet is not None:
            return f"wallet {self.wallet}"
        if self.property_id is not None:
            return f"property {self.property_id}"
        return "all"


class ReconciliationReport(BaseModel):
    scope: str = "all"
    pairs_checked: int = 0
    missing_in_cache: int = 0
    stale_in_cache: int = 0
    mismatched: int = 0
    unresolved: int = 0
    applied: int = 0
    failed: int = 0
    deferred: int = Field(0, description="Lost a write race twice; retried next cycle")
    cancelled: bool = False

    diffs: List[ReconciliationDiff] = Field(default_factory=list)
    unresolved_pairs: List[UnresolvedPair] = Field(default_factory=list)
    escalated: List[UnresolvedPair] = Field(default_factory=list)

    # Cooldowns and property state
    states_checked: int = 0
    state_diffs: List[StateDiff] = Field(default_factory=list)
    unresolved_states: List[UnresolvedState] = Field(default_factory=list)

    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def diffs_found(self) -> int:
        return self.missing_in_cache + self.stale_in_cache + self.mismatched

    @property
    def in_sync(self) -> bool:
        return self.diffs_found == 0 and self.unresolved == 0 and not self.unresolved_states

    def add_diff(self, diff: ReconciliationDiff):
        self.diffs.append(diff)
        if diff.kind == DiffKind.MISSING_IN_CACHE:
            self.missing_in_cache += 1
        elif diff.kind == DiffKind.STALE_IN_CACHE:
            self.stale_in_cache += 1
        else:
            self.mismatched += 1

    def add_unresolved(self, pair: UnresolvedPair):
        self.unresolved_pairs.append(pair)
        self.unresolved += 1
        if pair.escalated:
            self.escalated.append(pair)

    def add_state_diff(self, diff: StateDiff):
        """State diffs count towards the same per-kind totals as pair diffs."""
        self.state_diffs.append(diff)
        if diff.kind == DiffKind.MISSING_IN_CACHE:
            self.missing_in_cache += 1
        elif diff.kind == DiffKind.STALE_IN_CACHE:
            self.stale_in_cache += 1
        else:
            self.mismatched += 1

    def add_unresolved_state(self, state: UnresolvedState):
        self.unresolved_states.append(state)

    def summary(self) -> str:
        duration = max(self.finished_at - self.started_at, 0.0)
        text = (
            f"[{self.scope}] checked={self.pairs_checked} states={self.states_checked} "
            f"missing={self.missing_in_cache} stale={self.stale_in_cache} mismatched={self.mismatched} "
            f"unresolved={self.unresolved} applied={self.applied} failed={self.failed} "
            f"deferred={self.deferred} in {duration:.2f}s"
        )
        if self.unresolved_states:
            text += f" unresolved_states={len(self.unresolved_states)}"
        if self.escalated:
            text += f" ESCALATED={len(self.escalated)}"
        if self.cancelled:
            text += " (cancelled)"
        return text


__all__ = [
    "Pair", "CacheEntry", "ReconciliationDiff", "UnresolvedPair", "Scope",
    "ReconciliationReport", "OWNERSHIP_FIELDS",
]
