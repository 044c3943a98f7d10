# MIT License
# Copyright (c) 2025 Hashborn

"""
Cooldown and Property-State Data Structures

State mirrored next to ownership:
- set cooldowns, one row per (wallet, set)
- steal cooldowns, one row per (wallet, property)
- property state, one row per property (available slots)

Cooldowns are projected from the PlayerAccount, property state is decoded
from the Property account. Each view declares the key of its cache row and
the values compared between ledger and cache.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import ClassVar, Dict, List, NamedTuple, Optional, Tuple, Union
from .common import DiffKind

StateKey = Tuple[Union[str, int], ...]


class StateKind(str, Enum):
    SET_COOLDOWN = "set_cooldown"
    STEAL_COOLDOWN = "steal_cooldown"
    PROPERTY_STATE = "property_state"


class StateView(BaseModel):
    state_kind: ClassVar[StateKind]
    key_fields: ClassVar[Tuple[str, ...]]
    value_fields: ClassVar[Tuple[str, ...]]

    @property
    def key(self) -> StateKey:
        return tuple(getattr(self, name) for name in self.key_fields)

    @property
    def exists(self) -> bool:
        return True

    def compared_values(self) -> dict:
        return {name: getattr(self, name) for name in self.value_fields}


class SetCooldownView(StateView):
    state_kind: ClassVar[StateKind] = StateKind.SET_COOLDOWN
    key_fields: ClassVar[Tuple[str, ...]] = ("wallet", "set_id")
    value_fields: ClassVar[Tuple[str, ...]] = (
        "last_purchase_timestamp",
        "cooldown_duration",
        "last_purchased_property_id",
        "properties_mask",
        "properties_count",
    )

    wallet: str
    set_id: int
    last_purchase_timestamp: int = 0
    cooldown_duration: int = 0
    last_purchased_property_id: int = 0
    properties_mask: int = Field(0, description="Bit i set = i-th property of the set owned")
    properties_count: int = 0

    @property
    def exists(self) -> bool:
        """A wallet has a set cooldown once it bought into the set."""
        return self.last_purchase_timestamp > 0 or self.properties_mask != 0


class StealCooldownView(StateView):
    state_kind: ClassVar[StateKind] = StateKind.STEAL_COOLDOWN
    key_fields: ClassVar[Tuple[str, ...]] = ("wallet", "property_id")
    value_fields: ClassVar[Tuple[str, ...]] = ("last_steal_attempt_timestamp",)

    wallet: str
    property_id: int
    last_steal_attempt_timestamp: int = 0

    @property
    def exists(self) -> bool:
        return self.last_steal_attempt_timestamp > 0


class PropertyStateView(StateView):
    state_kind: ClassVar[StateKind] = StateKind.PROPERTY_STATE
    key_fields: ClassVar[Tuple[str, ...]] = ("property_id",)
    value_fields: ClassVar[Tuple[str, ...]] = (
        "set_id",
        "available_slots",
        "max_slots_per_property",
        "max_per_player",
    )

    property_id: int
    set_id: int = 0
    available_slots: int = 0
    max_slots_per_property: int = 0
    max_per_player: int = 0


StateValue = Union[SetCooldownView, StealCooldownView, PropertyStateView]

VIEW_TYPES: Dict[StateKind, type] = {
    StateKind.SET_COOLDOWN: SetCooldownView,
    StateKind.STEAL_COOLDOWN: StealCooldownView,
    StateKind.PROPERTY_STATE: PropertyStateView,
}


class CachedState(NamedTuple):
    value: StateValue
    last_synced_at: int


class PropertyRecord(BaseModel):
    """Decoded Property account (one per property)."""
    property_id: int
    set_id: int
    max_slots_per_property: int
    available_slots: int
    max_per_player: int
    price: int
    yield_percent_bps: int
    shield_cost_percent_bps: int
    cooldown_seconds: int
    bump: int

    def state_view(self) -> PropertyStateView:
        return PropertyStateView(
            property_id=self.property_id,
            set_id=self.set_id,
            available_slots=self.available_slots,
            max_slots_per_property=self.max_slots_per_property,
            max_per_player=self.max_per_player,
        )


class StateDiff(BaseModel):
    state_kind: StateKind
    key: StateKey
    kind: DiffKind
    ledger_value: Optional[StateValue] = None
    cache_value: Optional[StateValue] = None
    cache_token: Optional[int] = Field(None, description="last_synced_at read with cache_value")
    fields: List[str] = Field(default_factory=list)

    def mismatches(self) -> Dict[str, Tuple[int, int]]:
        if self.ledger_value is None or self.cache_value is None:
            return {}
        return {
            name: (getattr(self.ledger_value, name), getattr(self.cache_value, name))
            for name in self.fields
        }

    def describe(self) -> str:
        who = f"{self.state_kind.value} {'/'.join(str(part)[:8] for part in self.key)}"
        if self.kind == DiffKind.FIELD_MISMATCH:
            parts = ", ".join(f"{k}: ledger={l} cache={c}" for k, (l, c) in self.mismatches().items())
            return f"{who}: {self.kind.value} ({parts})"
        return f"{who}: {self.kind.value}"


class UnresolvedState(BaseModel):
    state_kind: StateKind
    key: StateKey
    reason: str


__all__ = [
    "StateKey", "StateKind", "StateView", "SetCooldownView", "StealCooldownView",
    "PropertyStateView", "StateValue", "VIEW_TYPES", "CachedState", "PropertyRecord",
    "StateDiff", "UnresolvedState",
]
