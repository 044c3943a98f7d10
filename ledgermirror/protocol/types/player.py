# MIT License
# Copyright (c) 2025 Hashborn

from pydantic import BaseModel, Field
from typing import List, Union
from ..config.params import MAX_PROPERTIES, MAX_SETS
from .state import SetCooldownView, StealCooldownView

def _per_property(description: str):
    return Field(..., min_length=MAX_PROPERTIES, max_length=MAX_PROPERTIES, description=description)

def _per_set(description: str):
    return Field(..., min_length=MAX_SETS, max_length=MAX_SETS, description=description)

# Fields compared between ledger and cache for one (wallet, property) pair
OWNERSHIP_FIELDS = (
    "slots_owned",
    "slots_shielded",
    "purchase_timestamp",
    "shield_expiry",
    "shield_cooldown",
    "steal_protection_expiry",
)


class OwnershipView(BaseModel):
    """Per-(wallet, property) projection of on-chain ownership state."""
    wallet: str
    property_id: int
    slots_owned: int = 0
    slots_shielded: int = 0
    purchase_timestamp: int = 0
    shield_expiry: int = 0
    shield_cooldown: int = 0
    steal_protection_expiry: int = 0

    @property
    def pair(self):
        return (self.wallet, self.property_id)

    @property
    def exists(self) -> bool:
        """A pair exists on-chain only while the wallet holds at least one slot."""
        return self.slots_owned > 0

    def compared_values(self) -> dict:
        return {name: getattr(self, name) for name in OWNERSHIP_FIELDS}


class PlayerRecord(BaseModel):
    """Decoded PlayerAccount (one per wallet)."""
    owner: str = Field(..., description="Base58 wallet public key")

    total_base_daily_income: int
    last_accumulation_timestamp: int
    total_rewards_claimed: int
    pending_rewards: int

    total_steals_attempted: int
    total_steals_successful: int

    total_slots_owned: int

    complete_sets_owned: int
    properties_owned_count: int
    bump: int

    property_purchase_timestamp: List[int] = _per_property("i64 unix seconds per property")
    property_shield_expiry: List[int] = _per_property("i64 unix seconds per property")
    property_shield_cooldown: List[int] = _per_property("i64 per property")
    property_steal_protection_expiry: List[int] = _per_property("i64 unix seconds per property")
    set_cooldown_timestamp: List[int] = _per_set("i64 unix seconds per set")
    set_cooldown_duration: List[int] = _per_set("i64 seconds per set")
    steal_cooldown_timestamp: List[int] = _per_property("i64 unix seconds per property")

    property_slots: List[int] = _per_property("u16 slots owned per property")
    property_shielded: List[int] = _per_property("u16 slots shielded per property")

    set_last_purchased_property: List[int] = _per_set("u8 property index per set")
    set_properties_mask: List[int] = _per_set("u8 owned-properties bitmask per set")

    def ownership_view(self, property_id: int) -> OwnershipView:
        if not 0 <= property_id < MAX_PROPERTIES:
            raise ValueError(f"property_id out of range: {property_id}")
        return OwnershipView(
            wallet=self.owner,
            property_id=property_id,
            slots_owned=self.property_slots[property_id],
            slots_shielded=self.property_shielded[property_id],
            purchase_timestamp=self.property_purchase_timestamp[property_id],
            shield_expiry=self.property_shield_expiry[property_id],
            shield_cooldown=self.property_shield_cooldown[property_id],
            steal_protection_expiry=self.property_steal_protection_expiry[property_id],
        )

    def owned_property_ids(self) -> List[int]:
        return [pid for pid, slots in enumerate(self.property_slots) if slots > 0]

    def set_cooldown_view(self, set_id: int) -> SetCooldownView:
        if not 0 <= set_id < MAX_SETS:
            raise ValueError(f"set_id out of range: {set_id}")
        mask = self.set_properties_mask[set_id]
        return SetCooldownView(
            wallet=self.owner,
            set_id=set_id,
            last_purchase_timestamp=self.set_cooldown_timestamp[set_id],
            cooldown_duration=self.set_cooldown_duration[set_id],
            last_purchased_property_id=self.set_last_purchased_property[set_id],
            properties_mask=mask,
            properties_count=bin(mask).count("1"),
        )

    def steal_cooldown_view(self, property_id: int) -> StealCooldownView:
        if not 0 <= property_id < MAX_PROPERTIES:
            raise ValueError(f"property_id out of range: {property_id}")
        return StealCooldownView(
            wallet=self.owner,
            property_id=property_id,
            last_steal_attempt_timestamp=self.steal_cooldown_timestamp[property_id],
        )

    def cooldown_views(self) -> List[Union[SetCooldownView, StealCooldownView]]:
        """Every set and steal cooldown the account carries, including empty ones."""
        return (
            [self.set_cooldown_view(s) for s in range(MAX_SETS)]
            + [self.steal_cooldown_view(p) for p in range(MAX_PROPERTIES)]
        )


class OwnershipRecord(BaseModel):
    """Decoded legacy PropertyOwnership account (one per wallet and property)."""
    player: str
    property_id: int
    slots_owned: int
    slots_shielded: int
    purchase_timestamp: int
    shield_expiry: int
    shield_cooldown_duration: int
    steal_protection_expiry: int
    bump: int

    def ownership_view(self) -> OwnershipView:
        return OwnershipView(
            wallet=self.player,
            property_id=self.property_id,
            slots_owned=self.slots_owned,
            slots_shielded=self.slots_shielded,
            purchase_timestamp=self.purchase_timestamp,
            shield_expiry=self.shield_expiry,
            shield_cooldown=self.shield_cooldown_duration,
            steal_protection_expiry=self.steal_protection_expiry,
        )
