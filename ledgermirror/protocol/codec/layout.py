# MIT License
# Copyright (c) 2025 Hashborn

"""
Declarative account layouts.

Each layout is a table of (field name, kind, count). Offsets are computed by
walking the table once when the layout is built, and the total is checked
against the known account size, so inserting or reordering a field cannot
silently shift the fields after it.

All offsets are relative to the payload, i.e. after the 8-byte discriminator.
"""

from typing import Dict, List, NamedTuple, Tuple
from ..config.params import MAX_PROPERTIES, MAX_SETS
from ..crypto.hash import account_discriminator

DISCRIMINATOR_SIZE = 8

# kind -> (width in bytes, signed)
KINDS: Dict[str, Tuple[int, bool]] = {
    "pubkey": (32, False),
    "u8":     (1, False),
    "u16":    (2, False),
    "u32":    (4, False),
    "u64":    (8, False),
    "i64":    (8, True),
    "pad":    (1, False),
}


class FieldSpec(NamedTuple):
    name: str
    kind: str
    count: int = 1          # > 1 for fixed-length arrays, byte count for "pad"

    @property
    def is_array(self) -> bool:
        return self.count > 1 and self.kind not in ("pad",)


class PlacedField(NamedTuple):
    spec: FieldSpec
    offset: int
    width: int              # element width
    size: int               # total bytes occupied


class AccountLayout:
    def __init__(self, account_name: str, fields: List[FieldSpec], expected_size: int):
        """
        Args:
            account_name: Anchor account struct name (drives the discriminator)
            fields: Ordered field table
            expected_size: Full account size in bytes, discriminator included
        """
        self.account_name = account_name
        self.discriminator = account_discriminator(account_name)
        self.fields: List[PlacedField] = []

        offset = 0
        seen = set()
        for spec in fields:
            if spec.kind not in KINDS:
                raise ValueError(f"{account_name}.{spec.name}: unknown field kind '{spec.kind}'")
            if spec.count < 1:
                raise ValueError(f"{account_name}.{spec.name}: count must be >= 1")
            if spec.name in seen:
                raise ValueError(f"{account_name}: duplicate field '{spec.name}'")
            seen.add(spec.name)

            width, _ = KINDS[spec.kind]
            size = width * spec.count
            self.fields.append(PlacedField(spec, offset, width, size))
            offset += size

        self.payload_size = offset
        self.size = DISCRIMINATOR_SIZE + offset

        if self.size != expected_size:
            raise AssertionError(
                f"{account_name} layout is {self.size} bytes, expected {expected_size}"
            )

    def offset_of(self, name: str) -> int:
        for placed in self.fields:
            if placed.spec.name == name:
                return placed.offset
        raise KeyError(name)

    def value_fields(self) -> List[PlacedField]:
        """Fields that carry data (padding excluded)."""
        return [p for p in self.fields if p.spec.kind != "pad"]


PLAYER_ACCOUNT_SIZE = 1200

PLAYER_ACCOUNT_LAYOUT = AccountLayout(
    "PlayerAccount",
    [
        FieldSpec("owner", "pubkey"),
        FieldSpec("total_base_daily_income", "u64"),
        FieldSpec("last_accumulation_timestamp", "i64"),
        FieldSpec("total_rewards_claimed", "u64"),
        FieldSpec("pending_rewards", "u64"),
        FieldSpec("total_steals_attempted", "u32"),
        FieldSpec("total_steals_successful", "u32"),
        FieldSpec("total_slots_owned", "u16"),
        FieldSpec("complete_sets_owned", "u8"),
        FieldSpec("properties_owned_count", "u8"),
        FieldSpec("bump", "u8"),
        FieldSpec("_padding1", "pad", 3),
        FieldSpec("property_purchase_timestamp", "i64", MAX_PROPERTIES),
        FieldSpec("property_shield_expiry", "i64", MAX_PROPERTIES),
        FieldSpec("property_shield_cooldown", "i64", MAX_PROPERTIES),
        FieldSpec("property_steal_protection_expiry", "i64", MAX_PROPERTIES),
        FieldSpec("set_cooldown_timestamp", "i64", MAX_SETS),
        FieldSpec("set_cooldown_duration", "i64", MAX_SETS),
        FieldSpec("steal_cooldown_timestamp", "i64", MAX_PROPERTIES),
        FieldSpec("property_slots", "u16", MAX_PROPERTIES),
        FieldSpec("property_shielded", "u16", MAX_PROPERTIES),
        FieldSpec("set_last_purchased_property", "u8", MAX_SETS),
        FieldSpec("set_properties_mask", "u8", MAX_SETS),
    ],
    expected_size=PLAYER_ACCOUNT_SIZE,
)

OWNERSHIP_ACCOUNT_SIZE = 78

OWNERSHIP_ACCOUNT_LAYOUT = AccountLayout(
    "PropertyOwnership",
    [
        FieldSpec("player", "pubkey"),
        FieldSpec("property_id", "u8"),
        FieldSpec("slots_owned", "u16"),
        FieldSpec("slots_shielded", "u16"),
        FieldSpec("purchase_timestamp", "i64"),
        FieldSpec("shield_expiry", "i64"),
        FieldSpec("shield_cooldown_duration", "i64"),
        FieldSpec("steal_protection_expiry", "i64"),
        FieldSpec("bump", "u8"),
    ],
    expected_size=OWNERSHIP_ACCOUNT_SIZE,
)

PROPERTY_ACCOUNT_SIZE = 37

PROPERTY_ACCOUNT_LAYOUT = AccountLayout(
    "Property",
    [
        FieldSpec("property_id", "u8"),
        FieldSpec("set_id", "u8"),
        FieldSpec("max_slots_per_property", "u16"),
        FieldSpec("available_slots", "u16"),
        FieldSpec("max_per_player", "u16"),
        FieldSpec("price", "u64"),
        FieldSpec("yield_percent_bps", "u16"),
        FieldSpec("shield_cost_percent_bps", "u16"),
        FieldSpec("cooldown_seconds", "i64"),
        FieldSpec("bump", "u8"),
    ],
    expected_size=PROPERTY_ACCOUNT_SIZE,
)
