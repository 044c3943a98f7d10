# MIT License
# Copyright (c) 2025 Hashborn

from typing import Any, Dict, Optional
from solders.pubkey import Pubkey
from .layout import (
    AccountLayout, KINDS, DISCRIMINATOR_SIZE,
    PLAYER_ACCOUNT_LAYOUT, OWNERSHIP_ACCOUNT_LAYOUT, PROPERTY_ACCOUNT_LAYOUT,
)
from ..types.common import MalformedAccount
from ..types.player import PlayerRecord, OwnershipRecord
from ..types.state import PropertyRecord


def _read_element(data: bytes, offset: int, kind: str) -> Any:
    width, signed = KINDS[kind]
    raw = data[offset:offset + width]
    if kind == "pubkey":
        return str(Pubkey.from_bytes(raw))
    return int.from_bytes(raw, "little", signed=signed)


def _write_element(value: Any, kind: str, name: str) -> bytes:
    width, signed = KINDS[kind]
    if kind == "pubkey":
        raw = bytes(Pubkey.from_string(value)) if isinstance(value, str) else bytes(value)
        if len(raw) != width:
            raise ValueError(f"{name}: public key must be {width} bytes")
        return raw
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name}: expected int, got {type(value).__name__}")
    try:
        return value.to_bytes(width, "little", signed=signed)
    except OverflowError:
        raise ValueError(f"{name}: value {value} does not fit in {kind}")


def decode_fields(layout: AccountLayout, data: bytes, address: Optional[str] = None) -> Dict[str, Any]:
    """
    Decodes an account buffer against a layout.

    Args:
        layout: Account layout to walk
        data: Raw account bytes, discriminator included
        address: Account address, only used in error messages

    Returns:
        Dict of field name -> value (lists for arrays, padding skipped)

    Raises:
        MalformedAccount: If the buffer is shorter than the layout or the
            discriminator does not match
    """
    data = bytes(data)
    if len(data) < layout.size:
        raise MalformedAccount(
            f"{layout.account_name} buffer is {len(data)} bytes, need at least {layout.size}",
            address=address,
        )
    if data[:DISCRIMINATOR_SIZE] != layout.discriminator:
        raise MalformedAccount(
            f"{layout.account_name} discriminator mismatch: got {data[:DISCRIMINATOR_SIZE].hex()}, "
            f"expected {layout.discriminator.hex()}",
            address=address,
        )

    values: Dict[str, Any] = {}
    for placed in layout.value_fields():
        start = DISCRIMINATOR_SIZE + placed.offset
        if placed.spec.is_array:
            values[placed.spec.name] = [
                _read_element(data, start + i * placed.width, placed.spec.kind)
                for i in range(placed.spec.count)
            ]
        else:
            values[placed.spec.name] = _read_element(data, start, placed.spec.kind)
    return values


def encode_fields(layout: AccountLayout, values: Dict[str, Any]) -> bytes:
    """Builds the exact byte image of an account. Padding is zero-filled."""
    out = bytearray(layout.discriminator)
    for placed in layout.fields:
        spec = placed.spec
        if spec.kind == "pad":
            out += bytes(placed.size)
            continue
        value = values[spec.name]
        if spec.is_array:
            if len(value) != spec.count:
                raise ValueError(f"{spec.name}: expected {spec.count} elements, got {len(value)}")
            for item in value:
                out += _write_element(item, spec.kind, spec.name)
        else:
            out += _write_element(value, spec.kind, spec.name)
    assert len(out) == layout.size
    return bytes(out)


def decode_player_account(data: bytes, address: Optional[str] = None) -> PlayerRecord:
    values = decode_fields(PLAYER_ACCOUNT_LAYOUT, data, address)
    return PlayerRecord(**values)


def encode_player_account(record: PlayerRecord) -> bytes:
    return encode_fields(PLAYER_ACCOUNT_LAYOUT, record.model_dump())


def decode_ownership_account(data: bytes, address: Optional[str] = None) -> OwnershipRecord:
    values = decode_fields(OWNERSHIP_ACCOUNT_LAYOUT, data, address)
    return OwnershipRecord(**values)


def encode_ownership_account(record: OwnershipRecord) -> bytes:
    return encode_fields(OWNERSHIP_ACCOUNT_LAYOUT, record.model_dump())


def decode_property_account(data: bytes, address: Optional[str] = None) -> PropertyRecord:
    values = decode_fields(PROPERTY_ACCOUNT_LAYOUT, data, address)
    return PropertyRecord(**values)


def encode_property_account(record: PropertyRecord) -> bytes:
    return encode_fields(PROPERTY_ACCOUNT_LAYOUT, record.model_dump())
