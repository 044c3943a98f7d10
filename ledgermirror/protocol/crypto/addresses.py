from solders.pubkey import Pubkey
from typing import Union

PubkeyLike = Union[str, bytes, Pubkey]

def to_pubkey(value: PubkeyLike) -> Pubkey:
    """Accepts a base58 string, 32 raw bytes or a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"Public key must be 32 bytes, got {len(value)}")
        return Pubkey.from_bytes(bytes(value))
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise ValueError(f"Invalid public key '{value}': {e}")

def derive_player_address(program_id: PubkeyLike, wallet: PubkeyLike) -> Pubkey:
    """PlayerAccount PDA: seeds [b"player", wallet]."""
    pda, _ = Pubkey.find_program_address(
        [b"player", bytes(to_pubkey(wallet))],
        to_pubkey(program_id),
    )
    return pda

def derive_ownership_address(program_id: PubkeyLike, wallet: PubkeyLike, property_id: int) -> Pubkey:
    """PropertyOwnership PDA: seeds [b"ownership", wallet, [property_id]]."""
    if not 0 <= property_id <= 255:
        raise ValueError(f"property_id must fit in u8, got {property_id}")
    pda, _ = Pubkey.find_program_address(
        [b"ownership", bytes(to_pubkey(wallet)), bytes([property_id])],
        to_pubkey(program_id),
    )
    return pda

def derive_property_address(program_id: PubkeyLike, property_id: int) -> Pubkey:
    """Property PDA: seeds [b"property", [property_id]]."""
    if not 0 <= property_id <= 255:
        raise ValueError(f"property_id must fit in u8, got {property_id}")
    pda, _ = Pubkey.find_program_address(
        [b"property", bytes([property_id])],
        to_pubkey(program_id),
    )
    return pda

def is_valid_wallet(addr: str) -> bool:
    try:
        to_pubkey(addr)
        return True
    except ValueError:
        return False
