# MIT License
# Copyright (c) 2025 Hashborn

from enum import Enum
from typing import Optional, Tuple


class DiffKind(str, Enum):
    MISSING_IN_CACHE = "MISSING_IN_CACHE"   # On ledger, absent in cache
    STALE_IN_CACHE = "STALE_IN_CACHE"       # In cache, ledger reports NotFound
    FIELD_MISMATCH = "FIELD_MISMATCH"       # Present on both sides, values differ


class FetchStatus(str, Enum):
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    TRANSIENT_ERROR = "TRANSIENT_ERROR"


class AccountMode(str, Enum):
    PLAYER = "player"         # One PlayerAccount per wallet (current program)
    OWNERSHIP = "ownership"   # One PropertyOwnership account per (wallet, property)


class MirrorError(Exception):
    pass


class MalformedAccount(MirrorError):
    """Buffer too short or discriminator mismatch. Never retried."""

    def __init__(self, message: str, address: Optional[str] = None):
        self.address = address
        if address:
            message = f"{message} (account {address})"
        super().__init__(message)


class TransientError(MirrorError):
    """RPC/network failure. Retryable."""

    def __init__(self, reason: str, address: Optional[str] = None):
        self.reason = reason
        self.address = address
        super().__init__(f"Transient ledger error for {address}: {reason}" if address else reason)


class CacheWriteConflict(MirrorError):
    """A concurrent writer updated the pair since it was read."""

    def __init__(self, wallet: str, property_id: int):
        self.pair: Tuple[str, int] = (wallet, property_id)
        super().__init__(f"Cache write conflict for {wallet[:8]}... property {property_id}")


class ScopeNotFound(MirrorError):
    """Ledger authoritatively reports that the account does not exist."""
    pass


class StateWriteConflict(MirrorError):
    """A concurrent writer updated a cooldown or property-state row since it was read."""

    def __init__(self, table: str, key: Tuple):
        self.table = table
        self.key = tuple(key)
        super().__init__(f"Cache write conflict in {table} for {self.key}")
