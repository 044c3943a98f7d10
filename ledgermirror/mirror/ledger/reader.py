# MIT License
# Copyright (c) 2025 Hashborn

import abc
import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey

from ...protocol.types.common import FetchStatus, TransientError
from ...protocol.crypto.addresses import PubkeyLike, to_pubkey

logger = logging.getLogger(__name__)


class AccountFetch(BaseModel):
    """Result of a single account lookup."""
    status: FetchStatus
    data: Optional[bytes] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, data: bytes) -> "AccountFetch":
        return cls(status=FetchStatus.FOUND, data=bytes(data))

    @classmethod
    def not_found(cls) -> "AccountFetch":
        return cls(status=FetchStatus.NOT_FOUND)

    @classmethod
    def transient(cls, reason: str) -> "AccountFetch":
        return cls(status=FetchStatus.TRANSIENT_ERROR, reason=reason)

    @property
    def is_found(self) -> bool:
        return self.status == FetchStatus.FOUND


class LedgerReader(abc.ABC):
    """Point lookups of raw account bytes by address."""

    @abc.abstractmethod
    async def fetch_account(self, address: Pubkey) -> AccountFetch:
        ...

    async def close(self):
        pass


class SolanaLedgerReader(LedgerReader):
    def __init__(self, rpc_url: str, commitment: str = "confirmed", timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.commitment = Commitment(commitment)
        self.client = AsyncClient(rpc_url, commitment=self.commitment, timeout=timeout)

    async def fetch_account(self, address: PubkeyLike) -> AccountFetch:
        pubkey = to_pubkey(address)
        try:
            resp = await self.client.get_account_info(pubkey, commitment=self.commitment)
        except (SolanaRpcException, RPCException, httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            return AccountFetch.transient(f"{type(e).__name__}: {e}")

        if resp.value is None or resp.value.data is None:
            return AccountFetch.not_found()
        return AccountFetch.found(bytes(resp.value.data))

    async def close(self):
        await self.client.close()


async def fetch_with_retry(
    reader: LedgerReader,
    address: PubkeyLike,
    attempts: int = 3,
    backoff: float = 0.5,
) -> AccountFetch:
    """
    Fetches an account, retrying transient failures with exponential backoff.

    Args:
        reader: Ledger reader to query
        address: Account address
        attempts: Total attempts (>= 1)
        backoff: Delay before the second attempt; doubles after each failure

    Returns:
        A FOUND or NOT_FOUND AccountFetch

    Raises:
        TransientError: If every attempt failed transiently
    """
    attempts = max(1, attempts)
    delay = backoff
    last_reason = "no attempts made"
    for attempt in range(1, attempts + 1):
        result = await reader.fetch_account(address)
        if result.status != FetchStatus.TRANSIENT_ERROR:
            return result

        last_reason = result.reason or "unknown"
        if attempt < attempts:
            logger.debug(f"Transient error fetching {address} (attempt {attempt}/{attempts}): {last_reason}")
            await asyncio.sleep(delay)
            delay *= 2

    raise TransientError(last_reason, address=str(address))
