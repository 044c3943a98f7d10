# MIT License
# Copyright (c) 2025 Hashborn

import os
from typing import Dict
from ..types.common import AccountMode

# Program geometry (fixed by the on-chain account layout)
MAX_PROPERTIES = 22
MAX_SETS = 8

DEFAULT_PROGRAM_ID = "6VQ9vttzEeuP1RktC92E49MQAmekFGJQu1b7XrUEJfnu"
DEFAULT_CACHE_DB = "./ledgermirror.db"

class SyncConfig:
    def __init__(self,
                 network_id: str,
                 rpc_url: str,
                 program_id: str = DEFAULT_PROGRAM_ID,
                 commitment: str = "confirmed",
                 cache_db_path: str = DEFAULT_CACHE_DB,
                 account_mode: AccountMode = AccountMode.PLAYER,
                 # Scheduling
                 sync_interval_sec: float = 300.0,      # 5 minutes
                 first_sync_delay_sec: float = 10.0,
                 # Ledger fan-out & retries
                 max_concurrent_fetches: int = 8,
                 fetch_retries: int = 3,
                 retry_backoff_sec: float = 0.5,
                 rpc_timeout_sec: float = 30.0,
                 # Escalation after N consecutive unresolved passes
                 max_unresolved_streak: int = 5,
                 # Concurrent cache writes per cycle
                 max_concurrent_writes: int = 16):
        self.network_id = network_id
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.commitment = commitment
        self.cache_db_path = cache_db_path
        self.account_mode = AccountMode(account_mode)
        self.sync_interval_sec = sync_interval_sec
        self.first_sync_delay_sec = first_sync_delay_sec
        self.max_concurrent_fetches = max_concurrent_fetches
        self.fetch_retries = fetch_retries
        self.retry_backoff_sec = retry_backoff_sec
        self.rpc_timeout_sec = rpc_timeout_sec
        self.max_unresolved_streak = max_unresolved_streak
        self.max_concurrent_writes = max_concurrent_writes

NETWORKS: Dict[str, SyncConfig] = {
    "localnet": SyncConfig(
        network_id="localnet",
        rpc_url="http://127.0.0.1:8899",
        sync_interval_sec=30.0,
        first_sync_delay_sec=1.0,
    ),
    "devnet": SyncConfig(
        network_id="devnet",
        rpc_url="https://api.devnet.solana.com",
        max_concurrent_fetches=4,   # Public devnet RPC is heavily rate limited
    ),
    "mainnet": SyncConfig(
        network_id="mainnet",
        rpc_url="https://api.mainnet-beta.solana.com",
        max_concurrent_fetches=16,
        fetch_retries=5,
    ),
}

# Default to devnet for now
CURRENT_NETWORK = NETWORKS["devnet"]


def load_config(network: str = None) -> SyncConfig:
    """Returns a copy of the selected network config with environment overrides applied."""
    network = network or os.environ.get("LEDGERMIRROR_NETWORK", CURRENT_NETWORK.network_id)
    if network not in NETWORKS:
        raise ValueError(f"Unknown network '{network}'. Expected one of: {', '.join(NETWORKS)}")

    base = NETWORKS[network]
    config = SyncConfig(**{k: v for k, v in vars(base).items()})
    config.rpc_url = os.environ.get("LEDGERMIRROR_RPC_URL", config.rpc_url)
    config.program_id = os.environ.get("LEDGERMIRROR_PROGRAM_ID", config.program_id)
    config.cache_db_path = os.environ.get("LEDGERMIRROR_CACHE_DB", config.cache_db_path)
    return config
