import pytest
from typing import Callable, Dict, List, Optional, Set

from solders.pubkey import Pubkey

from ledgermirror.mirror.ledger.reader import LedgerReader, AccountFetch
from ledgermirror.mirror.storage.db import CacheStore
from ledgermirror.protocol.codec.decoder import encode_player_account, encode_ownership_account, encode_property_account
from ledgermirror.protocol.config.params import SyncConfig, DEFAULT_PROGRAM_ID, MAX_PROPERTIES, MAX_SETS
from ledgermirror.protocol.crypto.addresses import derive_player_address, derive_ownership_address, derive_property_address
from ledgermirror.protocol.types.player import PlayerRecord, OwnershipRecord
from ledgermirror.protocol.types.state import PropertyRecord

PROGRAM_ID = DEFAULT_PROGRAM_ID
BASE_TS = 1_700_000_000


class FakeLedger(LedgerReader):
    """In-memory ledger keyed by account address."""

    def __init__(self):
        self.accounts: Dict[str, bytes] = {}
        self.failing: Set[str] = set()          # always transient
        self.flaky: Dict[str, int] = {}         # address -> transient failures left
        self.calls: List[str] = []
        self.on_fetch: Optional[Callable[[str], None]] = None

    async def fetch_account(self, address) -> AccountFetch:
        key = str(address)
        self.calls.append(key)
        if self.on_fetch:
            self.on_fetch(key)
        if key in self.failing:
            return AccountFetch.transient("connection refused")
        if self.flaky.get(key, 0) > 0:
            self.flaky[key] -= 1
            return AccountFetch.transient("timeout")
        if key not in self.accounts:
            return AccountFetch.not_found()
        return AccountFetch.found(self.accounts[key])

    # --- PlayerAccount helpers ---
    def player_address(self, wallet: str) -> str:
        return str(derive_player_address(PROGRAM_ID, wallet))

    def set_player(self, record: PlayerRecord):
        self.accounts[self.player_address(record.owner)] = encode_player_account(record)

    def remove_player(self, wallet: str):
        self.accounts.pop(self.player_address(wallet), None)

    def fail_player(self, wallet: str):
        self.failing.add(self.player_address(wallet))

    # --- PropertyOwnership helpers ---
    def ownership_address(self, wallet: str, property_id: int) -> str:
        return str(derive_ownership_address(PROGRAM_ID, wallet, property_id))

    def set_ownership(self, record: OwnershipRecord):
        self.accounts[self.ownership_address(record.player, record.property_id)] = encode_ownership_account(record)

    # --- Property helpers ---
    def property_address(self, property_id: int) -> str:
        return str(derive_property_address(PROGRAM_ID, property_id))

    def set_property(self, record: PropertyRecord):
        self.accounts[self.property_address(record.property_id)] = encode_property_account(record)


def make_player(owner: str, slots: Optional[Dict[int, int]] = None, **overrides) -> PlayerRecord:
    """
    PlayerRecord holding `slots` ({property_id: slots}). Owned properties get
    deterministic timestamps so two calls with the same input are equal.
    """
    slots = slots or {}
    per_property = [0] * MAX_PROPERTIES
    purchase = list(per_property)
    for pid, count in slots.items():
        per_property[pid] = count
        purchase[pid] = BASE_TS + pid if count > 0 else 0

    values = dict(
        owner=owner,
        total_base_daily_income=1_000 * len(slots),
        last_accumulation_timestamp=BASE_TS,
        total_rewards_claimed=0,
        pending_rewards=0,
        total_steals_attempted=0,
        total_steals_successful=0,
        total_slots_owned=sum(slots.values()),
        complete_sets_owned=0,
        properties_owned_count=sum(1 for c in slots.values() if c > 0),
        bump=254,
        property_purchase_timestamp=purchase,
        property_shield_expiry=[0] * MAX_PROPERTIES,
        property_shield_cooldown=[0] * MAX_PROPERTIES,
        property_steal_protection_expiry=[0] * MAX_PROPERTIES,
        set_cooldown_timestamp=[0] * MAX_SETS,
        set_cooldown_duration=[0] * MAX_SETS,
        steal_cooldown_timestamp=[0] * MAX_PROPERTIES,
        property_slots=per_property,
        property_shielded=[0] * MAX_PROPERTIES,
        set_last_purchased_property=[0] * MAX_SETS,
        set_properties_mask=[0] * MAX_SETS,
    )
    values.update(overrides)
    return PlayerRecord(**values)


def make_property(property_id: int, available_slots: int = 100, **overrides) -> PropertyRecord:
    values = dict(
        property_id=property_id,
        set_id=property_id // 3,
        max_slots_per_property=100,
        available_slots=available_slots,
        max_per_player=10,
        price=1_000_000,
        yield_percent_bps=500,
        shield_cost_percent_bps=1000,
        cooldown_seconds=86_400,
        bump=250,
    )
    values.update(overrides)
    return PropertyRecord(**values)


def new_wallet() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def wallet_a():
    return new_wallet()


@pytest.fixture
def wallet_b():
    return new_wallet()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store(tmp_path):
    cache = CacheStore(str(tmp_path / "cache.db"))
    yield cache
    cache.close()


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        network_id="test",
        rpc_url="http://127.0.0.1:8899",
        program_id=PROGRAM_ID,
        cache_db_path=str(tmp_path / "cache.db"),
        sync_interval_sec=0.05,
        first_sync_delay_sec=0.0,
        max_concurrent_fetches=4,
        fetch_retries=2,
        retry_backoff_sec=0.0,
        max_unresolved_streak=3,
        max_concurrent_writes=4,
    )
