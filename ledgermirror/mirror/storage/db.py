import sqlite3
import threading
import time
from typing import Dict, List, Optional
from ...protocol.types.common import CacheWriteConflict, StateWriteConflict
from ...protocol.types.reconcile import CacheEntry, Pair
from ...protocol.types.player import OwnershipView
from ...protocol.types.state import CachedState, StateKey, StateKind, StateValue, VIEW_TYPES

_ENTRY_COLUMNS = (
    "wallet_address, property_id, slots_owned, slots_shielded, purchase_timestamp, "
    "shield_expiry, shield_cooldown, steal_protection_expiry, last_synced_at"
)

def _row_to_entry(row) -> CacheEntry:
    return CacheEntry(
        wallet=row[0],
        property_id=row[1],
        slots_owned=row[2],
        slots_shielded=row[3],
        purchase_timestamp=row[4],
        shield_expiry=row[5],
        shield_cooldown=row[6],
        steal_protection_expiry=row[7],
        last_synced_at=row[8],
    )

# kind -> (table, key field -> column)
_STATE_TABLES = {
    StateKind.SET_COOLDOWN: ("player_set_cooldowns", {"wallet": "wallet_address", "set_id": "set_id"}),
    StateKind.STEAL_COOLDOWN: ("player_steal_cooldowns", {"wallet": "wallet_address", "property_id": "property_id"}),
    StateKind.PROPERTY_STATE: ("properties_state", {"property_id": "property_id"}),
}

def _state_columns(kind: StateKind) -> str:
    view_type = VIEW_TYPES[kind]
    _, key_columns = _STATE_TABLES[kind]
    return ", ".join(list(key_columns.values()) + list(view_type.value_fields) + ["last_synced_at"])

def _row_to_state(kind: StateKind, row) -> CachedState:
    view_type = VIEW_TYPES[kind]
    names = list(view_type.key_fields) + list(view_type.value_fields)
    return CachedState(view_type(**dict(zip(names, row))), row[len(names)])

def _now_micros() -> int:
    return time.time_ns() // 1000

class CacheStore:
    """
    Keyed store of ownership entries, queryable by wallet and by property.

    Every write bumps last_synced_at for the pair. Writers pass the
    last_synced_at they read (None when they saw no entry); a mismatch means
    someone else wrote in between and raises CacheWriteConflict.
    """

    def __init__(self, db_path: str):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.cursor = self.conn.cursor()
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._lock:
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS property_ownership (
                    wallet_address TEXT NOT NULL,
                    property_id INTEGER NOT NULL,
                    slots_owned INTEGER DEFAULT 0,
                    slots_shielded INTEGER DEFAULT 0,
                    purchase_timestamp INTEGER DEFAULT 0,
                    shield_expiry INTEGER DEFAULT 0,
                    shield_cooldown INTEGER DEFAULT 0,
                    steal_protection_expiry INTEGER DEFAULT 0,
                    last_synced_at INTEGER NOT NULL,
                    PRIMARY KEY (wallet_address, property_id)
                )
            ''')
            # Property-major lookups ("who owns slots of property P")
            self.cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_ownership_property
                ON property_ownership (property_id)
            ''')
            # Wallets that full-scope cycles enumerate, even without cached entries
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS known_wallets (
                    wallet_address TEXT PRIMARY KEY,
                    registered_at INTEGER NOT NULL
                )
            ''')
            # Cooldowns and property state, mirrored next to ownership
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS player_set_cooldowns (
                    wallet_address TEXT NOT NULL,
                    set_id INTEGER NOT NULL,
                    last_purchase_timestamp INTEGER DEFAULT 0,
                    cooldown_duration INTEGER DEFAULT 0,
                    last_purchased_property_id INTEGER DEFAULT 0,
                    properties_mask INTEGER DEFAULT 0,
                    properties_count INTEGER DEFAULT 0,
                    last_synced_at INTEGER NOT NULL,
                    PRIMARY KEY (wallet_address, set_id)
                )
            ''')
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS player_steal_cooldowns (
                    wallet_address TEXT NOT NULL,
                    property_id INTEGER NOT NULL,
                    last_steal_attempt_timestamp INTEGER DEFAULT 0,
                    last_synced_at INTEGER NOT NULL,
                    PRIMARY KEY (wallet_address, property_id)
                )
            ''')
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS properties_state (
                    property_id INTEGER PRIMARY KEY,
                    set_id INTEGER DEFAULT 0,
                    available_slots INTEGER DEFAULT 0,
                    max_slots_per_property INTEGER DEFAULT 0,
                    max_per_player INTEGER DEFAULT 0,
                    last_synced_at INTEGER NOT NULL
                )
            ''')
            self.conn.commit()

    def close(self):
        with self._lock:
            self.conn.close()

    # --- Reads ---
    def get_entry(self, wallet: str, property_id: int) -> Optional[CacheEntry]:
        with self._lock:
            self.cursor.execute(
                f'SELECT {_ENTRY_COLUMNS} FROM property_ownership WHERE wallet_address = ? AND property_id = ?',
                (wallet, property_id)
            )
            row = self.cursor.fetchone()
            return _row_to_entry(row) if row else None

    def get_entries_for_wallet(self, wallet: str) -> Dict[Pair, CacheEntry]:
        with self._lock:
            self.cursor.execute(
                f'SELECT {_ENTRY_COLUMNS} FROM property_ownership WHERE wallet_address = ?',
                (wallet,)
            )
            return {(r[0], r[1]): _row_to_entry(r) for r in self.cursor.fetchall()}

    def get_entries_for_property(self, property_id: int) -> Dict[Pair, CacheEntry]:
        with self._lock:
            self.cursor.execute(
                f'SELECT {_ENTRY_COLUMNS} FROM property_ownership WHERE property_id = ?',
                (property_id,)
            )
            return {(r[0], r[1]): _row_to_entry(r) for r in self.cursor.fetchall()}

    def get_all_entries(self) -> Dict[Pair, CacheEntry]:
        with self._lock:
            self.cursor.execute(f'SELECT {_ENTRY_COLUMNS} FROM property_ownership')
            return {(r[0], r[1]): _row_to_entry(r) for r in self.cursor.fetchall()}

    def get_owners_of_property(self, property_id: int) -> List[str]:
        with self._lock:
            self.cursor.execute(
                'SELECT wallet_address FROM property_ownership WHERE property_id = ? ORDER BY wallet_address',
                (property_id,)
            )
            return [row[0] for row in self.cursor.fetchall()]

    # --- Writes ---
    def upsert_entry(self, view: OwnershipView, expected_last_synced_at: Optional[int]) -> CacheEntry:
        """
        Writes ledger values for a pair.

        Args:
            view: Ledger-side values to store
            expected_last_synced_at: Token read alongside the entry (None if there was no entry)

        Returns:
            The stored CacheEntry with its new last_synced_at

        Raises:
            CacheWriteConflict: If the pair changed since the token was read
        """
        with self._lock:
            new_token = self._next_token(expected_last_synced_at)
            params = (
                view.slots_owned, view.slots_shielded, view.purchase_timestamp,
                view.shield_expiry, view.shield_cooldown, view.steal_protection_expiry,
                new_token,
            )
            if expected_last_synced_at is None:
                self.cursor.execute('''
                    INSERT OR IGNORE INTO property_ownership (
                        slots_owned, slots_shielded, purchase_timestamp, shield_expiry,
                        shield_cooldown, steal_protection_expiry, last_synced_at,
                        wallet_address, property_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', params + (view.wallet, view.property_id))
            else:
                self.cursor.execute('''
                    UPDATE property_ownership SET
                        slots_owned = ?, slots_shielded = ?, purchase_timestamp = ?, shield_expiry = ?,
                        shield_cooldown = ?, steal_protection_expiry = ?, last_synced_at = ?
                    WHERE wallet_address = ? AND property_id = ? AND last_synced_at = ?
                ''', params + (view.wallet, view.property_id, expected_last_synced_at))

            if self.cursor.rowcount != 1:
                self.conn.rollback()
                raise CacheWriteConflict(view.wallet, view.property_id)
            self.conn.commit()

        return CacheEntry(**view.model_dump(exclude={"last_synced_at"}), last_synced_at=new_token)

    def delete_entry(self, wallet: str, property_id: int, expected_last_synced_at: int):
        """Deletes a pair if it has not changed since the token was read."""
        with self._lock:
            self.cursor.execute(
                'DELETE FROM property_ownership WHERE wallet_address = ? AND property_id = ? AND last_synced_at = ?',
                (wallet, property_id, expected_last_synced_at)
            )
            if self.cursor.rowcount != 1:
                self.conn.rollback()
                raise CacheWriteConflict(wallet, property_id)
            self.conn.commit()

    def _next_token(self, previous: Optional[int]) -> int:
        now = _now_micros()
        if previous is not None and now <= previous:
            return previous + 1
        return now

    # --- Cooldowns and property state ---
    def get_state(self, kind: StateKind, key: StateKey) -> Optional[CachedState]:
        table, key_columns = _STATE_TABLES[kind]
        where = " AND ".join(f"{column} = ?" for column in key_columns.values())
        with self._lock:
            self.cursor.execute(
                f'SELECT {_state_columns(kind)} FROM {table} WHERE {where}',
                tuple(key)
            )
            row = self.cursor.fetchone()
            return _row_to_state(kind, row) if row else None

    def get_states(self, kind: StateKind, **match) -> Dict[StateKey, CachedState]:
        """
        Rows of one kind, optionally filtered on key fields.

        Example:
            store.get_states(StateKind.SET_COOLDOWN, wallet=wallet)
        """
        table, key_columns = _STATE_TABLES[kind]
        query = f'SELECT {_state_columns(kind)} FROM {table}'
        if match:
            query += " WHERE " + " AND ".join(f"{key_columns[name]} = ?" for name in match)
        with self._lock:
            self.cursor.execute(query, tuple(match.values()))
            states = [_row_to_state(kind, row) for row in self.cursor.fetchall()]
        return {state.value.key: state for state in states}

    def upsert_state(self, view: StateValue, expected_last_synced_at: Optional[int]) -> CachedState:
        """
        Writes ledger values for one cooldown or property-state row, with the
        same token rules as upsert_entry.

        Raises:
            StateWriteConflict: If the row changed since the token was read
        """
        table, key_columns = _STATE_TABLES[view.state_kind]
        values = tuple(getattr(view, name) for name in view.value_fields)
        with self._lock:
            new_token = self._next_token(expected_last_synced_at)
            if expected_last_synced_at is None:
                columns = list(view.value_fields) + ["last_synced_at"] + list(key_columns.values())
                self.cursor.execute(
                    f'INSERT OR IGNORE INTO {table} ({", ".join(columns)}) '
                    f'VALUES ({", ".join("?" for _ in columns)})',
                    values + (new_token,) + view.key
                )
            else:
                assignments = ", ".join(f"{name} = ?" for name in view.value_fields)
                where = " AND ".join(f"{column} = ?" for column in key_columns.values())
                self.cursor.execute(
                    f'UPDATE {table} SET {assignments}, last_synced_at = ? '
                    f'WHERE {where} AND last_synced_at = ?',
                    values + (new_token,) + view.key + (expected_last_synced_at,)
                )

            if self.cursor.rowcount != 1:
                self.conn.rollback()
                raise StateWriteConflict(table, view.key)
            self.conn.commit()

        return CachedState(view, new_token)

    def delete_state(self, kind: StateKind, key: StateKey, expected_last_synced_at: int):
        table, key_columns = _STATE_TABLES[kind]
        where = " AND ".join(f"{column} = ?" for column in key_columns.values())
        with self._lock:
            self.cursor.execute(
                f'DELETE FROM {table} WHERE {where} AND last_synced_at = ?',
                tuple(key) + (expected_last_synced_at,)
            )
            if self.cursor.rowcount != 1:
                self.conn.rollback()
                raise StateWriteConflict(table, key)
            self.conn.commit()

    # --- Known wallets ---
    def register_wallet(self, wallet: str):
        with self._lock:
            self.cursor.execute(
                'INSERT OR IGNORE INTO known_wallets (wallet_address, registered_at) VALUES (?, ?)',
                (wallet, int(time.time()))
            )
            self.conn.commit()

    def get_known_wallets(self) -> List[str]:
        """Registered wallets plus every wallet that has a cached entry or cooldown."""
        with self._lock:
            self.cursor.execute('''
                SELECT wallet_address FROM known_wallets
                UNION
                SELECT DISTINCT wallet_address FROM property_ownership
                UNION
                SELECT DISTINCT wallet_address FROM player_set_cooldowns
                UNION
                SELECT DISTINCT wallet_address FROM player_steal_cooldowns
                ORDER BY wallet_address
            ''')
            return [row[0] for row in self.cursor.fetchall()]

    def clear(self):
        with self._lock:
            self.cursor.execute('DELETE FROM property_ownership')
            self.cursor.execute('DELETE FROM known_wallets')
            for table, _ in _STATE_TABLES.values():
                self.cursor.execute(f'DELETE FROM {table}')
            self.conn.commit()
