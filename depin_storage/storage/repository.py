"""
Inventory store: shared provider and allocation records.

Every write to a provider's capacity goes through a conditional update
(compare-and-swap on the current value), so concurrent writers either win
cleanly or receive CapacityConflict. Allocations are append-only.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ALLOCATIONS_TABLE,
    HOLDS_TABLE,
    PROVIDERS_TABLE,
    AllocationRecord,
    CapacityHold,
    ChangeEvent,
    ChangeKind,
    ProviderRecord,
    utc_now,
)
from ..core.errors import CapacityConflict, ProviderNotFound, StoreError

logger = logging.getLogger(__name__)

# Holds older than this no longer count against a provider's capacity
HOLD_TTL = timedelta(hours=1)

_PROVIDER_COLUMNS = (
    "id, name, wallet_address, available_storage, price_per_gb, "
    "ipfs_node_id, is_active, created_at, updated_at"
)
_ALLOCATION_COLUMNS = (
    "id, user_address, provider_id, allocated_gb, paid_amount, "
    "transaction_hash, expires_at, created_at"
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _provider_from_row(row) -> ProviderRecord:
    return ProviderRecord(
        id=row[0],
        name=row[1],
        wallet_address=row[2],
        available_storage=row[3],
        price_per_gb=Decimal(row[4]),
        ipfs_node_id=row[5],
        is_active=bool(row[6]),
        created_at=_parse_ts(row[7]),
        updated_at=_parse_ts(row[8])
    )


def _allocation_from_row(row) -> AllocationRecord:
    return AllocationRecord(
        id=row[0],
        user_address=row[1],
        provider_id=row[2],
        allocated_gb=row[3],
        paid_amount=int(row[4]),
        transaction_hash=row[5],
        expires_at=_parse_ts(row[6]),
        created_at=_parse_ts(row[7])
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the provider, allocation and hold tables if they don't exist.

    storage_allocations is an append-only ledger: no UPDATE or DELETE is
    ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {PROVIDERS_TABLE} (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                wallet_address TEXT NOT NULL UNIQUE,
                available_storage INTEGER NOT NULL CHECK (available_storage >= 0),
                price_per_gb TEXT NOT NULL,
                ipfs_node_id TEXT,
                is_active INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS {ALLOCATIONS_TABLE} (
                id TEXT PRIMARY KEY,
                user_address TEXT NOT NULL,
                provider_id TEXT NOT NULL REFERENCES {PROVIDERS_TABLE}(id),
                allocated_gb INTEGER NOT NULL CHECK (allocated_gb > 0),
                paid_amount TEXT NOT NULL,
                transaction_hash TEXT NOT NULL UNIQUE,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_allocations_provider
                ON {ALLOCATIONS_TABLE}(provider_id, expires_at);

            CREATE TABLE IF NOT EXISTS {HOLDS_TABLE} (
                id TEXT PRIMARY KEY,
                provider_id TEXT NOT NULL REFERENCES {PROVIDERS_TABLE}(id),
                buyer_address TEXT NOT NULL,
                gb INTEGER NOT NULL CHECK (gb > 0),
                created_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


class Subscription:
    """Handle returned by InventoryStore.subscribe."""

    def __init__(
        self,
        store: "InventoryStore",
        table: str,
        predicate: Optional[Callable[[Any], bool]],
        on_change: Callable[[ChangeEvent], None]
    ):
        self._store = store
        self.table = table
        self.predicate = predicate
        self.on_change = on_change

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return self.predicate is None or self.predicate(event.record)

    def unsubscribe(self) -> None:
        self._store._remove_subscription(self)


class InventoryStore:
    """Read and conditional-write access to provider and allocation records.

    One instance is constructed at process start and handed to the
    liveness tracker and the purchase orchestrator. Each operation opens
    its own connection, so an instance may be shared across threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    # -- providers ---------------------------------------------------------

    def register_provider(
        self,
        wallet_address: str,
        name: str,
        available_storage: int,
        price_per_gb: Decimal,
        ipfs_node_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ProviderRecord:
        """Create a provider record on first registration.

        Raises:
            StoreError: If a provider with this wallet address already exists
        """
        now = now or utc_now()
        record = ProviderRecord(
            id=str(uuid.uuid4()),
            name=name,
            wallet_address=wallet_address,
            available_storage=available_storage,
            price_per_gb=Decimal(price_per_gb),
            ipfs_node_id=ipfs_node_id,
            is_active=True,
            created_at=now,
            updated_at=now
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO {PROVIDERS_TABLE} ({_PROVIDER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.name,
                record.wallet_address,
                record.available_storage,
                str(record.price_per_gb),
                record.ipfs_node_id,
                1,
                _ts(now),
                _ts(now)
            ))
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to register provider {wallet_address}: {e}") from e
        finally:
            conn.close()

        self._notify(PROVIDERS_TABLE, ChangeKind.INSERT, record)
        return record

    def get_provider(self, provider_id: str) -> ProviderRecord:
        """Read a provider record fresh from the store.

        Raises:
            ProviderNotFound: If no such provider exists
            StoreError: If the read fails
        """
        row = self._fetch_one(
            f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} WHERE id = ?",
            (provider_id,)
        )
        if row is None:
            raise ProviderNotFound(f"Provider not found: {provider_id}")
        return _provider_from_row(row)

    def get_provider_by_address(self, wallet_address: str) -> Optional[ProviderRecord]:
        row = self._fetch_one(
            f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} "
            f"WHERE lower(wallet_address) = lower(?)",
            (wallet_address,)
        )
        return _provider_from_row(row) if row else None

    def list_providers(self) -> List[ProviderRecord]:
        rows = self._fetch_all(
            f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} ORDER BY created_at",
            ()
        )
        return [_provider_from_row(row) for row in rows]

    def update_liveness(
        self,
        provider_id: str,
        is_active: bool,
        last_seen: Optional[datetime] = None,
        ipfs_node_id: Optional[str] = None
    ) -> ProviderRecord:
        """Write the liveness fields of a provider record.

        Only the provider's own tracker calls this. The capacity field is
        never written here.

        Args:
            provider_id: Provider to update
            is_active: New active flag
            last_seen: Heartbeat timestamp; left unchanged when None
            ipfs_node_id: Content-network node id; left unchanged when None
        """
        assignments = ["is_active = ?"]
        params: List[Any] = [1 if is_active else 0]
        if last_seen is not None:
            assignments.append("updated_at = ?")
            params.append(_ts(last_seen))
        if ipfs_node_id is not None:
            assignments.append("ipfs_node_id = ?")
            params.append(ipfs_node_id)
        params.append(provider_id)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE {PROVIDERS_TABLE} SET {', '.join(assignments)} WHERE id = ?",
                params
            )
            if cursor.rowcount == 0:
                raise ProviderNotFound(f"Provider not found: {provider_id}")
            row = conn.execute(
                f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} WHERE id = ?",
                (provider_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to update liveness of {provider_id}: {e}") from e
        finally:
            conn.close()

        record = _provider_from_row(row)
        self._notify(PROVIDERS_TABLE, ChangeKind.UPDATE, record)
        return record

    def conditional_update_capacity(
        self,
        provider_id: str,
        expected_current: int,
        new_value: int,
        hold: Optional[CapacityHold] = None
    ) -> ProviderRecord:
        """Compare-and-swap the advertised capacity of a provider.

        The write only happens if the stored value still equals
        ``expected_current``. When ``hold`` is given it is inserted in the
        same transaction, so the taken capacity is visible to the
        provider's tracker from the instant it leaves the record.

        Raises:
            ValueError: If new_value is negative
            CapacityConflict: If the stored value no longer matches
            ProviderNotFound: If no such provider exists
            StoreError: If the write fails
        """
        if new_value < 0:
            raise ValueError("capacity must be >= 0")

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(f"""
                UPDATE {PROVIDERS_TABLE} SET available_storage = ?
                WHERE id = ? AND available_storage = ?
            """, (new_value, provider_id, expected_current))

            if cursor.rowcount == 0:
                current = conn.execute(
                    f"SELECT available_storage FROM {PROVIDERS_TABLE} WHERE id = ?",
                    (provider_id,)
                ).fetchone()
                conn.rollback()
                if current is None:
                    raise ProviderNotFound(f"Provider not found: {provider_id}")
                raise CapacityConflict(provider_id, expected_current, current[0])

            if hold is not None:
                conn.execute(f"""
                    INSERT INTO {HOLDS_TABLE} (id, provider_id, buyer_address, gb, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (hold.id, hold.provider_id, hold.buyer_address, hold.gb, _ts(hold.created_at)))

            row = conn.execute(
                f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} WHERE id = ?",
                (provider_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Conditional capacity update failed for {provider_id}: {e}") from e
        finally:
            conn.close()

        record = _provider_from_row(row)
        self._notify(PROVIDERS_TABLE, ChangeKind.UPDATE, record)
        return record

    def release_capacity(self, hold: CapacityHold) -> Optional[ProviderRecord]:
        """Hand held capacity back to the provider and drop the hold.

        Idempotent: if the hold is already gone (released, committed, or
        never written) nothing changes and None is returned.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            exists = conn.execute(
                f"SELECT 1 FROM {HOLDS_TABLE} WHERE id = ?", (hold.id,)
            ).fetchone()
            if exists is None:
                conn.rollback()
                return None

            current = conn.execute(
                f"SELECT available_storage FROM {PROVIDERS_TABLE} WHERE id = ?",
                (hold.provider_id,)
            ).fetchone()
            if current is None:
                conn.rollback()
                raise ProviderNotFound(f"Provider not found: {hold.provider_id}")

            # Write lock is held, so the swap cannot miss
            conn.execute(f"""
                UPDATE {PROVIDERS_TABLE} SET available_storage = ?
                WHERE id = ? AND available_storage = ?
            """, (current[0] + hold.gb, hold.provider_id, current[0]))
            conn.execute(f"DELETE FROM {HOLDS_TABLE} WHERE id = ?", (hold.id,))

            row = conn.execute(
                f"SELECT {_PROVIDER_COLUMNS} FROM {PROVIDERS_TABLE} WHERE id = ?",
                (hold.provider_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to release hold {hold.id}: {e}") from e
        finally:
            conn.close()

        record = _provider_from_row(row)
        self._notify(PROVIDERS_TABLE, ChangeKind.UPDATE, record)
        return record

    # -- allocations -------------------------------------------------------

    def insert_allocation(
        self,
        record: AllocationRecord,
        hold_id: Optional[str] = None
    ) -> AllocationRecord:
        """Append an allocation record, consuming its capacity hold atomically.

        Raises:
            StoreError: If the insert fails (nothing is written in that case)
        """
        created_at = record.created_at or utc_now()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(f"""
                INSERT INTO {ALLOCATIONS_TABLE} ({_ALLOCATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.user_address,
                record.provider_id,
                record.allocated_gb,
                str(record.paid_amount),
                record.transaction_hash,
                _ts(record.expires_at),
                _ts(created_at)
            ))
            if hold_id is not None:
                conn.execute(f"DELETE FROM {HOLDS_TABLE} WHERE id = ?", (hold_id,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to insert allocation {record.id}: {e}") from e
        finally:
            conn.close()

        self._notify(ALLOCATIONS_TABLE, ChangeKind.INSERT, record)
        return record

    def list_allocations(
        self,
        provider_id: Optional[str] = None,
        user_address: Optional[str] = None,
        active_at: Optional[datetime] = None
    ) -> List[AllocationRecord]:
        """List allocations, newest expiry first.

        Args:
            provider_id: Optional filter for one provider
            user_address: Optional filter for one buyer
            active_at: When given, only allocations not expired at this time
        """
        query = f"SELECT {_ALLOCATION_COLUMNS} FROM {ALLOCATIONS_TABLE}"
        conditions = []
        params: List[Any] = []

        if provider_id:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if user_address:
            conditions.append("lower(user_address) = lower(?)")
            params.append(user_address)
        if active_at is not None:
            conditions.append("expires_at >= ?")
            params.append(_ts(active_at))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY expires_at DESC"

        return [_allocation_from_row(row) for row in self._fetch_all(query, params)]

    def sum_active_allocations(self, provider_id: str, now: datetime) -> int:
        """Total GB of non-expired allocations against a provider."""
        row = self._fetch_one(f"""
            SELECT COALESCE(SUM(allocated_gb), 0) FROM {ALLOCATIONS_TABLE}
            WHERE provider_id = ? AND expires_at >= ?
        """, (provider_id, _ts(now)))
        return int(row[0])

    def sum_pending_holds(self, provider_id: str, now: datetime) -> int:
        """Total GB held by purchases in flight, ignoring holds past HOLD_TTL."""
        row = self._fetch_one(f"""
            SELECT COALESCE(SUM(gb), 0) FROM {HOLDS_TABLE}
            WHERE provider_id = ? AND created_at > ?
        """, (provider_id, _ts(now - HOLD_TTL)))
        return int(row[0])

    def list_holds(self, provider_id: Optional[str] = None) -> List[CapacityHold]:
        query = f"SELECT id, provider_id, buyer_address, gb, created_at FROM {HOLDS_TABLE}"
        params: List[Any] = []
        if provider_id:
            query += " WHERE provider_id = ?"
            params.append(provider_id)
        return [
            CapacityHold(
                id=row[0],
                provider_id=row[1],
                buyer_address=row[2],
                gb=row[3],
                created_at=_parse_ts(row[4])
            )
            for row in self._fetch_all(query, params)
        ]

    # -- change notifications ---------------------------------------------

    def subscribe(
        self,
        table: str,
        predicate: Optional[Callable[[Any], bool]],
        on_change: Callable[[ChangeEvent], None]
    ) -> Subscription:
        """Register for row-level change events on a table.

        Events are delivered synchronously after the write commits, on the
        writer's thread.

        Args:
            table: Table name (providers or allocations)
            predicate: Optional record filter; None receives every change
            on_change: Callback receiving a ChangeEvent
        """
        if table not in (PROVIDERS_TABLE, ALLOCATIONS_TABLE):
            raise ValueError(f"Unknown table: {table}")
        subscription = Subscription(self, table, predicate, on_change)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, table: str, kind: ChangeKind, record: Any) -> None:
        event = ChangeEvent(table=table, kind=kind, record=record)
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            try:
                if subscription.matches(event):
                    subscription.on_change(event)
            except Exception:
                logger.exception("Change subscriber failed for %s %s", table, kind.value)

    # -- helpers -----------------------------------------------------------

    def _fetch_one(self, query: str, params) -> Optional[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Store read failed: {e}") from e
        finally:
            conn.close()

    def _fetch_all(self, query: str, params) -> List[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Store read failed: {e}") from e
        finally:
            conn.close()
