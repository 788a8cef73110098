"""Ledger Store - async SQLite persistence for wagers, users and notifications.

This service:
- Persists wagers of both kinds in one table, discriminated by wager_type
- Exposes compare-and-set updates, the only way status and processing
  flags are written, so concurrent triggers cannot both win a claim
- Bulk-freezes wagers whose deadline passed
- Keeps per-user aggregates and write-once notification records
"""

import asyncio
import json
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import aiosqlite
import structlog

from arbiter.core.config import ConfigManager
from arbiter.core.lifecycle import BaseComponent, HealthCheckResult
from arbiter.core.retry import InvalidRequest, StoreError
from arbiter.domain.stats import UserStats
from arbiter.domain.wager import (
    LIVE_STATUSES,
    MATCHED_STATUSES,
    Position,
    PredictionDirection,
    ResolutionStatus,
    Wager,
    WagerKind,
    WagerStatus,
    format_ts,
    parse_ts,
    utcnow,
)

log = structlog.get_logger()

SCHEMA_VERSION = 1
DEFAULT_DB_PATH = "./data/arbiter.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS wagers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wager_id TEXT NOT NULL UNIQUE,
    wager_type TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    creator_address TEXT,
    acceptor_id TEXT,
    acceptor_address TEXT,
    amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
    status TEXT NOT NULL DEFAULT 'open',
    expiry_time TEXT NOT NULL,
    escrow_address TEXT,
    creator_position TEXT,
    opponent_position TEXT,
    token_symbol TEXT,
    prediction_type TEXT,
    target_price TEXT,
    sport TEXT,
    team1 TEXT,
    team2 TEXT,
    prediction TEXT,
    winner_id TEXT,
    winner_position TEXT,
    resolution_value TEXT,
    on_chain_signature TEXT,
    accept_signature TEXT,
    resolution_time TEXT,
    is_draw INTEGER NOT NULL DEFAULT 0,
    settlement_simulated INTEGER NOT NULL DEFAULT 0,
    expiry_processed INTEGER NOT NULL DEFAULT 0,
    refund_processed INTEGER NOT NULL DEFAULT 0,
    resolution_status TEXT,
    stakes_recorded INTEGER NOT NULL DEFAULT 0,
    cancelled_by TEXT,
    cancelled_at TEXT,
    refund_signature TEXT,
    extra TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    wallet_address TEXT UNIQUE,
    total_wagered TEXT NOT NULL DEFAULT '0',
    total_won TEXT NOT NULL DEFAULT '0',
    total_lost TEXT NOT NULL DEFAULT '0',
    win_rate TEXT NOT NULL DEFAULT '0',
    streak_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    user_address TEXT,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_wagers_status_expiry ON wagers(status, expiry_time);
CREATE INDEX IF NOT EXISTS idx_wagers_type_status ON wagers(wager_type, status);
CREATE INDEX IF NOT EXISTS idx_wagers_resolution ON wagers(resolution_status);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""

# Columns writable through compare_and_set / used in expectations
WAGER_COLUMNS = frozenset({
    "wager_type", "creator_id", "creator_address", "acceptor_id", "acceptor_address",
    "amount", "status", "expiry_time", "escrow_address", "creator_position",
    "opponent_position", "token_symbol", "prediction_type", "target_price", "sport",
    "team1", "team2", "prediction", "winner_id", "winner_position", "resolution_value",
    "on_chain_signature", "accept_signature", "resolution_time", "is_draw",
    "settlement_simulated", "expiry_processed", "refund_processed", "resolution_status",
    "stakes_recorded", "cancelled_by", "cancelled_at", "refund_signature", "extra",
})


@dataclass
class User:
    """A platform user with running aggregates."""

    user_id: str
    wallet_address: Optional[str] = None
    stats: UserStats = field(default_factory=UserStats)


@dataclass
class Notification:
    """A stored notification record."""

    id: int
    user_id: Optional[str]
    user_address: Optional[str]
    type: str
    title: str
    message: str
    data: dict[str, Any]
    created_at: datetime


@dataclass
class StuckClaim:
    """A wager claimed for settlement but never completed."""

    wager_id: str
    wager_type: str
    status: str
    claimed_since: datetime


def _encode(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_ts(value)


class ConnectionPool:
    """Single serialized aiosqlite connection.

    SQLite allows one writer at a time; a lock around writes keeps
    read-modify-write sections atomic within the process. WAL mode lets
    readers proceed while a write is in progress.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        async with self._lock:
            if self._connected:
                return

            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

            self._connected = True

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def acquire(self) -> aiosqlite.Connection:
        """Return the connection.

        Raises:
            StoreError: If the pool is not connected.
        """
        if not self._connected or not self._connection:
            raise StoreError("Ledger not connected")
        return self._connection

    @property
    def lock(self) -> asyncio.Lock:
        """Lock serializing write operations."""
        return self._lock


class Ledger(BaseComponent):
    """SQLite-backed record store for the settlement worker.

    Every status or processing-flag change goes through compare_and_set,
    which reports whether the precondition still held. Callers treat a
    False result as "someone else got there first".
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the ledger.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for default settings.
        """
        super().__init__(name="ledger")
        self._log = log.bind(component="ledger")

        if db_path:
            self._db_path = db_path
        elif config:
            self._db_path = config.get_str("database.path", DEFAULT_DB_PATH)
        else:
            self._db_path = DEFAULT_DB_PATH

        self._pool = ConnectionPool(self._db_path)
        self._start_time: Optional[float] = None

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    @property
    def db_path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        """Connect to database and create the schema."""
        await self.start()

    async def close(self) -> None:
        await self.stop()

    async def _do_start(self) -> None:
        self._start_time = time.time()
        self._log.info("connecting_ledger", db_path=str(self._db_path))

        try:
            await self._pool.connect()
            conn = await self._pool.acquire()
            async with self._pool.lock:
                await conn.executescript(SCHEMA_SQL)
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError("Failed to open ledger", cause=e) from e

        self._log.info("ledger_connected")

    async def _do_stop(self) -> None:
        await self._pool.close()
        self._log.info("ledger_closed")

    async def _do_health_check(self) -> HealthCheckResult:
        try:
            conn = await self._pool.acquire()
            async with conn.execute("SELECT COUNT(*) AS n FROM wagers") as cursor:
                row = await cursor.fetchone()
        except (StoreError, sqlite3.Error) as e:
            return HealthCheckResult.unhealthy(f"Ledger unavailable: {e}")
        return HealthCheckResult.healthy(
            db_path=self._db_path,
            wagers=row["n"] if row else 0,
            uptime_seconds=self.uptime_seconds,
        )

    # ============ Wager Operations ============

    async def insert_wager(self, wager: Wager) -> Wager:
        """Insert a new wager record.

        Raises:
            InvalidRequest: If the wager_id already exists.
            StoreError: On any other database failure.
        """
        now = utcnow()
        wager.created_at = now
        wager.updated_at = now

        row = {col: getattr(wager, col) for col in WAGER_COLUMNS}
        row["wager_id"] = wager.wager_id
        row["created_at"] = now
        row["updated_at"] = now
        columns = sorted(row)

        sql = (
            f"INSERT INTO wagers ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                cursor = await conn.execute(sql, [_encode(row[c]) for c in columns])
                await conn.commit()
        except sqlite3.IntegrityError as e:
            raise InvalidRequest(f"Wager {wager.wager_id} already exists", cause=e) from e
        except sqlite3.Error as e:
            raise StoreError(f"Failed to insert wager {wager.wager_id}", cause=e) from e

        wager.id = cursor.lastrowid
        self._log.debug("wager_inserted", wager_id=wager.wager_id, wager_type=wager.wager_type.value)
        return wager

    async def get_wager(
        self,
        wager_id: str,
        wager_type: Optional[WagerKind] = None,
    ) -> Optional[Wager]:
        """Get a wager by its external id (optionally checking its kind)."""
        query = "SELECT * FROM wagers WHERE wager_id = ?"
        params: list[Any] = [wager_id]
        if wager_type is not None:
            query += " AND wager_type = ?"
            params.append(_encode(wager_type))

        rows = await self._fetch(query, params)
        if not rows:
            return None
        return self._row_to_wager(rows[0])

    async def compare_and_set(
        self,
        wager_id: str,
        wager_type: Optional[WagerKind],
        changes: dict[str, Any],
        expect: dict[str, Any],
    ) -> bool:
        """Conditionally update one wager.

        Args:
            wager_id: External wager id.
            wager_type: Kind the record must have (None to skip the check).
            changes: Column -> new value.
            expect: Column -> precondition. A plain value means equality,
                None means IS NULL, a tuple/list/set means IN.

        Returns:
            True if exactly one row matched the preconditions and was updated.
        """
        unknown = (set(changes) | set(expect)) - WAGER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown wager columns: {sorted(unknown)}")
        if not changes:
            raise ValueError("compare_and_set needs at least one change")

        assignments = dict(changes)
        assignments["updated_at"] = utcnow()
        set_sql = ", ".join(f"{col} = ?" for col in assignments)
        params: list[Any] = [_encode(v) for v in assignments.values()]

        where = ["wager_id = ?"]
        params.append(wager_id)
        if wager_type is not None:
            where.append("wager_type = ?")
            params.append(_encode(wager_type))

        for col, value in expect.items():
            if value is None:
                where.append(f"{col} IS NULL")
            elif isinstance(value, (tuple, list, set, frozenset)):
                values = list(value)
                if not values:
                    return False
                where.append(f"{col} IN ({', '.join('?' for _ in values)})")
                params.extend(_encode(v) for v in values)
            else:
                where.append(f"{col} = ?")
                params.append(_encode(value))

        sql = f"UPDATE wagers SET {set_sql} WHERE {' AND '.join(where)}"

        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                cursor = await conn.execute(sql, params)
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Conditional update failed for {wager_id}", cause=e) from e

        return cursor.rowcount == 1

    async def freeze_expired(self, now: Optional[datetime] = None) -> int:
        """Relabel live wagers past their deadline as cancelled.

        Wagers already expiry-processed, and wagers with a claim held or
        completed, are left alone; a claimed wager is frozen by a later
        sweep once the claim is released.

        Returns:
            Number of wagers frozen.
        """
        now = now or utcnow()
        statuses = [s.value for s in LIVE_STATUSES]
        sql = f"""
            UPDATE wagers
            SET status = ?, updated_at = ?
            WHERE status IN ({', '.join('?' for _ in statuses)})
              AND expiry_time <= ?
              AND expiry_processed = 0
              AND resolution_status IS NULL
        """
        params = [
            WagerStatus.CANCELLED.value,
            format_ts(utcnow()),
            *statuses,
            format_ts(now),
        ]

        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                cursor = await conn.execute(sql, params)
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError("Failed to freeze expired wagers", cause=e) from e

        return cursor.rowcount

    async def list_pending_cancelled(self, limit: int = 100) -> list[Wager]:
        """Cancelled wagers whose refund or resolution has not run yet."""
        return await self._fetch_wagers(
            """
            SELECT * FROM wagers
            WHERE status = ?
              AND resolution_status IS NULL
              AND refund_processed = 0
              AND expiry_processed = 0
            ORDER BY expiry_time ASC
            LIMIT ?
            """,
            [WagerStatus.CANCELLED.value, limit],
        )

    async def list_due_crypto(
        self,
        window_start: datetime,
        window_end: datetime,
        limit: int = 100,
    ) -> list[Wager]:
        """Unclaimed matched crypto wagers whose deadline is inside the window."""
        statuses = [s.value for s in MATCHED_STATUSES]
        return await self._fetch_wagers(
            f"""
            SELECT * FROM wagers
            WHERE wager_type = ?
              AND status IN ({', '.join('?' for _ in statuses)})
              AND resolution_status IS NULL
              AND expiry_time >= ?
              AND expiry_time <= ?
            ORDER BY expiry_time ASC
            LIMIT ?
            """,
            [
                WagerKind.CRYPTO.value,
                *statuses,
                format_ts(window_start),
                format_ts(window_end),
                limit,
            ],
        )

    async def count_by_status(self) -> dict[str, int]:
        """Wager counts keyed by status."""
        rows = await self._fetch(
            "SELECT status, COUNT(*) AS n FROM wagers GROUP BY status", []
        )
        return {row["status"]: row["n"] for row in rows}

    async def list_stuck_claims(self, older_than_seconds: int = 300, limit: int = 50) -> list[StuckClaim]:
        """Wagers left in resolution_status=processing longer than a threshold."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        rows = await self._fetch(
            """
            SELECT wager_id, wager_type, status, updated_at FROM wagers
            WHERE resolution_status = ? AND updated_at <= ?
            ORDER BY updated_at ASC
            LIMIT ?
            """,
            [ResolutionStatus.PROCESSING.value, format_ts(cutoff), limit],
        )
        return [
            StuckClaim(
                wager_id=row["wager_id"],
                wager_type=row["wager_type"],
                status=row["status"],
                claimed_since=parse_ts(row["updated_at"]),
            )
            for row in rows
        ]

    # ============ User Operations ============

    async def upsert_user(self, user_id: str, wallet_address: Optional[str] = None) -> User:
        """Create a user if missing, filling in the wallet address if unset."""
        now = format_ts(utcnow())
        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                await conn.execute(
                    """
                    INSERT INTO users (user_id, wallet_address, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        wallet_address = COALESCE(users.wallet_address, excluded.wallet_address),
                        updated_at = excluded.updated_at
                    """,
                    (user_id, wallet_address, now, now),
                )
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to upsert user {user_id}", cause=e) from e

        user = await self.get_user(user_id)
        assert user is not None
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        rows = await self._fetch("SELECT * FROM users WHERE user_id = ?", [user_id])
        return self._row_to_user(rows[0]) if rows else None

    async def adjust_user_stats(
        self,
        user_id: str,
        fn: Callable[[UserStats], UserStats],
    ) -> Optional[UserStats]:
        """Read, transform and write a user's aggregates atomically.

        Returns:
            The new aggregates, or None if the user does not exist.
        """
        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                async with conn.execute(
                    "SELECT * FROM users WHERE user_id = ?", (user_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return None

                updated = fn(self._row_to_user(row).stats)
                await conn.execute(
                    """
                    UPDATE users SET
                        total_wagered = ?, total_won = ?, total_lost = ?,
                        win_rate = ?, streak_count = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (
                        str(updated.total_wagered),
                        str(updated.total_won),
                        str(updated.total_lost),
                        str(updated.win_rate),
                        updated.streak_count,
                        format_ts(utcnow()),
                        user_id,
                    ),
                )
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update stats for {user_id}", cause=e) from e

        return updated

    # ============ Notification Operations ============

    async def insert_notification(
        self,
        user_id: Optional[str],
        user_address: Optional[str],
        type: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> int:
        """Write a notification record and return its id."""
        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                cursor = await conn.execute(
                    """
                    INSERT INTO notifications
                    (user_id, user_address, type, title, message, data, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        user_address,
                        type,
                        title,
                        message,
                        json.dumps(data or {}, default=str),
                        format_ts(utcnow()),
                    ),
                )
                await conn.commit()
        except sqlite3.Error as e:
            raise StoreError("Failed to insert notification", cause=e) from e
        return cursor.lastrowid

    async def list_notifications(
        self,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Notification]:
        """Notifications, newest first (diagnostics only)."""
        query = "SELECT * FROM notifications"
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = await self._fetch(query, params)
        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                user_address=row["user_address"],
                type=row["type"],
                title=row["title"],
                message=row["message"],
                data=json.loads(row["data"] or "{}"),
                created_at=parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ============ Helpers ============

    async def _fetch(self, query: str, params: Iterable[Any]) -> list[aiosqlite.Row]:
        conn = await self._pool.acquire()
        try:
            async with conn.execute(query, list(params)) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StoreError("Ledger query failed", cause=e) from e

    async def _fetch_wagers(self, query: str, params: Iterable[Any]) -> list[Wager]:
        return [self._row_to_wager(row) for row in await self._fetch(query, params)]

    def _row_to_wager(self, row: aiosqlite.Row) -> Wager:
        return Wager(
            id=row["id"],
            wager_id=row["wager_id"],
            wager_type=WagerKind(row["wager_type"]),
            creator_id=row["creator_id"],
            creator_address=row["creator_address"],
            acceptor_id=row["acceptor_id"],
            acceptor_address=row["acceptor_address"],
            amount=Decimal(str(row["amount"])),
            status=WagerStatus(row["status"]),
            expiry_time=parse_ts(row["expiry_time"]),
            escrow_address=row["escrow_address"],
            creator_position=Position(row["creator_position"]) if row["creator_position"] else None,
            opponent_position=Position(row["opponent_position"]) if row["opponent_position"] else None,
            token_symbol=row["token_symbol"],
            prediction_type=(
                PredictionDirection(row["prediction_type"]) if row["prediction_type"] else None
            ),
            target_price=_decimal(row["target_price"]),
            sport=row["sport"],
            team1=row["team1"],
            team2=row["team2"],
            prediction=row["prediction"],
            winner_id=row["winner_id"],
            winner_position=Position(row["winner_position"]) if row["winner_position"] else None,
            resolution_value=row["resolution_value"],
            on_chain_signature=row["on_chain_signature"],
            accept_signature=row["accept_signature"],
            resolution_time=_ts(row["resolution_time"]),
            is_draw=bool(row["is_draw"]),
            settlement_simulated=bool(row["settlement_simulated"]),
            expiry_processed=bool(row["expiry_processed"]),
            refund_processed=bool(row["refund_processed"]),
            resolution_status=(
                ResolutionStatus(row["resolution_status"]) if row["resolution_status"] else None
            ),
            stakes_recorded=bool(row["stakes_recorded"]),
            cancelled_by=row["cancelled_by"],
            cancelled_at=_ts(row["cancelled_at"]),
            refund_signature=row["refund_signature"],
            extra=json.loads(row["extra"] or "{}"),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        return User(
            user_id=row["user_id"],
            wallet_address=row["wallet_address"],
            stats=UserStats(
                total_wagered=Decimal(str(row["total_wagered"])),
                total_won=Decimal(str(row["total_won"])),
                total_lost=Decimal(str(row["total_lost"])),
                win_rate=Decimal(str(row["win_rate"])),
                streak_count=row["streak_count"],
            ),
        )
