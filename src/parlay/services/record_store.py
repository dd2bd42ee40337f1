"""Record Store - async SQLite persistence for chains, positions, bets and markets.

This service:
- Persists the four settlement records as JSON documents with indexed keys
- Appends every insert/modify to the change_log table in the same
  transaction, with before/after images (the change feed's source)
- Provides conditional status updates and atomic chain-total adjustment
- Caches exchange API credentials and fee-collection attempts
- Tracks change-feed cursors per subscription
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite
import structlog

from parlay.core.config import ConfigManager
from parlay.core.retry import ConditionFailedError, ResourceNotFoundError
from parlay.domain.models import (
    Bet,
    Chain,
    ChangeEventName,
    ChangeRecord,
    Market,
    Position,
    RecordType,
)
from parlay.domain.money import to_micro, to_storage
from parlay.domain.status import BetStatus, PositionStatus

log = structlog.get_logger()

DEFAULT_DB_PATH = "./data/parlay.db"

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chains (
    chain_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total_value_micro INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    position_id TEXT PRIMARY KEY,
    chain_id TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bets (
    bet_id TEXT PRIMARY KEY,
    position_id TEXT NOT NULL,
    chain_id TEXT NOT NULL,
    condition_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS markets (
    condition_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credentials (
    wallet_address TEXT PRIMARY KEY,
    api_key TEXT NOT NULL,
    api_secret TEXT NOT NULL,
    api_passphrase TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Change feed outbox
CREATE TABLE IF NOT EXISTS change_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    event_name TEXT NOT NULL,
    old_image TEXT,
    new_image TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feed_cursors (
    subscription TEXT PRIMARY KEY,
    last_seq INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fee_collections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    position_id TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    fee_amount TEXT NOT NULL,
    success INTEGER NOT NULL,
    tx_hash TEXT,
    error TEXT,
    created_at TEXT NOT NULL
);

-- One row per applied keyed chain-total adjustment
CREATE TABLE IF NOT EXISTS chain_adjustments (
    adjustment_key TEXT PRIMARY KEY,
    chain_id TEXT NOT NULL,
    delta_micro INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_positions_chain ON positions(chain_id);
CREATE INDEX IF NOT EXISTS idx_positions_wallet ON positions(wallet_address);
CREATE INDEX IF NOT EXISTS idx_bets_position ON bets(position_id, sequence);
CREATE INDEX IF NOT EXISTS idx_bets_condition ON bets(condition_id, status);
CREATE INDEX IF NOT EXISTS idx_change_log_type ON change_log(record_type, seq);
CREATE INDEX IF NOT EXISTS idx_fee_collections_position ON fee_collections(position_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionPool:
    """One aiosqlite connection shared by the store.

    Reads use it directly. Writes go through transaction(), which holds the
    lock so a read-check-write and its change_log row commit together.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        async with self._lock:
            if self._connection is not None:
                return
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            connection = await aiosqlite.connect(self._db_path)
            connection.row_factory = aiosqlite.Row
            for pragma in SQLITE_PRAGMAS:
                await connection.execute(pragma)
            self._connection = connection

    async def close(self) -> None:
        async with self._lock:
            connection, self._connection = self._connection, None
            if connection is not None:
                await connection.close()

    async def acquire(self) -> aiosqlite.Connection:
        """
        Raises:
            RuntimeError: If the pool is not connected.
        """
        if self._connection is None:
            raise RuntimeError("Connection pool not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit if the block finishes, roll back if it raises."""
        connection = await self.acquire()
        async with self._lock:
            try:
                yield connection
            except BaseException:
                await connection.rollback()
                raise
            await connection.commit()


class RecordStore:
    """SQLite-backed durable store for settlement records.

    Every mutation of a chain, position, bet or market writes the record and
    a change_log row in one transaction, so the change feed sees exactly the
    committed history of each record, in order.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the record store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for the default path.
        """
        self._log = log.bind(component="record_store")

        if db_path:
            self._db_path = db_path
        elif config:
            self._db_path = config.get("database.path", DEFAULT_DB_PATH)
        else:
            self._db_path = DEFAULT_DB_PATH

        self._pool = ConnectionPool(self._db_path)

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    async def connect(self) -> None:
        """Connect to database and apply the schema."""
        self._log.info("connecting_record_store", db_path=str(self._db_path))
        await self._pool.connect()

        async with self._pool.transaction() as conn:
            await conn.executescript(SCHEMA_SQL)

        self._log.info("record_store_connected")

    async def close(self) -> None:
        await self._pool.close()
        self._log.info("record_store_closed")

    async def health_check(self) -> dict[str, Any]:
        if not self.is_connected:
            return {"status": "unhealthy", "error": "not connected"}
        conn = await self._pool.acquire()
        async with conn.execute("SELECT MAX(seq) AS seq FROM change_log") as cursor:
            row = await cursor.fetchone()
        return {"status": "healthy", "latest_seq": row["seq"] or 0}

    # ============ Internal helpers ============

    async def _append_change(
        self,
        conn: aiosqlite.Connection,
        record_type: RecordType,
        record_id: str,
        old_image: Optional[dict[str, Any]],
        new_image: dict[str, Any],
    ) -> None:
        event_name = ChangeEventName.INSERT if old_image is None else ChangeEventName.MODIFY
        await conn.execute(
            """
            INSERT INTO change_log
            (record_type, record_id, event_name, old_image, new_image, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record_type.value,
                record_id,
                event_name.value,
                json.dumps(old_image) if old_image is not None else None,
                json.dumps(new_image),
                _now(),
            ),
        )

    async def _fetch_data(
        self,
        conn: aiosqlite.Connection,
        table: str,
        key_column: str,
        key: str,
    ) -> Optional[dict[str, Any]]:
        async with conn.execute(
            f"SELECT * FROM {table} WHERE {key_column} = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        data = json.loads(row["data"])
        if table == "chains":
            data["total_value"] = to_storage(row["total_value_micro"])
        return data

    # ============ Chains ============

    async def create_chain_if_absent(self, chain: Chain) -> bool:
        """Insert a chain unless one with the same id exists.

        Returns:
            True if the chain was created.
        """
        async with self._pool.transaction() as conn:
            existing = await self._fetch_data(conn, "chains", "chain_id", chain.chain_id)
            if existing is not None:
                return False

            chain.updated_at = datetime.now(timezone.utc)
            image = chain.to_dict()
            await conn.execute(
                """
                INSERT INTO chains
                (chain_id, status, total_value_micro, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    chain.chain_id,
                    chain.status.value,
                    to_micro(chain.total_value),
                    json.dumps(image),
                    image["created_at"],
                    image["updated_at"],
                ),
            )
            await self._append_change(conn, RecordType.CHAIN, chain.chain_id, None, image)

        self._log.info("chain_created", chain_id=chain.chain_id, legs=chain.leg_count)
        return True

    async def get_chain(self, chain_id: str) -> Optional[Chain]:
        conn = await self._pool.acquire()
        data = await self._fetch_data(conn, "chains", "chain_id", chain_id)
        return Chain.from_dict(data) if data is not None else None

    async def adjust_chain_total(
        self,
        chain_id: str,
        delta_micro: int,
        adjustment_key: Optional[str] = None,
    ) -> int:
        """Atomically add delta_micro to a chain's total_value.

        With an adjustment_key the adjustment is applied at most once; a
        repeat with the same key leaves the total unchanged.

        Returns:
            The new total in micro-units.

        Raises:
            ResourceNotFoundError: If the chain does not exist.
            ConditionFailedError: If the adjustment would go below zero.
        """
        async with self._pool.transaction() as conn:
            old_image = await self._fetch_data(conn, "chains", "chain_id", chain_id)
            if old_image is None:
                raise ResourceNotFoundError(f"Chain {chain_id} not found")

            if adjustment_key is not None:
                async with conn.execute(
                    "SELECT 1 FROM chain_adjustments WHERE adjustment_key = ?",
                    (adjustment_key,),
                ) as cursor:
                    if await cursor.fetchone() is not None:
                        self._log.info(
                            "chain_adjustment_already_applied",
                            chain_id=chain_id,
                            adjustment_key=adjustment_key,
                        )
                        return to_micro(old_image["total_value"])

            now = _now()
            cursor = await conn.execute(
                """
                UPDATE chains
                SET total_value_micro = total_value_micro + ?, updated_at = ?
                WHERE chain_id = ? AND total_value_micro + ? >= 0
                """,
                (delta_micro, now, chain_id, delta_micro),
            )
            if cursor.rowcount == 0:
                raise ConditionFailedError(
                    f"Chain {chain_id} total cannot go below zero (delta {delta_micro})"
                )

            new_total = to_micro(old_image["total_value"]) + delta_micro
            new_image = dict(old_image, total_value=to_storage(new_total), updated_at=now)
            await conn.execute(
                "UPDATE chains SET data = ? WHERE chain_id = ?",
                (json.dumps(new_image), chain_id),
            )
            await self._append_change(conn, RecordType.CHAIN, chain_id, old_image, new_image)
            if adjustment_key is not None:
                await conn.execute(
                    """
                    INSERT INTO chain_adjustments
                    (adjustment_key, chain_id, delta_micro, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (adjustment_key, chain_id, delta_micro, now),
                )

        self._log.debug(
            "chain_total_adjusted",
            chain_id=chain_id,
            delta=to_storage(delta_micro),
            total=to_storage(new_total),
        )
        return new_total

    # ============ Positions ============

    async def _write_position(
        self,
        conn: aiosqlite.Connection,
        position: Position,
        expected_status: Optional[PositionStatus] = None,
    ) -> None:
        old_image = await self._fetch_data(
            conn, "positions", "position_id", position.position_id
        )
        if expected_status is not None:
            current = old_image["status"] if old_image else None
            if current != expected_status.value:
                raise ConditionFailedError(
                    f"Position {position.position_id} is {current}, "
                    f"expected {expected_status.value}"
                )

        position.updated_at = datetime.now(timezone.utc)
        image = position.to_dict()
        await conn.execute(
            """
            INSERT OR REPLACE INTO positions
            (position_id, chain_id, wallet_address, status, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                position.position_id,
                position.chain_id,
                position.wallet_address.lower(),
                position.status.value,
                json.dumps(image),
                image["created_at"],
                image["updated_at"],
            ),
        )
        await self._append_change(
            conn, RecordType.POSITION, position.position_id, old_image, image
        )

    async def put_position(self, position: Position) -> None:
        async with self._pool.transaction() as conn:
            await self._write_position(conn, position)

    async def update_position(
        self,
        position: Position,
        expected_status: Optional[PositionStatus] = None,
    ) -> Position:
        """Write a position, optionally only if its stored status matches.

        Raises:
            ConditionFailedError: If the stored status differs from expected_status.
        """
        async with self._pool.transaction() as conn:
            await self._write_position(conn, position, expected_status)

        self._log.debug(
            "position_updated",
            position_id=position.position_id,
            status=position.status.value,
        )
        return position

    async def get_position(self, position_id: str) -> Optional[Position]:
        conn = await self._pool.acquire()
        data = await self._fetch_data(conn, "positions", "position_id", position_id)
        return Position.from_dict(data) if data is not None else None

    async def get_positions_for_chain(self, chain_id: str) -> list[Position]:
        return await self._query_positions("chain_id = ?", (chain_id,))

    async def get_positions_for_wallet(
        self, wallet_address: str, chain_id: Optional[str] = None
    ) -> list[Position]:
        if chain_id:
            return await self._query_positions(
                "wallet_address = ? AND chain_id = ?",
                (wallet_address.lower(), chain_id),
            )
        return await self._query_positions("wallet_address = ?", (wallet_address.lower(),))

    async def _query_positions(self, where: str, params: tuple) -> list[Position]:
        conn = await self._pool.acquire()
        positions = []
        async with conn.execute(
            f"SELECT data FROM positions WHERE {where} ORDER BY created_at", params
        ) as cursor:
            async for row in cursor:
                positions.append(Position.from_dict(json.loads(row["data"])))
        return positions

    async def create_position_with_bets(
        self,
        position: Position,
        bets: list[Bet],
    ) -> None:
        """Insert a position, its pre-allocated bets and its chain-total
        contribution in one transaction.

        Raises:
            ResourceNotFoundError: If the position's chain does not exist.
        """
        stake_micro = to_micro(position.initial_stake)
        async with self._pool.transaction() as conn:
            chain_image = await self._fetch_data(conn, "chains", "chain_id", position.chain_id)
            if chain_image is None:
                raise ResourceNotFoundError(f"Chain {position.chain_id} not found")

            await self._write_position(conn, position)
            for bet in bets:
                await self._write_bet(conn, bet)

            now = _now()
            await conn.execute(
                """
                UPDATE chains
                SET total_value_micro = total_value_micro + ?, updated_at = ?
                WHERE chain_id = ?
                """,
                (stake_micro, now, position.chain_id),
            )
            new_total = to_micro(chain_image["total_value"]) + stake_micro
            new_chain_image = dict(
                chain_image, total_value=to_storage(new_total), updated_at=now
            )
            await conn.execute(
                "UPDATE chains SET data = ? WHERE chain_id = ?",
                (json.dumps(new_chain_image), position.chain_id),
            )
            await self._append_change(
                conn, RecordType.CHAIN, position.chain_id, chain_image, new_chain_image
            )

        self._log.info(
            "position_created",
            position_id=position.position_id,
            chain_id=position.chain_id,
            bets=len(bets),
            stake=position.initial_stake,
        )

    # ============ Bets ============

    async def _write_bet(
        self,
        conn: aiosqlite.Connection,
        bet: Bet,
        expected_status: Optional[BetStatus] = None,
    ) -> None:
        old_image = await self._fetch_data(conn, "bets", "bet_id", bet.bet_id)
        if expected_status is not None:
            current = old_image["status"] if old_image else None
            if current != expected_status.value:
                raise ConditionFailedError(
                    f"Bet {bet.bet_id} is {current}, expected {expected_status.value}"
                )

        bet.updated_at = datetime.now(timezone.utc)
        image = bet.to_dict()
        await conn.execute(
            """
            INSERT OR REPLACE INTO bets
            (bet_id, position_id, chain_id, condition_id, sequence, status, data,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                bet.bet_id,
                bet.position_id,
                bet.chain_id,
                bet.condition_id,
                bet.sequence,
                bet.status.value,
                json.dumps(image),
                image["created_at"],
                image["updated_at"],
            ),
        )
        await self._append_change(conn, RecordType.BET, bet.bet_id, old_image, image)

    async def put_bet(self, bet: Bet) -> None:
        async with self._pool.transaction() as conn:
            await self._write_bet(conn, bet)

    async def update_bet(
        self,
        bet: Bet,
        expected_status: Optional[BetStatus] = None,
    ) -> Bet:
        """Write a bet, optionally only if its stored status matches.

        Raises:
            ConditionFailedError: If the stored status differs from expected_status.
        """
        async with self._pool.transaction() as conn:
            await self._write_bet(conn, bet, expected_status)

        self._log.debug("bet_updated", bet_id=bet.bet_id, status=bet.status.value)
        return bet

    async def get_bet(self, bet_id: str) -> Optional[Bet]:
        conn = await self._pool.acquire()
        data = await self._fetch_data(conn, "bets", "bet_id", bet_id)
        return Bet.from_dict(data) if data is not None else None

    async def get_bets_for_position(self, position_id: str) -> list[Bet]:
        """All bets of a position, ordered by leg sequence."""
        return await self._query_bets(
            "position_id = ? ORDER BY sequence", (position_id,)
        )

    async def get_bets_for_condition(
        self,
        condition_id: str,
        statuses: Optional[list[BetStatus]] = None,
    ) -> list[Bet]:
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            return await self._query_bets(
                f"condition_id = ? AND status IN ({placeholders}) ORDER BY created_at",
                (condition_id, *[s.value for s in statuses]),
            )
        return await self._query_bets("condition_id = ? ORDER BY created_at", (condition_id,))

    async def _query_bets(self, where: str, params: tuple) -> list[Bet]:
        conn = await self._pool.acquire()
        bets = []
        async with conn.execute(f"SELECT data FROM bets WHERE {where}", params) as cursor:
            async for row in cursor:
                bets.append(Bet.from_dict(json.loads(row["data"])))
        return bets

    # ============ Markets ============

    async def put_market(self, market: Market) -> None:
        """Insert or replace a market snapshot."""
        async with self._pool.transaction() as conn:
            old_image = await self._fetch_data(
                conn, "markets", "condition_id", market.condition_id
            )
            market.updated_at = datetime.now(timezone.utc)
            image = market.to_dict()
            await conn.execute(
                """
                INSERT OR REPLACE INTO markets (condition_id, status, data, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (market.condition_id, market.status.value, json.dumps(image), image["updated_at"]),
            )
            await self._append_change(
                conn, RecordType.MARKET, market.condition_id, old_image, image
            )

        self._log.debug(
            "market_saved",
            condition_id=market.condition_id,
            status=market.status.value,
        )

    async def get_market(self, condition_id: str) -> Optional[Market]:
        conn = await self._pool.acquire()
        data = await self._fetch_data(conn, "markets", "condition_id", condition_id)
        return Market.from_dict(data) if data is not None else None

    # ============ Credentials ============

    async def get_credentials(self, wallet_address: str) -> Optional[dict[str, str]]:
        conn = await self._pool.acquire()
        async with conn.execute(
            "SELECT * FROM credentials WHERE wallet_address = ?",
            (wallet_address.lower(),),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "api_key": row["api_key"],
            "api_secret": row["api_secret"],
            "api_passphrase": row["api_passphrase"],
        }

    async def save_credentials(
        self,
        wallet_address: str,
        api_key: str,
        api_secret: str,
        api_passphrase: str,
    ) -> None:
        async with self._pool.transaction() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO credentials
                (wallet_address, api_key, api_secret, api_passphrase, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (wallet_address.lower(), api_key, api_secret, api_passphrase, _now()),
            )

    # ============ Fees ============

    async def record_fee_collection(
        self,
        position_id: str,
        wallet_address: str,
        fee_amount: str,
        success: bool,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._pool.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO fee_collections
                (position_id, wallet_address, fee_amount, success, tx_hash, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (position_id, wallet_address, fee_amount, int(success), tx_hash, error, _now()),
            )

    async def get_fee_collections(self, position_id: str) -> list[dict[str, Any]]:
        conn = await self._pool.acquire()
        results = []
        async with conn.execute(
            "SELECT * FROM fee_collections WHERE position_id = ? ORDER BY id",
            (position_id,),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "fee_amount": row["fee_amount"],
                    "success": bool(row["success"]),
                    "tx_hash": row["tx_hash"],
                    "error": row["error"],
                    "created_at": row["created_at"],
                })
        return results

    # ============ Change feed ============

    async def read_changes(
        self,
        after_seq: int,
        limit: int = 100,
        record_type: Optional[RecordType] = None,
    ) -> list[ChangeRecord]:
        """Read change_log entries with seq > after_seq, oldest first."""
        conn = await self._pool.acquire()
        if record_type is not None:
            query = (
                "SELECT * FROM change_log WHERE seq > ? AND record_type = ? "
                "ORDER BY seq LIMIT ?"
            )
            params: tuple = (after_seq, record_type.value, limit)
        else:
            query = "SELECT * FROM change_log WHERE seq > ? ORDER BY seq LIMIT ?"
            params = (after_seq, limit)

        changes = []
        async with conn.execute(query, params) as cursor:
            async for row in cursor:
                changes.append(self._row_to_change(row))
        return changes

    def _row_to_change(self, row: aiosqlite.Row) -> ChangeRecord:
        return ChangeRecord(
            seq=row["seq"],
            record_type=RecordType(row["record_type"]),
            record_id=row["record_id"],
            event_name=ChangeEventName(row["event_name"]),
            old_image=json.loads(row["old_image"]) if row["old_image"] else None,
            new_image=json.loads(row["new_image"]) if row["new_image"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def latest_seq(self, record_type: Optional[RecordType] = None) -> int:
        conn = await self._pool.acquire()
        if record_type is not None:
            query = "SELECT MAX(seq) AS seq FROM change_log WHERE record_type = ?"
            params: tuple = (record_type.value,)
        else:
            query = "SELECT MAX(seq) AS seq FROM change_log"
            params = ()
        async with conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row["seq"] or 0

    async def get_cursor(self, subscription: str) -> int:
        conn = await self._pool.acquire()
        async with conn.execute(
            "SELECT last_seq FROM feed_cursors WHERE subscription = ?", (subscription,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["last_seq"] if row else 0

    async def set_cursor(self, subscription: str, last_seq: int) -> None:
        async with self._pool.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO feed_cursors (subscription, last_seq, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(subscription) DO UPDATE SET
                    last_seq = excluded.last_seq,
                    updated_at = excluded.updated_at
                """,
                (subscription, last_seq, _now()),
            )
