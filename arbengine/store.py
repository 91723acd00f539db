# arbengine/store.py
"""
SQLite persistence for price observations, positions, trade attempts and
balance snapshots. WAL mode, one connection guarded by a lock so the
scan loop and the supervisor (and their worker threads) can share it.
"""
import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from .models import (PriceRecord, Position, TradeRecord, TradeSide, BalanceSnapshot,
                     OpportunityType)

DEFAULT_DB_PATH = "data/arbengine.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS prices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    venue TEXT NOT NULL,
    price REAL NOT NULL,
    volume REAL,
    timestamp REAL NOT NULL,
    opportunity_type TEXT,
    profit REAL
);
CREATE INDEX IF NOT EXISTS idx_prices_venue_symbol ON prices (venue, symbol);

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    venue TEXT NOT NULL,
    amount REAL NOT NULL,
    buy_price REAL NOT NULL,
    stop_loss_price REAL NOT NULL,
    timestamp REAL NOT NULL,
    closed INTEGER NOT NULL DEFAULT 0,
    sell_price REAL,
    profit REAL
);
CREATE INDEX IF NOT EXISTS idx_positions_closed ON positions (closed);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    venue TEXT NOT NULL,
    side TEXT NOT NULL,
    amount REAL NOT NULL,
    price REAL NOT NULL,
    timestamp REAL NOT NULL,
    success INTEGER NOT NULL DEFAULT 1,
    error TEXT,
    order_id TEXT,
    position_id INTEGER
);
CREATE INDEX IF NOT EXISTS idx_trades_success ON trades (success, venue);

CREATE TABLE IF NOT EXISTS balances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    venue TEXT NOT NULL,
    asset TEXT NOT NULL,
    amount REAL NOT NULL,
    timestamp REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS compatible_symbols (
    symbol TEXT PRIMARY KEY,
    venues TEXT NOT NULL
);
"""


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> Dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


def _position(row: Dict[str, Any]) -> Position:
    return Position(
        id=row["id"], symbol=row["symbol"], venue=row["venue"], amount=row["amount"],
        buy_price=row["buy_price"], stop_loss_price=row["stop_loss_price"],
        timestamp=row["timestamp"], closed=bool(row["closed"]),
        sell_price=row["sell_price"], profit=row["profit"],
    )


def _trade(row: Dict[str, Any]) -> TradeRecord:
    return TradeRecord(
        id=row["id"], symbol=row["symbol"], venue=row["venue"], side=TradeSide(row["side"]),
        amount=row["amount"], price=row["price"], timestamp=row["timestamp"],
        success=bool(row["success"]), error=row["error"], order_id=row["order_id"],
        position_id=row["position_id"],
    )


class Store:
    """Thread-safe SQLite store shared by both engine loops."""

    def __init__(self, db_path: Union[str, Path, None] = None) -> None:
        self._db_path = str(db_path or DEFAULT_DB_PATH)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = _dict_factory
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._migrate()
            self._conn.commit()

    def _migrate(self) -> None:
        # Databases created before trades were linked to positions
        cols = {row["name"] for row in self._conn.execute("PRAGMA table_info(trades)").fetchall()}
        if "position_id" not in cols:
            self._conn.execute("ALTER TABLE trades ADD COLUMN position_id INTEGER")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_position ON trades (position_id)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Prices ──

    def insert_prices(self, records: Iterable[PriceRecord]) -> int:
        rows = [
            (r.symbol, r.venue, r.price, r.volume, r.timestamp,
             r.opportunity_type.value if r.opportunity_type else None, r.profit)
            for r in records
        ]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT INTO prices (symbol, venue, price, volume, timestamp, opportunity_type, profit) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def prices(self, symbol: Optional[str] = None, markers: Optional[bool] = None) -> List[PriceRecord]:
        sql = "SELECT * FROM prices WHERE 1=1"
        args: List[Any] = []
        if symbol is not None:
            sql += " AND symbol = ?"
            args.append(symbol)
        if markers is True:
            sql += " AND opportunity_type IS NOT NULL"
        elif markers is False:
            sql += " AND opportunity_type IS NULL"
        sql += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(sql, args).fetchall()
        return [
            PriceRecord(
                id=r["id"], symbol=r["symbol"], venue=r["venue"], price=r["price"],
                volume=r["volume"], timestamp=r["timestamp"],
                opportunity_type=OpportunityType(r["opportunity_type"]) if r["opportunity_type"] else None,
                profit=r["profit"],
            )
            for r in rows
        ]

    def volume_stats(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """Average/min/max 24h volume per venue and symbol, raw ticks only."""
        sql = (
            "SELECT venue, symbol, AVG(volume) AS avg_volume, MIN(volume) AS min_volume, "
            "MAX(volume) AS max_volume, COUNT(*) AS samples "
            "FROM prices WHERE opportunity_type IS NULL"
        )
        args: List[Any] = []
        if symbol is not None:
            sql += " AND symbol = ?"
            args.append(symbol)
        sql += " GROUP BY venue, symbol ORDER BY venue, symbol"
        with self._lock:
            return self._conn.execute(sql, args).fetchall()

    # ── Positions ──

    def create_position(self, position: Position) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO positions (symbol, venue, amount, buy_price, stop_loss_price, timestamp, closed) "
                "VALUES (?, ?, ?, ?, ?, ?, 0)",
                (position.symbol, position.venue, position.amount, position.buy_price,
                 position.stop_loss_price, position.timestamp),
            )
        position.id = cur.lastrowid
        return position.id

    def get_position(self, position_id: int) -> Optional[Position]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return _position(row) if row else None

    def open_positions(self, venue: Optional[str] = None) -> List[Position]:
        sql = "SELECT * FROM positions WHERE closed = 0"
        args: List[Any] = []
        if venue is not None:
            sql += " AND venue = ?"
            args.append(venue)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id", args).fetchall()
        return [_position(r) for r in rows]

    def positions(self) -> List[Position]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM positions ORDER BY id").fetchall()
        return [_position(r) for r in rows]

    def close_position(self, position_id: int, sell_price: float, profit: float) -> bool:
        """
        Closes a position in one conditional UPDATE: closed, sell_price and
        profit change together, and only while the row is still open.
        Returns False if the position was already closed (or does not exist).
        """
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE positions SET closed = 1, sell_price = ?, profit = ? WHERE id = ? AND closed = 0",
                (sell_price, profit, position_id),
            )
        return cur.rowcount == 1

    # ── Trades ──

    def insert_trade(self, trade: TradeRecord) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO trades (symbol, venue, side, amount, price, timestamp, success, error, order_id, position_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (trade.symbol, trade.venue, trade.side.value, trade.amount, trade.price,
                 trade.timestamp, int(trade.success), trade.error, trade.order_id, trade.position_id),
            )
        trade.id = cur.lastrowid
        return trade.id

    def get_trade(self, trade_id: int) -> Optional[TradeRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return _trade(row) if row else None

    def trades(self, success: Optional[bool] = None, venue: Optional[str] = None,
               position_id: Optional[int] = None, side: Optional[TradeSide] = None) -> List[TradeRecord]:
        sql = "SELECT * FROM trades WHERE 1=1"
        args: List[Any] = []
        if position_id is not None:
            sql += " AND position_id = ?"
            args.append(position_id)
        if side is not None:
            sql += " AND side = ?"
            args.append(side.value)
        if success is not None:
            sql += " AND success = ?"
            args.append(int(success))
        if venue is not None:
            sql += " AND venue = ?"
            args.append(venue)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id", args).fetchall()
        return [_trade(r) for r in rows]

    def mark_trade_cancelled(self, trade_id: int, note: str = "cancelled manually") -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE trades SET success = 0, error = ? WHERE id = ?", (note, trade_id)
            )
        return cur.rowcount == 1

    # ── Balances ──

    def insert_balances(self, snapshots: Iterable[BalanceSnapshot]) -> int:
        rows = [(s.venue, s.asset, s.amount, s.timestamp) for s in snapshots]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT INTO balances (venue, asset, amount, timestamp) VALUES (?, ?, ?, ?)", rows
            )
        return len(rows)

    def latest_balances(self, venue: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = (
            "SELECT b.venue, b.asset, b.amount, b.timestamp FROM balances b "
            "JOIN (SELECT venue, MAX(timestamp) AS ts FROM balances GROUP BY venue) last "
            "ON b.venue = last.venue AND b.timestamp = last.ts"
        )
        args: List[Any] = []
        if venue is not None:
            sql += " WHERE b.venue = ?"
            args.append(venue)
        with self._lock:
            return self._conn.execute(sql + " ORDER BY b.venue, b.asset", args).fetchall()

    # ── Compatible symbols ──

    def save_compatible_symbols(self, mapping: Dict[str, List[str]]) -> int:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM compatible_symbols")
            self._conn.executemany(
                "INSERT INTO compatible_symbols (symbol, venues) VALUES (?, ?)",
                [(symbol, json.dumps(sorted(venues))) for symbol, venues in mapping.items()],
            )
        return len(mapping)

    def compatible_symbols(self) -> Dict[str, List[str]]:
        with self._lock:
            rows = self._conn.execute("SELECT symbol, venues FROM compatible_symbols ORDER BY symbol").fetchall()
        return {r["symbol"]: json.loads(r["venues"]) for r in rows}


class PriceRecordWriter:
    """
    Non-blocking sink for price rows.
    Fetch tasks enqueue and return immediately; a background task
    drains the queue in batches and writes them from a worker thread.
    """
    def __init__(self, store: Store, logger: Optional[logging.Logger] = None, batch_size: int = 500):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.batch_size = batch_size
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task = None

    async def start(self):
        self._worker_task = asyncio.create_task(self._writer_worker())

    def submit(self, record: PriceRecord):
        self._queue.put_nowait(record)

    async def stop(self):
        """Flushes queued rows and stops the writer."""
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _writer_worker(self):
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self.batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                await asyncio.to_thread(self.store.insert_prices, batch)
            except sqlite3.Error as e:
                self.logger.error(f"Price write failed ({len(batch)} rows dropped): {e}")
            finally:
                for _ in batch:
                    self._queue.task_done()
