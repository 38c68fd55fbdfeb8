"""
persistence/sqlite.py
---------------------
SQLite store for bots, credentials, trades and the audit log.

Bot counters are changed with single ``UPDATE ... SET x = x + ?`` statements so
concurrent alerts for the same bot cannot lose updates, and a partial unique
index keeps at most one open trade per (bot, symbol).
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import NotFoundError, PositionConflictError
from models.bot import BotConfig, ExchangeCredential
from models.trade import Trade

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS bots (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    symbol                  TEXT NOT NULL,
    name                    TEXT,
    default_side            TEXT,
    default_order_type      TEXT,
    default_quantity        REAL,
    default_stop_loss       REAL,
    default_take_profit     REAL,
    risk_per_trade          REAL,
    daily_loss_limit        REAL,
    max_position_size       REAL,
    position_sizing_enabled INTEGER DEFAULT 0,
    market_fee_percentage   REAL,
    limit_fee_percentage    REAL,
    test_mode               INTEGER DEFAULT 0,
    api_key_id              TEXT,
    profit_loss             REAL DEFAULT 0,
    trade_count             INTEGER DEFAULT 0,
    last_trade_at           TEXT
);

CREATE TABLE IF NOT EXISTS api_keys (
    id         TEXT PRIMARY KEY,
    user_id    TEXT NOT NULL,
    api_key    TEXT NOT NULL,
    api_secret TEXT NOT NULL,
    bot_id     TEXT,
    is_default INTEGER DEFAULT 0,
    exchange   TEXT DEFAULT 'bybit',
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id              TEXT PRIMARY KEY,
    bot_id          TEXT NOT NULL,
    user_id         TEXT NOT NULL,
    symbol          TEXT NOT NULL,
    side            TEXT,
    order_type      TEXT,
    quantity        REAL,
    price           REAL,
    order_id        TEXT,
    close_order_id  TEXT,
    status          TEXT,
    state           TEXT NOT NULL DEFAULT 'open',
    stop_loss       REAL,
    take_profit     REAL,
    realized_pnl    REAL,
    pnl_source      TEXT,
    fees            REAL DEFAULT 0,
    close_reason    TEXT,
    exit_price      REAL,
    avg_entry_price REAL,
    avg_exit_price  REAL,
    details         TEXT,          -- raw JSON blob
    trade_metrics   TEXT,          -- raw JSON blob
    dedup_key       TEXT,
    created_at      TEXT,
    updated_at      TEXT,
    closed_at       TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_trades_one_open
    ON trades (bot_id, symbol) WHERE state = 'open';
CREATE UNIQUE INDEX IF NOT EXISTS ux_trades_dedup ON trades (dedup_key);
CREATE INDEX IF NOT EXISTS ix_trades_bot_created ON trades (bot_id, created_at);

CREATE TABLE IF NOT EXISTS logs (
    id         INTEGER PRIMARY KEY,
    level      TEXT,
    message    TEXT,
    details    TEXT,          -- raw JSON blob
    trade_id   TEXT,
    bot_id     TEXT,
    user_id    TEXT,
    created_at TEXT
);
"""

_JSON_COLUMNS = {"details", "trade_metrics"}
_BOOL_COLUMNS = {"position_sizing_enabled", "test_mode", "is_default"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _column_names(cls) -> List[str]:
    return [f.name for f in fields(cls)]


class SQLitePersistence:
    def __init__(self, db_path: str = "data/alertbot.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        # the reconciliation worker runs in a thread next to the webhook loop
        self._lock = threading.RLock()

    def close(self) -> None:
        self.conn.close()

    # ---------------------------- helpers -------------------------------- #
    @staticmethod
    def _to_row(obj, columns: List[str]) -> Dict[str, Any]:
        row = {}
        for col in columns:
            value = getattr(obj, col)
            if col in _JSON_COLUMNS and value is not None:
                value = json.dumps(value, default=str)
            elif col in _BOOL_COLUMNS:
                value = int(bool(value))
            row[col] = value
        return row

    @staticmethod
    def _from_row(cls, row: sqlite3.Row):
        data = {}
        for col in _column_names(cls):
            value = row[col]
            if col in _JSON_COLUMNS and value is not None:
                value = json.loads(value)
            elif col in _BOOL_COLUMNS:
                value = bool(value)
            data[col] = value
        return cls(**data)

    def _insert(self, table: str, row: Dict[str, Any], upsert_key: Optional[str] = None) -> None:
        cols = ", ".join(row)
        marks = ", ".join(f":{c}" for c in row)
        sql = f"INSERT INTO {table} ({cols}) VALUES ({marks})"
        if upsert_key:
            updates = ", ".join(f"{c} = excluded.{c}" for c in row if c != upsert_key)
            sql += f" ON CONFLICT({upsert_key}) DO UPDATE SET {updates}"
        with self._lock:
            self.conn.execute(sql, row)
            self.conn.commit()

    # ------------------------------ BOTS --------------------------------- #
    def upsert_bot(self, bot: BotConfig) -> None:
        self._insert("bots", self._to_row(bot, _column_names(BotConfig)), upsert_key="id")

    def get_bot(self, bot_id: str) -> BotConfig:
        with self._lock:
            row = self.conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"bot {bot_id} not found")
        return self._from_row(BotConfig, row)

    def increment_bot_stats(
        self,
        bot_id: str,
        *,
        trade_count_delta: int = 0,
        pnl_delta: float = 0.0,
        last_trade_at: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.conn.execute(
                """
                UPDATE bots SET
                  trade_count   = COALESCE(trade_count, 0) + :count,
                  profit_loss   = COALESCE(profit_loss, 0) + :pnl,
                  last_trade_at = COALESCE(:last, last_trade_at)
                WHERE id = :id
                """,
                {"count": trade_count_delta, "pnl": pnl_delta, "last": last_trade_at, "id": bot_id},
            )
            self.conn.commit()

    # --------------------------- CREDENTIALS ----------------------------- #
    def add_credential(self, cred: ExchangeCredential) -> None:
        row = self._to_row(cred, _column_names(ExchangeCredential))
        row["created_at"] = row["created_at"] or utc_now_iso()
        self._insert("api_keys", row, upsert_key="id")

    def list_credentials(self, user_id: str) -> List[ExchangeCredential]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM api_keys WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._from_row(ExchangeCredential, r) for r in rows]

    # ----------------------------- TRADES -------------------------------- #
    def create_trade(self, trade: Trade) -> Trade:
        now = utc_now_iso()
        trade.created_at = trade.created_at or now
        trade.updated_at = trade.updated_at or now
        try:
            self._insert("trades", self._to_row(trade, _column_names(Trade)))
        except sqlite3.IntegrityError as exc:
            raise PositionConflictError(
                f"cannot record trade for {trade.bot_id}/{trade.symbol}: {exc}"
            ) from exc
        return trade

    def get_trade(self, trade_id: str) -> Trade:
        with self._lock:
            row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"trade {trade_id} not found")
        return self._from_row(Trade, row)

    def update_trade(self, trade_id: str, **changes: Any) -> None:
        if not changes:
            return
        unknown = set(changes) - set(_column_names(Trade))
        if unknown:
            raise ValueError(f"unknown trade columns: {sorted(unknown)}")
        changes.setdefault("updated_at", utc_now_iso())
        row = {
            k: json.dumps(v, default=str) if k in _JSON_COLUMNS and v is not None else v
            for k, v in changes.items()
        }
        assignments = ", ".join(f"{c} = :{c}" for c in row)
        row["_id"] = trade_id
        with self._lock:
            cur = self.conn.execute(f"UPDATE trades SET {assignments} WHERE id = :_id", row)
            self.conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"trade {trade_id} not found")

    def delete_trade(self, trade_id: str) -> None:
        """Drop a reserved row whose open order never reached the exchange."""
        with self._lock:
            self.conn.execute("DELETE FROM trades WHERE id = ?", (trade_id,))
            self.conn.commit()

    def find_open_trade(self, bot_id: str, symbol: str) -> Optional[Trade]:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT * FROM trades
                WHERE bot_id = ? AND symbol = ? AND state = 'open'
                ORDER BY created_at DESC LIMIT 1
                """,
                (bot_id, symbol),
            ).fetchone()
        return self._from_row(Trade, row) if row else None

    def find_trade_by_dedup_key(self, dedup_key: str) -> Optional[Trade]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM trades WHERE dedup_key = ?", (dedup_key,)).fetchone()
        return self._from_row(Trade, row) if row else None

    def list_trades_since(self, bot_id: str, since_iso: str) -> List[Trade]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM trades WHERE bot_id = ? AND created_at >= ? ORDER BY created_at",
                (bot_id, since_iso),
            ).fetchall()
        return [self._from_row(Trade, r) for r in rows]

    def list_unreconciled_trades(self, limit: int = 100) -> List[Trade]:
        """Closed trades of live bots whose PnL is still an estimate."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT t.* FROM trades t JOIN bots b ON b.id = t.bot_id
                WHERE t.state = 'closed'
                  AND b.test_mode = 0
                  AND (t.pnl_source IS NULL OR t.pnl_source != 'exchange')
                ORDER BY t.closed_at LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [self._from_row(Trade, r) for r in rows]

    # ------------------------------ LOGS --------------------------------- #
    def append_log(
        self,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        trade_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._insert(
            "logs",
            {
                "level": level,
                "message": message,
                "details": json.dumps(details or {}, default=str),
                "trade_id": trade_id,
                "bot_id": bot_id,
                "user_id": user_id,
                "created_at": utc_now_iso(),
            },
        )

    def list_logs(self, bot_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql, args = "SELECT * FROM logs", ()
        if bot_id is not None:
            sql, args = sql + " WHERE bot_id = ?", (bot_id,)
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY id", args).fetchall()
        return [{**dict(r), "details": json.loads(r["details"] or "{}")} for r in rows]
