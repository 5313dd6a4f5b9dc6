"""Candles and trade history, stored in tables per symbol."""

from __future__ import annotations

import sqlite3
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any

from .database import Database
from .entities import Kline, TradeLog


class TableNotFoundError(LookupError):
    """The per-symbol table for a lookup does not exist."""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _stored_columns(entity_class: type) -> list[str]:
    return [f.name for f in fields(entity_class) if f.metadata.get("sql") is not None]


def _insert(conn: sqlite3.Connection, table: str, record: Any) -> None:
    columns = _stored_columns(type(record))
    names = ", ".join(_quote(c) for c in columns)
    marks = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})",
        [getattr(record, c) for c in columns],
    )


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class KlineRepository:
    """Candles, one table per symbol and period."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def save(self, kline: Kline) -> None:
        """Insert a candle, or update the prices and volume of the one with the same open and close."""
        table = kline.table_name()
        if not self._db.has_table(table):
            self._db.ensure_table(table, Kline)
        with self._db.transaction() as conn:
            existing = conn.execute(
                f"SELECT 1 FROM {_quote(table)} WHERE open_at = ? AND close_at = ?",
                (kline.open_at, kline.close_at),
            ).fetchone()
            if existing is None:
                _insert(conn, table, kline)
                return
            conn.execute(
                f"UPDATE {_quote(table)} SET open = ?, high = ?, low = ?, close = ?, "
                "volume = ?, amount = ?, updated_at = ? WHERE open_at = ? AND close_at = ?",
                (
                    kline.open,
                    kline.high,
                    kline.low,
                    kline.close,
                    kline.volume,
                    kline.amount,
                    datetime.now(timezone.utc),
                    kline.open_at,
                    kline.close_at,
                ),
            )

    def find(
        self, symbol: str, period: Any, start: int = 0, end: int = 0, limit: int = 0
    ) -> list[Kline]:
        """Candles newest first.

        ``start`` and ``end`` bound the open time in Unix milliseconds and
        ``limit`` caps the count; zero leaves each one unbounded.
        """
        table = Kline(symbol=symbol, period=period, open_at=datetime.min, close_at=datetime.min).table_name()
        if not self._db.has_table(table):
            raise TableNotFoundError("kline table not found")
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_quote(table)} ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        klines = (Kline(**dict(row), symbol=symbol, period=period) for row in rows)
        selected = [
            k
            for k in klines
            if (not start or _epoch_ms(k.open_at) >= start)
            and (not end or _epoch_ms(k.open_at) <= end)
        ]
        return selected[:limit] if limit > 0 else selected


class TradeLogRepository:
    """Trades, one table per symbol."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def find(self, symbol: str, limit: int = 0) -> list[TradeLog]:
        """Trades of a symbol newest first; a positive ``limit`` caps the count."""
        table = TradeLog(symbol=symbol).table_name()
        if not self._db.has_table(table):
            raise TableNotFoundError("trade log table not found")
        sql = f"SELECT * FROM {_quote(table)} ORDER BY created_at DESC, rowid DESC"
        params: tuple = ()
        if limit > 0:
            sql += " LIMIT ?"
            params = (limit,)
        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [TradeLog(**dict(row), symbol=symbol) for row in rows]