"""Tradable varieties and trading pairs, plus the initial schema and seed data."""

from __future__ import annotations

import sqlite3
from dataclasses import fields
from typing import Any, Iterable, Optional

from .database import Database
from .entities import (
    STATUS_ENABLED,
    Asset,
    AssetFreeze,
    AssetLog,
    TradeVariety,
    Variety,
)


class NotFoundError(LookupError):
    """No record matches the lookup."""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _stored_columns(entity_class: type) -> list[str]:
    return [f.name for f in fields(entity_class) if f.metadata.get("sql") is not None]


def _insert_with_id(conn: sqlite3.Connection, table: str, record: Any) -> None:
    """Insert a record; an id of zero lets the database assign one."""
    columns = _stored_columns(type(record))
    values = [getattr(record, column) for column in columns]
    if not record.id:
        values[columns.index("id")] = None
    names = ", ".join(_quote(column) for column in columns)
    marks = ", ".join("?" for _ in columns)
    try:
        cursor = conn.execute(
            f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})", values
        )
    except sqlite3.IntegrityError as exc:
        raise ValueError(f"{table}: {record.symbol!r} already exists") from exc
    record.id = cursor.lastrowid


class VarietyRepository:
    """Varieties such as coins or currencies, keyed by id and by symbol."""

    def __init__(self, db: Database) -> None:
        self._db = db
        db.ensure_table(Variety.TABLE, Variety)

    def create(self, variety: Variety) -> Variety:
        """Store a variety and return it with its assigned id."""
        with self._db.transaction() as conn:
            _insert_with_id(conn, Variety.TABLE, variety)
        return variety

    def create_many(self, varieties: Iterable[Variety]) -> list[Variety]:
        """Store several varieties atomically and return them with their ids."""
        items = list(varieties)
        with self._db.transaction() as conn:
            for variety in items:
                _insert_with_id(conn, Variety.TABLE, variety)
        return items

    def get(self, variety_id: int) -> Variety:
        return self._one("id = ?", variety_id, f"variety id {variety_id}")

    def find_by_symbol(self, symbol: str) -> Variety:
        return self._one("symbol = ?", symbol, f"variety {symbol!r}")

    def _one(self, condition: str, value: Any, what: str) -> Variety:
        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_quote(Variety.TABLE)} WHERE {condition}", (value,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"{what} not found")
        return Variety(**dict(row))


class TradeVarietyRepository:
    """Trading pairs, returned with their base and target varieties attached."""

    def __init__(self, db: Database, variety_repo: VarietyRepository) -> None:
        self._db = db
        self._varieties = variety_repo
        db.ensure_table(TradeVariety.TABLE, TradeVariety)

    def create(self, trade_variety: TradeVariety) -> TradeVariety:
        """Store a trading pair and return it with its assigned id."""
        with self._db.transaction() as conn:
            _insert_with_id(conn, TradeVariety.TABLE, trade_variety)
        return trade_variety

    def find_by_symbol(self, symbol: str) -> TradeVariety:
        """Look up a pair by symbol, case-insensitively, with both varieties loaded."""
        symbol = symbol.lower()
        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_quote(TradeVariety.TABLE)} WHERE symbol = ?",
                (symbol,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"trade variety {symbol!r} not found")
        trade_variety = TradeVariety(**dict(row))
        trade_variety.base_variety = self._varieties.get(trade_variety.base_id)
        trade_variety.target_variety = self._varieties.get(trade_variety.target_id)
        return trade_variety

    def enabled(self) -> list[TradeVariety]:
        """All enabled trading pairs in id order."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_quote(TradeVariety.TABLE)} WHERE status = ? ORDER BY id",
                (STATUS_ENABLED,),
            ).fetchall()
        return [TradeVariety(**dict(row)) for row in rows]


def auto_migrate(
    db: Database,
    variety_repo: VarietyRepository,
    trade_variety_repo: TradeVarietyRepository,
) -> None:
    """Create the shared ledger tables and seed the default varieties and pair."""
    for entity_class in (Asset, AssetLog, AssetFreeze, Variety, TradeVariety):
        db.ensure_table(entity_class.TABLE, entity_class)
    init_data(variety_repo, trade_variety_repo)


def init_data(
    variety_repo: VarietyRepository, trade_variety_repo: TradeVarietyRepository
) -> None:
    """Seed usdt, btc and the btcusdt pair unless they are already present."""
    varieties = _init_varieties(variety_repo)
    _init_trade_variety(trade_variety_repo, varieties)


def _find(lookup: Any, symbol: str) -> Optional[Any]:
    try:
        return lookup(symbol)
    except NotFoundError:
        return None


def _init_varieties(variety_repo: VarietyRepository) -> list[Variety]:
    usdt = _find(variety_repo.find_by_symbol, "usdt")
    btc = _find(variety_repo.find_by_symbol, "btc")
    if usdt is not None and btc is not None:
        return [usdt, btc]
    return variety_repo.create_many(
        [
            Variety(
                symbol="usdt",
                name="USDT",
                show_decimals=4,
                min_decimals=6,
                is_base=True,
                status=STATUS_ENABLED,
            ),
            Variety(
                symbol="btc",
                name="Bitcoin",
                show_decimals=4,
                min_decimals=8,
                status=STATUS_ENABLED,
            ),
        ]
    )


def _init_trade_variety(
    trade_variety_repo: TradeVarietyRepository, varieties: list[Variety]
) -> None:
    if _find(trade_variety_repo.find_by_symbol, "btcusdt") is not None:
        return
    base, target = varieties[0], varieties[1]
    trade_variety_repo.create(
        TradeVariety(
            symbol="btcusdt",
            name="BTCUSDT",
            base_id=base.id,
            target_id=target.id,
            price_decimals=2,
            qty_decimals=6,
            allow_min_qty="0.0001",
            allow_min_amount="1.00",
            allow_max_amount="0",
            fee_rate="0.005",
            status=STATUS_ENABLED,
        )
    )