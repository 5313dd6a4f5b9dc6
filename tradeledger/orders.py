"""Order placement and cancellation, with the balances each order holds back."""

from __future__ import annotations

import itertools
import sqlite3
import threading
import time
from dataclasses import fields
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from .assets import AssetRepository
from .database import Database
from .entities import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    TradeVariety,
    UnfinishedOrder,
)
from .varieties import TradeVarietyRepository


class CancelType(IntEnum):
    USER = 1
    SYSTEM = 2


class OrderError(Exception):
    """An order request was refused or refers to an unknown order."""


_SEQUENCE = itertools.count()
_SEQUENCE_LOCK = threading.Lock()


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


def _side(side: Any) -> OrderSide:
    try:
        return OrderSide(side)
    except ValueError:
        raise OrderError(f"invalid order side: {side!r}") from None


def generate_order_id(side: Any) -> str:
    """A new order id: a side prefix, the UTC time to the microsecond and a sequence."""
    prefix = "A" if _side(side) is OrderSide.SELL else "B"
    now = datetime.now(timezone.utc)
    with _SEQUENCE_LOCK:
        sequence = next(_SEQUENCE) % 10000
    return f"{prefix}{now:%y%m%d%H%M%S%f}{sequence:04d}"


def _order_table(symbol: str) -> str:
    return Order(symbol=symbol).table_name()


class OrderRepository:
    """Orders per symbol; placing an order freezes the assets it may spend."""

    def __init__(
        self,
        db: Database,
        trade_variety_repo: TradeVarietyRepository,
        asset_repo: AssetRepository,
    ) -> None:
        self._db = db
        self._trade_varieties = trade_variety_repo
        self._assets = asset_repo

    def _new_order(
        self,
        user_id: str,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        trade_info: TradeVariety,
        **values: Any,
    ) -> Order:
        return Order(
            order_id=generate_order_id(side),
            user_id=user_id,
            symbol=symbol,
            order_side=side,
            order_type=order_type,
            fee_rate=trade_info.fee_rate,
            status=OrderStatus.NEW,
            nano_time=time.time_ns(),
            **values,
        )

    def create_limit(
        self, user_id: str, symbol: str, side: Any, price: Any, qty: Any
    ) -> Order:
        """Place a limit order; it is also listed among the unfinished orders."""
        side = _side(side)
        trade_info = self._trade_varieties.find_by_symbol(symbol)
        order = self._new_order(
            user_id, symbol, side, OrderType.LIMIT, trade_info, price=price, quantity=qty
        )
        table = order.table_name()
        self._db.ensure_table(table, Order)
        self._db.ensure_table(UnfinishedOrder.TABLE, UnfinishedOrder)

        with self._db.transaction() as conn:
            if side is OrderSide.SELL:
                order.freeze_qty = order.quantity
                self._assets.freeze(
                    conn, order.order_id, user_id,
                    trade_info.target_variety.symbol, order.quantity,
                )
            else:
                amount = order.price * order.quantity
                order.freeze_amount = amount + amount * order.fee_rate
                self._assets.freeze(
                    conn, order.order_id, user_id,
                    trade_info.base_variety.symbol, order.freeze_amount,
                )
            _insert(conn, table, order)
            values = {f.name: getattr(order, f.name) for f in fields(Order)}
            _insert(conn, UnfinishedOrder.TABLE, UnfinishedOrder(**values))
        return order

    def create_market_by_amount(
        self, user_id: str, symbol: str, side: Any, amount: Any
    ) -> Order:
        """Place a market order bounded by an amount of the base variety.

        A sell freezes the whole available target balance; a buy freezes the
        amount and may spend it less the fee.
        """
        side = _side(side)
        trade_info = self._trade_varieties.find_by_symbol(symbol)
        order = self._new_order(
            user_id, symbol, side, OrderType.MARKET, trade_info, freeze_amount=amount
        )
        table = order.table_name()
        self._db.ensure_table(table, Order)

        with self._db.transaction() as conn:
            if side is OrderSide.SELL:
                frozen = self._assets.freeze(
                    conn, order.order_id, user_id, trade_info.target_variety.symbol, 0
                )
                order.freeze_qty = frozen.freeze_amount
            else:
                frozen = self._assets.freeze(
                    conn, order.order_id, user_id,
                    trade_info.base_variety.symbol, order.freeze_amount,
                )
                order.freeze_amount = frozen.freeze_amount
                order.amount = order.freeze_amount - order.freeze_amount * order.fee_rate
            _insert(conn, table, order)
        return order

    def create_market_by_qty(
        self, user_id: str, symbol: str, side: Any, qty: Any
    ) -> Order:
        """Place a market order bounded by a quantity of the target variety.

        A sell freezes the quantity; a buy freezes the whole available base balance.
        """
        side = _side(side)
        trade_info = self._trade_varieties.find_by_symbol(symbol)
        order = self._new_order(
            user_id, symbol, side, OrderType.MARKET, trade_info, quantity=qty
        )
        table = order.table_name()
        self._db.ensure_table(table, Order)

        with self._db.transaction() as conn:
            if side is OrderSide.SELL:
                frozen = self._assets.freeze(
                    conn, order.order_id, user_id,
                    trade_info.target_variety.symbol, order.quantity,
                )
                order.freeze_qty = frozen.freeze_amount
            else:
                frozen = self._assets.freeze(
                    conn, order.order_id, user_id, trade_info.base_variety.symbol, 0
                )
                order.freeze_amount = frozen.freeze_amount
            _insert(conn, table, order)
        return order

    def cancel(self, symbol: str, order_id: str, cancel_type: Any = CancelType.USER) -> None:
        """Cancel an order: release what it froze and drop it from the unfinished list."""
        CancelType(cancel_type)
        trade_info = self._trade_varieties.find_by_symbol(symbol)
        order = self.get(symbol, order_id)
        frozen_symbol = (
            trade_info.target_variety.symbol
            if order.order_side is OrderSide.SELL
            else trade_info.base_variety.symbol
        )
        table = order.table_name()
        has_unfinished = self._db.has_table(UnfinishedOrder.TABLE)

        with self._db.transaction() as conn:
            self._assets.unfreeze(conn, order.order_id, order.user_id, frozen_symbol, 0)
            conn.execute(
                f"UPDATE {_quote(table)} SET status = ?, updated_at = ? WHERE order_id = ?",
                (OrderStatus.CANCELED, datetime.now(timezone.utc), order_id),
            )
            if has_unfinished:
                conn.execute(
                    f"DELETE FROM {_quote(UnfinishedOrder.TABLE)} WHERE order_id = ?",
                    (order_id,),
                )

    def get(self, symbol: str, order_id: str) -> Order:
        """The order with this id in the symbol's order table."""
        table = _order_table(symbol)
        if not self._db.has_table(table):
            raise OrderError(f"order {order_id!r} not found")
        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_quote(table)} WHERE order_id = ?", (order_id,)
            ).fetchone()
        if row is None:
            raise OrderError(f"order {order_id!r} not found")
        return Order(**dict(row))

    def load_unfinished_orders(self, symbol: str) -> list[Order]:
        """Unfinished orders of a symbol, oldest first."""
        if not self._db.has_table(UnfinishedOrder.TABLE):
            return []
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_quote(UnfinishedOrder.TABLE)} "
                "WHERE symbol = ? ORDER BY nano_time ASC, rowid ASC",
                (symbol,),
            ).fetchall()
        return [Order(**dict(row)) for row in rows]

    def history_list(
        self, user_id: str, symbol: str, start: int, end: int, limit: int
    ) -> list[Order]:
        """A user's orders placed between two nanosecond times, oldest first.

        A positive ``limit`` caps the count.
        """
        table = _order_table(symbol)
        if not self._db.has_table(table):
            return []
        sql = (
            f"SELECT * FROM {_quote(table)} WHERE user_id = ? AND symbol = ? "
            "AND nano_time >= ? AND nano_time <= ? ORDER BY nano_time ASC, rowid ASC"
        )
        params: list[Any] = [user_id, symbol, start, end]
        if limit > 0:
            sql += " LIMIT ?"
            params.append(limit)
        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Order(**dict(row)) for row in rows]