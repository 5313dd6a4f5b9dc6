"""Trade settlement: moving assets between the two sides of a trade, and order cancellation."""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from .assets import AssetRepository
from .database import Database
from .entities import (
    SYSTEM_USER_FEE,
    Order,
    OrderStatus,
    OrderType,
    TradeBy,
    TradeLog,
    TradeVariety,
    UnfinishedOrder,
    numeric,
)
from .locks import SettleLocker
from .orders import CancelType, OrderRepository
from .varieties import TradeVarietyRepository

TOPIC_ORDER_SETTLE = "order.settle"
TOPIC_PROCESS_ORDER_CANCEL = "order.process_cancel"
TOPIC_NOTIFY_QUOTE = "notify.quote"

_ZERO = Decimal(0)
_SEQUENCE = itertools.count()
_SEQUENCE_LOCK = threading.Lock()

Handler = Callable[[bytes], Any]
Notifier = Callable[[str, dict], Any]


class SettlementError(Exception):
    """A trade could not be settled or an order could not be cancelled."""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _insert(conn: sqlite3.Connection, table: str, record: Any) -> None:
    columns = [f.name for f in fields(type(record)) if f.metadata.get("sql") is not None]
    names = ", ".join(_quote(c) for c in columns)
    marks = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})",
        [getattr(record, c) for c in columns],
    )


def generate_trade_id(ask_order_id: str, bid_order_id: str) -> str:
    """A new trade id: the UTC time to the microsecond, a sequence and a digest of both orders."""
    now = datetime.now(timezone.utc)
    with _SEQUENCE_LOCK:
        sequence = next(_SEQUENCE) % 10000
    digest = hashlib.sha1(f"{ask_order_id}:{bid_order_id}".encode()).hexdigest()[:4]
    return f"T{now:%y%m%d%H%M%S%f}{sequence:04d}{digest}"


@dataclass
class TradeResult:
    """One match between an ask order and a bid order."""

    symbol: str
    ask_order_id: str
    bid_order_id: str
    trade_price: Decimal
    trade_quantity: Decimal
    trade_by: TradeBy = TradeBy.UNKNOWN
    trade_time: int = 0
    remainder_market_order_id: str = ""

    def __post_init__(self) -> None:
        self.trade_price = numeric(self.trade_price)
        self.trade_quantity = numeric(self.trade_quantity)
        self.trade_by = TradeBy(self.trade_by)
        self.trade_time = int(self.trade_time)

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "symbol": self.symbol,
                "ask_order_id": self.ask_order_id,
                "bid_order_id": self.bid_order_id,
                "trade_price": str(self.trade_price),
                "trade_quantity": str(self.trade_quantity),
                "trade_by": int(self.trade_by),
                "trade_time": self.trade_time,
                "remainder_market_order_id": self.remainder_market_order_id,
            }
        ).encode()

    @classmethod
    def from_json(cls, body: Union[bytes, str]) -> "TradeResult":
        try:
            data = json.loads(body)
            return cls(
                symbol=data["symbol"],
                ask_order_id=data["ask_order_id"],
                bid_order_id=data["bid_order_id"],
                trade_price=data["trade_price"],
                trade_quantity=data["trade_quantity"],
                trade_by=data.get("trade_by", 0),
                trade_time=data.get("trade_time", 0),
                remainder_market_order_id=data.get("remainder_market_order_id", ""),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise SettlementError(f"invalid trade result: {exc}") from exc


class Broker:
    """An in-process message broker delivering each message to the topic's handlers in order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self.published: list[tuple[str, bytes, Optional[str]]] = []

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic].append(handler)

    def publish(
        self, topic: str, body: Union[bytes, str], sharding_key: Optional[str] = None
    ) -> None:
        """Record a message and hand it to every subscriber; handler errors propagate."""
        if isinstance(body, str):
            body = body.encode()
        with self._lock:
            self.published.append((topic, body, sharding_key))
            handlers = list(self._handlers.get(topic, ()))
        for handler in handlers:
            handler(body)


class SettleProcessor:
    """Settles a trade: records it, updates both orders and delivers the assets."""

    def __init__(
        self,
        db: Database,
        trade_variety_repo: TradeVarietyRepository,
        asset_repo: AssetRepository,
        broker: Broker,
        locker: SettleLocker,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._db = db
        self._trade_varieties = trade_variety_repo
        self._assets = asset_repo
        self._broker = broker
        self._locker = locker
        self._notifier = notifier

    def run(self, trade_result: TradeResult) -> TradeLog:
        """Settle a trade atomically, holding settlement locks on both orders meanwhile."""
        if trade_result.trade_quantity <= _ZERO:
            raise SettlementError("trade quantity must be greater than 0")
        self._db.ensure_table(TradeLog(symbol=trade_result.symbol).table_name(), TradeLog)

        order_ids = (trade_result.ask_order_id, trade_result.bid_order_id)
        self._locker.lock(*order_ids)
        try:
            trade_log = self._flow(trade_result)
        finally:
            self._locker.unlock(*order_ids)

        if self._notifier is not None:
            self._notifier(
                trade_result.symbol,
                {
                    "price": trade_log.price,
                    "qty": trade_log.quantity,
                    "amount": trade_log.amount,
                    "trade_at": trade_result.trade_time,
                },
            )
        return trade_log

    def _flow(self, trade_result: TradeResult) -> TradeLog:
        order_table = Order(symbol=trade_result.symbol).table_name()
        if not self._db.has_table(order_table):
            raise SettlementError(f"no orders for symbol {trade_result.symbol!r}")
        has_unfinished = self._db.has_table(UnfinishedOrder.TABLE)

        with self._db.transaction() as conn:
            pair = self._trade_varieties.find_by_symbol(trade_result.symbol)
            ask = self._load_order(conn, order_table, trade_result.ask_order_id, "ask")
            bid = self._load_order(conn, order_table, trade_result.bid_order_id, "bid")

            trade_log = self._write_trade_log(conn, trade_result, ask, bid)
            remainder = trade_result.remainder_market_order_id
            self._apply_trade(conn, ask, trade_log.ask_fee, trade_log, remainder, "ask", has_unfinished)
            self._apply_trade(conn, bid, trade_log.bid_fee, trade_log, remainder, "bid", has_unfinished)
            self._deliver(conn, trade_log, ask, bid, pair)

            self._broker.publish(
                TOPIC_NOTIFY_QUOTE, trade_result.to_json(), sharding_key=trade_result.symbol
            )
        return trade_log

    @staticmethod
    def _load_order(conn: sqlite3.Connection, table: str, order_id: str, label: str) -> Order:
        row = conn.execute(
            f"SELECT * FROM {_quote(table)} WHERE order_id = ?", (order_id,)
        ).fetchone()
        if row is None:
            raise SettlementError(f"{label} order {order_id!r} not found")
        order = Order(**dict(row))
        if order.status != OrderStatus.NEW:
            raise SettlementError(f"invalid {label} order status")
        return order

    @staticmethod
    def _write_trade_log(
        conn: sqlite3.Connection, trade_result: TradeResult, ask: Order, bid: Order
    ) -> TradeLog:
        amount = trade_result.trade_quantity * trade_result.trade_price
        trade_log = TradeLog(
            symbol=trade_result.symbol,
            trade_id=generate_trade_id(trade_result.ask_order_id, trade_result.bid_order_id),
            ask=trade_result.ask_order_id,
            bid=trade_result.bid_order_id,
            trade_by=trade_result.trade_by,
            ask_uid=ask.user_id,
            bid_uid=bid.user_id,
            price=trade_result.trade_price,
            quantity=trade_result.trade_quantity,
            amount=amount,
            ask_fee_rate=ask.fee_rate,
            ask_fee=amount * ask.fee_rate,
            bid_fee_rate=bid.fee_rate,
            bid_fee=amount * bid.fee_rate,
        )
        _insert(conn, trade_log.table_name(), trade_log)
        return trade_log

    def _apply_trade(
        self,
        conn: sqlite3.Connection,
        order: Order,
        fee: Decimal,
        trade_log: TradeLog,
        remainder_order_id: str,
        label: str,
        has_unfinished: bool,
    ) -> None:
        order.fee += fee
        order.finished_qty += trade_log.quantity
        order.finished_amount += trade_log.amount
        order.avg_price = order.finished_amount / order.finished_qty
        order.status = OrderStatus.PARTIAL_FILL

        if order.order_type is OrderType.LIMIT:
            if order.finished_qty > order.quantity:
                raise SettlementError(f"invalid {label} order finished qty")
            if order.finished_qty == order.quantity:
                order.status = OrderStatus.FILLED
            self._update_order(conn, order.table_name(), order)
            if has_unfinished:
                self._update_order(conn, UnfinishedOrder.TABLE, order)
                if order.status is OrderStatus.FILLED:
                    conn.execute(
                        f"DELETE FROM {_quote(UnfinishedOrder.TABLE)} WHERE order_id = ?",
                        (order.order_id,),
                    )
        else:
            if order.quantity == order.finished_qty or order.amount == order.finished_amount:
                order.status = OrderStatus.FILLED
            if remainder_order_id == order.order_id:
                order.status = OrderStatus.FILLED
            self._update_order(conn, order.table_name(), order)

    @staticmethod
    def _update_order(conn: sqlite3.Connection, table: str, order: Order) -> None:
        order.updated_at = datetime.now(timezone.utc)
        conn.execute(
            f"UPDATE {_quote(table)} SET fee = ?, finished_qty = ?, finished_amount = ?, "
            "avg_price = ?, status = ?, updated_at = ? WHERE order_id = ?",
            (
                order.fee,
                order.finished_qty,
                order.finished_amount,
                order.avg_price,
                order.status,
                order.updated_at,
                order.order_id,
            ),
        )

    def _deliver(
        self,
        conn: sqlite3.Connection,
        trade_log: TradeLog,
        ask: Order,
        bid: Order,
        pair: TradeVariety,
    ) -> None:
        target = pair.target_variety.symbol
        base = pair.base_variety.symbol
        assets = self._assets

        # The seller's frozen target goes to the buyer.
        assets.unfreeze(conn, trade_log.ask, ask.user_id, target, trade_log.quantity)
        assets.transfer_with_tx(
            conn, trade_log.trade_id, ask.user_id, bid.user_id, target, trade_log.quantity
        )

        # The buyer's frozen base goes to the seller; both fees go to the fee account.
        assets.unfreeze(conn, trade_log.bid, bid.user_id, base, trade_log.amount + trade_log.bid_fee)
        assets.transfer_with_tx(
            conn, trade_log.trade_id, bid.user_id, ask.user_id, base, trade_log.amount
        )
        assets.transfer_with_tx(
            conn, trade_log.trade_id, ask.user_id, SYSTEM_USER_FEE, base, trade_log.ask_fee
        )
        assets.transfer_with_tx(
            conn, trade_log.trade_id, bid.user_id, SYSTEM_USER_FEE, base, trade_log.bid_fee
        )

        # A filled market order gives back whatever it still holds frozen.
        if ask.order_type is OrderType.MARKET and ask.status is OrderStatus.FILLED:
            assets.unfreeze(conn, trade_log.ask, ask.user_id, target, 0)
        if bid.order_type is OrderType.MARKET and bid.status is OrderStatus.FILLED:
            assets.unfreeze(conn, trade_log.bid, bid.user_id, base, 0)


class SettlementSubscriber:
    """Settles each trade published on the settlement topic."""

    def __init__(self, broker: Broker, processor: SettleProcessor) -> None:
        self._broker = broker
        self._processor = processor

    def subscribe(self) -> None:
        self._broker.subscribe(TOPIC_ORDER_SETTLE, self.on_message)

    def on_message(self, body: Union[bytes, str]) -> TradeLog:
        return self._processor.run(TradeResult.from_json(body))


class CancelOrderSubscriber:
    """Cancels orders once no settlement holds a lock on them."""

    def __init__(
        self,
        broker: Broker,
        order_repo: OrderRepository,
        locker: SettleLocker,
        max_retry: int = 20,
        retry_delay: float = 0.5,
    ) -> None:
        self._broker = broker
        self._orders = order_repo
        self._locker = locker
        self._max_retry = max_retry
        self._retry_delay = retry_delay

    def subscribe(self) -> None:
        self._broker.subscribe(TOPIC_PROCESS_ORDER_CANCEL, self.on_message)

    def on_message(self, body: Union[bytes, str]) -> None:
        try:
            data = json.loads(body)
            symbol = data["symbol"]
            order_id = data["order_id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SettlementError(f"invalid cancel order event: {exc}") from exc
        if not isinstance(symbol, str) or not isinstance(order_id, str):
            raise SettlementError("invalid cancel order event: symbol and order_id must be strings")
        self.process(symbol, order_id)

    def process(self, symbol: str, order_id: str) -> None:
        """Wait for settlements on the order to finish, then cancel it."""
        attempt = 0
        while self._locker.is_locked(order_id):
            if attempt > self._max_retry:
                raise SettlementError("retry over max retry")
            time.sleep(self._retry_delay)
            attempt += 1
        self._orders.cancel(symbol, order_id, CancelType.USER)


def start_settlement(
    broker: Broker,
    processor: SettleProcessor,
    order_repo: OrderRepository,
    locker: SettleLocker,
) -> tuple[SettlementSubscriber, CancelOrderSubscriber]:
    """Subscribe the settlement and cancellation handlers to the broker."""
    settlement = SettlementSubscriber(broker, processor)
    cancel = CancelOrderSubscriber(broker, order_repo, locker)
    settlement.subscribe()
    cancel.subscribe()
    return settlement, cancel