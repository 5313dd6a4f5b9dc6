"""Persistent records of the trading ledger: balances, freezes, orders, trades, candles and varieties."""

from __future__ import annotations

import uuid
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
from typing import Any, Callable, ClassVar, Optional

SYSTEM_USER_ROOT = "system"
SYSTEM_USER_FEE = "systemFee"

STATUS_DISABLED = 0
STATUS_ENABLED = 1


class FreezeStatus(IntEnum):
    NEW = 0
    DONE = 1


class AssetChangeType(str, Enum):
    TRADE = "trade"
    RECHARGE = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"


class FreezeType(str, Enum):
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"
    TRADE = "trade"


class OrderSide(str, Enum):
    SELL = "ask"
    BUY = "bid"
    ASK = "ask"
    BID = "bid"


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(IntEnum):
    NEW = 0
    PARTIAL_FILL = 1
    FILLED = 2
    CANCELED = 3


class TradeBy(IntEnum):
    UNKNOWN = 0
    BUYER = 1
    SELLER = 2


def new_id() -> str:
    """Return a fresh random UUID string."""
    return str(uuid.uuid4())


def numeric(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal; an empty string is zero."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise TypeError("a boolean is not a numeric value")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return Decimal(0)
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"invalid numeric value: {value!r}") from None
    else:
        raise TypeError(f"cannot convert {type(value).__name__} to a numeric value")
    if not result.is_finite():
        raise ValueError(f"numeric value must be finite: {value!r}")
    return result


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _optional(enum_cls: type) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        return None if value is None else enum_cls(value)

    return convert


def _col(sql: str, default: Any = MISSING, *, factory: Any = None, coerce: Any = None) -> Any:
    metadata = {"sql": sql, "coerce": coerce}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    if default is MISSING:
        return field(metadata=metadata)
    return field(default=default, metadata=metadata)


def _transient(default: Any = MISSING) -> Any:
    metadata = {"sql": None, "coerce": None}
    if default is MISSING:
        return field(metadata=metadata)
    return field(default=default, metadata=metadata)


def _text(default: str = "") -> Any:
    return _col("TEXT", default)


def _integer(default: int = 0) -> Any:
    return _col("INTEGER", default)


def _flag(default: bool = False) -> Any:
    return _col("BOOLINT", default, coerce=bool)


def _amount(default: str = "0") -> Any:
    return _col("DECTEXT", factory=lambda: Decimal(default), coerce=numeric)


def _moment() -> Any:
    return _col("TIMESTAMPTEXT", factory=_now)


def _choice(enum_cls: type, default: Any) -> Any:
    sql = "INTEGER" if issubclass(enum_cls, int) else "TEXT"
    return _col(sql, default, coerce=_optional(enum_cls))


@dataclass(kw_only=True)
class _Record:
    TABLE: ClassVar[str] = ""
    UNIQUE: ClassVar[tuple] = ()

    created_at: datetime = _moment()
    updated_at: datetime = _moment()

    def __post_init__(self) -> None:
        for f in fields(self):
            coerce = f.metadata.get("coerce")
            if coerce is not None:
                setattr(self, f.name, coerce(getattr(self, f.name)))


@dataclass(kw_only=True)
class _Identified(_Record):
    id: str = _col("TEXT", factory=new_id)


@dataclass(kw_only=True)
class Asset(_Identified):
    """A user's balance in one symbol."""

    TABLE: ClassVar[str] = "assets"
    UNIQUE: ClassVar[tuple] = (("user_id", "symbol"),)

    user_id: str = _text()
    symbol: str = _text()
    total_balance: Decimal = _amount()
    freeze_balance: Decimal = _amount()
    avail_balance: Decimal = _amount()


@dataclass(kw_only=True)
class AssetFreeze(_Identified):
    """An amount held back from a user's available balance for one business id."""

    TABLE: ClassVar[str] = "asset_freezes"
    UNIQUE: ClassVar[tuple] = (("trans_id",),)

    user_id: str = _text()
    symbol: str = _text()
    amount: Decimal = _amount()
    freeze_amount: Decimal = _amount()
    status: FreezeStatus = _choice(FreezeStatus, FreezeStatus.NEW)
    trans_id: str = _text()
    freeze_type: Optional[FreezeType] = _choice(FreezeType, None)
    info: str = _text()


@dataclass(kw_only=True)
class AssetLog(_Identified):
    """One change of a user's total balance."""

    TABLE: ClassVar[str] = "asset_logs"

    user_id: str = _text()
    symbol: str = _text()
    before_balance: Decimal = _amount()
    amount: Decimal = _amount()
    after_balance: Decimal = _amount()
    trans_id: str = _text()
    change_type: Optional[AssetChangeType] = _choice(AssetChangeType, None)
    info: str = _text()


@dataclass(kw_only=True)
class Kline(_Identified):
    """One candle of a symbol for one period; stored in a table per symbol and period."""

    UNIQUE: ClassVar[tuple] = (("open_at", "close_at"),)

    symbol: str = _transient()
    period: str = _transient()
    open_at: datetime = _col("TIMESTAMPTEXT")
    close_at: datetime = _col("TIMESTAMPTEXT")
    open: Decimal = _amount()
    high: Decimal = _amount()
    low: Decimal = _amount()
    close: Decimal = _amount()
    volume: Decimal = _amount()
    amount: Decimal = _amount()

    def table_name(self) -> str:
        period = getattr(self.period, "value", self.period)
        return f"kline_{self.symbol.lower()}_{period}"


@dataclass(kw_only=True)
class Order(_Identified):
    """An order of one symbol; stored in a table per symbol."""

    UNIQUE: ClassVar[tuple] = (("order_id",),)

    symbol: str = _col("TEXT")
    order_id: str = _text()
    order_side: Optional[OrderSide] = _choice(OrderSide, None)
    order_type: Optional[OrderType] = _choice(OrderType, None)
    user_id: str = _text()
    price: Decimal = _amount()
    quantity: Decimal = _amount()
    fee_rate: Decimal = _amount()
    amount: Decimal = _amount()
    freeze_qty: Decimal = _amount()
    freeze_amount: Decimal = _amount()
    avg_price: Decimal = _amount()
    finished_qty: Decimal = _amount()
    finished_amount: Decimal = _amount()
    fee: Decimal = _amount()
    status: OrderStatus = _choice(OrderStatus, OrderStatus.NEW)
    nano_time: int = _integer()

    def table_name(self) -> str:
        return f"order_{self.symbol.lower()}"


@dataclass(kw_only=True)
class UnfinishedOrder(Order):
    """An order still open for matching; all symbols share one table."""

    TABLE: ClassVar[str] = "unfinished_order"

    def table_name(self) -> str:
        return self.TABLE


@dataclass(kw_only=True)
class TradeLog(_Identified):
    """One trade between an ask and a bid order; stored in a table per symbol."""

    UNIQUE: ClassVar[tuple] = (("trade_id", "ask", "bid"),)

    symbol: str = _transient()
    trade_id: str = _text()
    ask: str = _text()
    bid: str = _text()
    trade_by: TradeBy = _choice(TradeBy, TradeBy.UNKNOWN)
    ask_uid: str = _text()
    bid_uid: str = _text()
    price: Decimal = _amount()
    quantity: Decimal = _amount()
    amount: Decimal = _amount()
    ask_fee_rate: Decimal = _amount()
    ask_fee: Decimal = _amount()
    bid_fee_rate: Decimal = _amount()
    bid_fee: Decimal = _amount()

    def table_name(self) -> str:
        return f"trade_log_{self.symbol}"


@dataclass(kw_only=True)
class Variety(_Record):
    """A tradable asset such as a coin or currency."""

    TABLE: ClassVar[str] = "varieties"
    UNIQUE: ClassVar[tuple] = (("symbol",),)

    id: int = _integer()
    symbol: str = _text()
    name: str = _text()
    show_decimals: int = _integer()
    min_decimals: int = _integer()
    is_base: bool = _flag()
    sort: int = _integer()
    status: int = _integer(STATUS_DISABLED)


@dataclass(kw_only=True)
class TradeVariety(_Record):
    """A trading pair: a target variety priced in a base variety."""

    TABLE: ClassVar[str] = "trade_varieties"
    UNIQUE: ClassVar[tuple] = (("symbol",), ("target_id", "base_id"))

    id: int = _integer()
    symbol: str = _text()
    name: str = _text()
    target_id: int = _integer()
    base_id: int = _integer()
    price_decimals: int = _integer(2)
    qty_decimals: int = _integer(0)
    allow_min_qty: Decimal = _amount("0.01")
    allow_max_qty: Decimal = _amount("999999")
    allow_min_amount: Decimal = _amount("0.01")
    allow_max_amount: Decimal = _amount("999999")
    fee_rate: Decimal = _amount("0")
    status: int = _integer(STATUS_DISABLED)
    sort: int = _integer()
    base_variety: Optional[Variety] = _transient(None)
    target_variety: Optional[Variety] = _transient(None)