import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tradeledger.entities import (
    Asset,
    AssetFreeze,
    FreezeStatus,
    Kline,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    TradeLog,
    TradeVariety,
    UnfinishedOrder,
    new_id,
    numeric,
)


def test_numeric_parses_strings_and_numbers():
    assert numeric("10.1") == Decimal("10.1")
    assert numeric(" 1000 ") == Decimal("1000")
    assert numeric(5) == Decimal(5)
    assert numeric(Decimal("0.005")) == Decimal("0.005")


def test_numeric_empty_string_is_zero():
    assert numeric("") == Decimal(0)


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", "1.2.3"])
def test_numeric_rejects_invalid_text(value):
    with pytest.raises(ValueError):
        numeric(value)


@pytest.mark.parametrize("value", [None, True, [1]])
def test_numeric_rejects_other_types(value):
    with pytest.raises(TypeError):
        numeric(value)


def test_new_id_is_a_fresh_uuid():
    first, second = new_id(), new_id()
    assert str(uuid.UUID(first)) == first
    assert first != second


def test_records_receive_distinct_uuid_ids():
    one = Asset(user_id="user1", symbol="BTC")
    two = Asset(user_id="user1", symbol="BTC")
    assert str(uuid.UUID(one.id)) == one.id
    assert one.id != two.id


def test_asset_balances_are_coerced_to_decimal():
    asset = Asset(user_id="user1", symbol="BTC", total_balance="1", avail_balance=2)
    assert asset.total_balance == Decimal("1")
    assert asset.avail_balance == Decimal("2")
    assert asset.freeze_balance == Decimal(0)
    assert isinstance(asset.total_balance, Decimal)


def test_timestamps_are_utc():
    asset = Asset(user_id="user1", symbol="BTC")
    assert asset.created_at.utcoffset() == timedelta(0)
    assert asset.updated_at.utcoffset() == timedelta(0)


def test_order_table_name_lowercases_symbol():
    assert Order(symbol="BTCUSDT").table_name() == "order_btcusdt"


def test_unfinished_order_uses_shared_table():
    order = UnfinishedOrder(symbol="BTCUSDT", order_id="A1")
    assert order.table_name() == "unfinished_order"
    assert isinstance(order, Order)


def test_trade_log_table_name_keeps_symbol_case():
    assert TradeLog(symbol="BTCUSDT").table_name() == "trade_log_BTCUSDT"


def test_kline_table_name_combines_symbol_and_period():
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    kline = Kline(symbol="BTCUSDT", period="1m", open_at=moment, close_at=moment)
    assert kline.table_name() == "kline_btcusdt_1m"


def test_order_coerces_enum_values():
    order = Order(symbol="BTCUSDT", order_side="ask", order_type="limit", status=2)
    assert order.order_side is OrderSide.SELL
    assert order.order_type is OrderType.LIMIT
    assert order.status is OrderStatus.FILLED


def test_order_side_aliases():
    assert OrderSide("bid") is OrderSide.BUY
    assert OrderSide.ASK is OrderSide.SELL


def test_order_defaults():
    order = Order(symbol="BTCUSDT")
    assert order.status is OrderStatus.NEW
    assert order.order_side is None
    assert order.price == Decimal(0)
    assert order.nano_time == 0


def test_order_rejects_unknown_side():
    with pytest.raises(ValueError):
        Order(symbol="BTCUSDT", order_side="sideways")


def test_asset_freeze_status_defaults_to_new():
    freeze = AssetFreeze(user_id="user1", symbol="BTC", trans_id="t1", status=1)
    assert freeze.status is FreezeStatus.DONE
    assert AssetFreeze(trans_id="t2").status is FreezeStatus.NEW


def test_trade_variety_defaults():
    pair = TradeVariety(symbol="btcusdt", name="BTCUSDT")
    assert pair.price_decimals == 2
    assert pair.qty_decimals == 0
    assert pair.allow_min_qty == Decimal("0.01")
    assert pair.allow_max_amount == Decimal("999999")
    assert pair.base_variety is None