import sqlite3
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradeledger.database import Database, migrate_clean
from tradeledger.entities import (
    Asset,
    Kline,
    Order,
    OrderSide,
    OrderType,
    TradeLog,
    UnfinishedOrder,
    Variety,
)


@pytest.fixture
def db():
    database = Database()
    yield database
    database.close()


def _columns(conn, table):
    return [row["name"] for row in conn.execute(f'PRAGMA table_info("{table}")')]


def _insert(conn, table, record):
    cols = _columns(conn, table)
    placeholders = ", ".join("?" for _ in cols)
    names = ", ".join(f'"{c}"' for c in cols)
    conn.execute(
        f'INSERT INTO "{table}" ({names}) VALUES ({placeholders})',
        [getattr(record, c) for c in cols],
    )


def _select_all(conn, table):
    return conn.execute(f'SELECT * FROM "{table}"').fetchall()


def test_ensure_table_creates_and_is_idempotent(db):
    db.ensure_table(Asset.TABLE, Asset)
    db.ensure_table(Asset.TABLE, Asset)
    assert db.has_table("assets")
    assert db.tables() == ["assets"]


def test_has_table_false_for_missing(db):
    assert db.has_table("assets") is False


def test_ensure_table_rejects_non_entity(db):
    with pytest.raises(TypeError):
        db.ensure_table("things", dict)


def test_ensure_table_rejects_empty_name(db):
    with pytest.raises(ValueError):
        db.ensure_table("", Asset)


def test_asset_round_trip_preserves_types(db):
    db.ensure_table(Asset.TABLE, Asset)
    asset = Asset(user_id="user1", symbol="BTC", total_balance="1000.12345678901234567890")
    with db.transaction() as conn:
        _insert(conn, Asset.TABLE, asset)
    with db.transaction() as conn:
        rows = _select_all(conn, Asset.TABLE)
    restored = Asset(**dict(rows[0]))
    assert restored == asset
    assert isinstance(restored.total_balance, Decimal)


def test_order_round_trip_with_enums(db):
    order = Order(
        symbol="BTCUSDT",
        order_id="A1",
        order_side=OrderSide.SELL,
        order_type=OrderType.LIMIT,
        user_id="1",
        price="10",
        quantity="1",
    )
    db.ensure_table(order.table_name(), Order)
    with db.transaction() as conn:
        _insert(conn, order.table_name(), order)
        rows = _select_all(conn, order.table_name())
    restored = Order(**dict(rows[0]))
    assert restored == order
    assert restored.order_side is OrderSide.SELL


def test_variety_round_trip_with_bool(db):
    db.ensure_table(Variety.TABLE, Variety)
    usdt = Variety(id=7, symbol="usdt", name="USDT", is_base=True)
    with db.transaction() as conn:
        _insert(conn, Variety.TABLE, usdt)
        rows = _select_all(conn, Variety.TABLE)
    restored = Variety(**dict(rows[0]))
    assert restored.is_base is True
    assert restored == usdt


def test_transient_fields_are_not_columns(db):
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    kline = Kline(symbol="BTCUSDT", period="1m", open_at=moment, close_at=moment)
    trade = TradeLog(symbol="BTCUSDT")
    db.ensure_table(kline.table_name(), Kline)
    db.ensure_table(trade.table_name(), TradeLog)
    with db.transaction() as conn:
        kline_cols = _columns(conn, kline.table_name())
        trade_cols = _columns(conn, trade.table_name())
    assert "symbol" not in kline_cols and "period" not in kline_cols
    assert "open_at" in kline_cols
    assert "symbol" not in trade_cols


def test_kline_round_trip(db):
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    kline = Kline(
        symbol="BTCUSDT", period="1m", open_at=moment, close_at=moment,
        open="1", high="2", low="0.5", close="1.5", volume="1000", amount="10000",
    )
    db.ensure_table(kline.table_name(), Kline)
    with db.transaction() as conn:
        _insert(conn, kline.table_name(), kline)
        rows = _select_all(conn, kline.table_name())
    restored = Kline(symbol="BTCUSDT", period="1m", **dict(rows[0]))
    assert restored == kline


def test_transaction_rolls_back_on_error(db):
    db.ensure_table(Asset.TABLE, Asset)
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            _insert(conn, Asset.TABLE, Asset(user_id="user1", symbol="BTC"))
            raise RuntimeError("boom")
    with db.transaction() as conn:
        assert _select_all(conn, Asset.TABLE) == []


def test_nested_rollback_keeps_outer_work(db):
    db.ensure_table(Asset.TABLE, Asset)
    with db.transaction() as conn:
        _insert(conn, Asset.TABLE, Asset(user_id="user1", symbol="BTC"))
        with pytest.raises(RuntimeError):
            with db.transaction() as inner:
                _insert(inner, Asset.TABLE, Asset(user_id="user2", symbol="BTC"))
                raise RuntimeError("inner")
    with db.transaction() as conn:
        users = [row["user_id"] for row in _select_all(conn, Asset.TABLE)]
    assert users == ["user1"]


def test_unique_index_is_enforced(db):
    db.ensure_table(Asset.TABLE, Asset)
    with db.transaction() as conn:
        _insert(conn, Asset.TABLE, Asset(user_id="user1", symbol="BTC"))
    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as conn:
            _insert(conn, Asset.TABLE, Asset(user_id="user1", symbol="BTC"))


def test_drop_table_removes_it(db):
    db.ensure_table(Asset.TABLE, Asset)
    db.drop_table(Asset.TABLE)
    db.drop_table(Asset.TABLE)
    assert db.has_table(Asset.TABLE) is False


def test_migrate_clean_drops_ledger_tables_only(db):
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.ensure_table(Asset.TABLE, Asset)
    db.ensure_table(Variety.TABLE, Variety)
    db.ensure_table(UnfinishedOrder.TABLE, UnfinishedOrder)
    db.ensure_table(Order(symbol="BTCUSDT").table_name(), Order)
    db.ensure_table(Order(symbol="ETHUSDT").table_name(), Order)
    db.ensure_table(TradeLog(symbol="BTCUSDT").table_name(), TradeLog)
    kline = Kline(symbol="BTCUSDT", period="1m", open_at=moment, close_at=moment)
    db.ensure_table(kline.table_name(), Kline)
    db.ensure_table("notes", Variety)

    dropped = migrate_clean(db)

    assert set(dropped) == {
        "assets",
        "varieties",
        "unfinished_order",
        "order_btcusdt",
        "order_ethusdt",
        "trade_log_BTCUSDT",
        "kline_btcusdt_1m",
    }
    assert db.tables() == ["notes"]


def test_file_database_persists_between_connections(tmp_path):
    path = tmp_path / "ledger.db"
    asset = Asset(user_id="user1", symbol="BTC", avail_balance="5")
    with Database(path) as first:
        first.ensure_table(Asset.TABLE, Asset)
        with first.transaction() as conn:
            _insert(conn, Asset.TABLE, asset)
    with Database(path) as second:
        assert second.has_table(Asset.TABLE)
        with second.transaction() as conn:
            rows = _select_all(conn, Asset.TABLE)
    assert Asset(**dict(rows[0])) == asset