# tradeledger

The bookkeeping side of a spot exchange: account balances, frozen funds,
orders, trade logs, candlesticks (klines) and the settlement of matched
trades. Everything is stored in SQLite through the standard library, so the
package has no runtime dependencies.

## What is in it

- `tradeledger.entities`: the records kept by the ledger (`Asset`,
  `AssetFreeze`, `AssetLog`, `Order`, `UnfinishedOrder`, `TradeLog`, `Kline`,
  `Variety`, `TradeVariety`) and their enums (`OrderSide`, `OrderType`,
  `OrderStatus`, `TradeBy`, `FreezeStatus`, `FreezeType`, `AssetChangeType`).
  Amounts are `Decimal`; `numeric()` turns strings or numbers into one, and
  `new_id()` makes a fresh UUID string. `Order`, `TradeLog` and `Kline` live in
  one table per symbol (and per period for klines); `table_name()` gives it.
- `tradeledger.database`: `Database`, a SQLite store with nestable
  transactions (`transaction()`, inner blocks become savepoints),
  `ensure_table()`, `has_table()`, `tables()`, `drop_table()` and `close()`,
  and `migrate_clean()` which drops every ledger table, per-symbol ones
  included, and returns the names dropped.
- `tradeledger.assets`: `AssetRepository` with `deposit`, `withdraw`,
  `transfer`, `transfer_with_tx`, `freeze`, `unfreeze`, `query_freeze`, `get`
  and `logs`. Refused operations raise `AssetError`, or
  `InsufficientBalanceError` when a balance would go negative.
- `tradeledger.varieties`: `VarietyRepository` and `TradeVarietyRepository`
  for currencies and trading pairs (lookups raise `NotFoundError`), and
  `auto_migrate()` / `init_data()`, which seed `usdt`, `btc` and the
  `btcusdt` pair if they are missing.
- `tradeledger.market_data`: `KlineRepository` (`save` inserts a candle or
  updates the one with the same open and close time; `find` returns candles
  newest first) and `TradeLogRepository` (`find`). Both raise
  `TableNotFoundError` for a symbol with no table yet.
- `tradeledger.orders`: `OrderRepository` to place limit and market orders
  (freezing the funds they may spend), cancel them, look them up, list
  unfinished orders and a user's history; `generate_order_id()`,
  `CancelType` and `OrderError`.
- `tradeledger.locks`: `CounterStore`, an in-memory store of counters, and
  `SettleLocker`, counting locks that keep an order from being cancelled
  while a trade on it is being settled.
- `tradeledger.settlement`: `TradeResult` (with `to_json` / `from_json`),
  `SettleProcessor`, which books a matched trade between the two parties and
  the fee account, an in-process `Broker`, the `SettlementSubscriber` and
  `CancelOrderSubscriber` that `start_settlement()` subscribes to it,
  `generate_trade_id()` and `SettlementError`.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## A short tour

```python
from tradeledger.database import Database
from tradeledger.assets import AssetRepository, InsufficientBalanceError
from tradeledger.entities import numeric

db = Database(":memory:")
assets = AssetRepository(db)

assets.deposit("dep-1", "user1", "BTC", numeric("1000"))

with db.transaction() as tx:
    assets.freeze(tx, "order-1", "user1", "BTC", numeric("900"))

asset = assets.get("user1", "BTC")
print(asset.avail_balance, asset.freeze_balance)   # 100 900

try:
    assets.withdraw("wd-1", "user1", "BTC", numeric("5000"))
except InsufficientBalanceError:
    print("not enough BTC")
```

A deposit is a transfer from the `system` account and a withdrawal a transfer
back to it; the `system` account is the only one allowed to go negative.
Freezing an amount of `0` freezes the whole available balance, and
unfreezing `0` releases whatever is left frozen under that transaction id.
Methods that take `tx` accept `None` to run in a transaction of their own.

Placing orders builds on the same store:

```python
from tradeledger.varieties import VarietyRepository, TradeVarietyRepository, auto_migrate
from tradeledger.orders import OrderRepository
from tradeledger.entities import OrderSide

varieties = VarietyRepository(db)
pairs = TradeVarietyRepository(db, varieties)
auto_migrate(db, varieties, pairs)

assets.deposit("dep-2", "user2", "usdt", numeric("10000"))
orders = OrderRepository(db, pairs, assets)
order = orders.create_limit("user2", "btcusdt", OrderSide.BUY, "10", "1")
print(order.freeze_amount)   # 10.050
```

For a limit buy, price times quantity plus the pair's fee is frozen in the
base currency; for a limit sell, the quantity is frozen in the target
currency. A market sell by amount and a market buy by quantity freeze the
whole available balance of the currency they spend.

Settling a matched trade:

```python
from tradeledger.locks import SettleLocker
from tradeledger.settlement import Broker, SettleProcessor, TradeResult

broker = Broker()
processor = SettleProcessor(db, pairs, assets, broker, SettleLocker())
# processor.run(TradeResult(symbol="btcusdt", ask_order_id=..., bid_order_id=...,
#                           trade_price="10", trade_quantity="1"))
```

`run` records the trade, updates both orders (a limit order that is filled
leaves the unfinished list), moves the target currency to the buyer, the base
currency to the seller and both fees to the `systemFee` account, and publishes
the trade on the `notify.quote` topic. An optional `notifier` callable is
given the symbol and the trade's price, quantity, amount and time.

## What it does not do

- It does not match orders: trades come in as `TradeResult`s from elsewhere.
- It does not compute candles from trades; `KlineRepository` only stores and
  reads them.
- The `Broker` is in-process only; there is no network message queue, no
  HTTP or websocket interface and no command-line program.
- Order validation against a pair's minimum and maximum quantity and amount
  is not performed.