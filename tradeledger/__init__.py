"""Balances, orders, trade logs, candles and trade settlement for a spot exchange, stored in SQLite."""

__version__ = "0.1.0"

__all__ = [
    "assets",
    "database",
    "entities",
    "locks",
    "market_data",
    "orders",
    "settlement",
    "varieties",
]