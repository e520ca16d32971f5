"""Database access helpers (Postgres) and store implementations."""

from .db_connection import get_db_engine
from .models import SCHEMA, Base, StockPriceRow, StockRow

__all__ = [
    "get_db_engine",
    "SCHEMA",
    "Base",
    "StockRow",
    "StockPriceRow",
]
