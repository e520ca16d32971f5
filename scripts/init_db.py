from __future__ import annotations

"""Create the PostgreSQL schema and the stocks/stock_prices tables."""

import argparse
import logging

from sqlalchemy import text

from stock_harvest.db import SCHEMA, Base, get_db_engine

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the harvest schema and tables (idempotent, no migrations)."
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop the harvest tables before creating them.",
    )
    return parser.parse_args()


def init_schema(engine, drop: bool = False) -> None:
    with engine.begin() as conn:
        conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"'))
        if drop:
            Base.metadata.drop_all(conn)
        Base.metadata.create_all(conn)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = parse_args()
    init_schema(get_db_engine(), drop=args.drop)
    logger.info("db_init_ok schema=%s tables=%s", SCHEMA, ",".join(sorted(Base.metadata.tables)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
