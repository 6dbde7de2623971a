import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_MARKET_DB_URL = _require_env("RENTAL_MARKET_DB_URL")

engine_market = create_engine(
    RENTAL_MARKET_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalMarket = sessionmaker(
    bind=engine_market,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
