import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


BOARD_RENTAL_DB_URL = _require_env("BOARD_RENTAL_DB_URL")

_connect_args = {"check_same_thread": False} if BOARD_RENTAL_DB_URL.startswith("sqlite") else {}

engine_rental = create_engine(
    BOARD_RENTAL_DB_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
    future=True,
)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
