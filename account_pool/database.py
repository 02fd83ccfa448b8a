"""Engine and session factory construction."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from account_pool.config import Settings


class Base(DeclarativeBase):
    """Declarative base for the pool and ledger tables."""

    pass


def build_engine(settings: Settings) -> Engine:
    connect_args = {}
    if settings.db_url.startswith("sqlite"):
        # Concurrent writers wait on the database lock instead of failing fast.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(settings.db_url, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
