from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase


class Base(DeclarativeBase):
    pass


def init_engine(db_url: str = "sqlite:///did_wallet.db"):
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Background anchoring jobs run on worker threads.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, echo=False, future=True, connect_args=connect_args)

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def create_schema(engine) -> None:
    # Import models so every table is registered on Base.metadata.
    from . import models  # noqa: F401
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(Session) -> Iterator:
    session = Session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
