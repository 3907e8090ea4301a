from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


@lru_cache()
def get_engine(database_url: str) -> Engine:
    """Return one engine per URL, creating the local schema on first use."""
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        # SQLite requires check_same_thread=False for usage across threads
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            # Share the single in-memory database across sessions
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **kwargs)

    from taskflow.app import models  # noqa: F401  register tables

    Base.metadata.create_all(bind=engine)
    return engine


def session_factory(database_url: str) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine(database_url))
