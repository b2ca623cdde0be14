import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Get DB connection string from environment variables.
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./inventory.db")

# Base class for declarative models.
Base = declarative_base()


def create_db_engine(url: str = None):
    """Create an engine; SQLite URLs get thread-safe settings, in-memory ones a shared pool."""
    url = url or DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(url, pool_pre_ping=True, pool_recycle=300)


def create_session_factory(engine):
    # Objects stay usable after commit; services hand them back to callers.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine):
    """Create tables defined in models.py if they don't exist."""
    from . import models  # noqa: F401  (registers the tables on Base.metadata)

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory):
    """Yield a session for one unit of work and always close it."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
