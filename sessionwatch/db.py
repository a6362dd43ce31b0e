from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL


def build_engine(url: str = DATABASE_URL) -> Engine:
    """
    Create the SQLAlchemy engine for the traffic store.

    SQLite gets its default pool (and is allowed across threads, since store
    calls run in the threadpool); server databases get a pool sized for
    concurrent post-response work.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 15},
            future=True,
        )
    return create_engine(
        url,
        pool_size=25,
        max_overflow=50,
        pool_timeout=10,       # fail fast instead of hanging 30s
        pool_pre_ping=True,
        pool_recycle=1800,
        future=True,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine()

# Classic session factory
SessionLocal = build_session_factory(engine)

# Base class for our ORM models
Base = declarative_base()

