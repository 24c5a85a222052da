"""Database bootstrap helpers shared by all services."""

from sqlalchemy import JSON, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from settlepay.common.config import settings


def build_engine(dsn: str) -> Engine:
    """Engine for `dsn`; SQLite files are shared with FastAPI's worker threads."""

    if make_url(dsn).get_backend_name() == "sqlite":
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ledgers readable after the session closes.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


# Single SQLAlchemy engine per process.
engine = build_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
