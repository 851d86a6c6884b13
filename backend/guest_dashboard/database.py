"""
Database configuration - SQLAlchemy persistence layer
The database only receives facts the in-memory ledgers already decided.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_db_engine(database_url: str):
    """Engine for the given URL; in-memory SQLite shares one connection."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def create_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine) -> None:
    """Create tables."""
    from guest_dashboard.models import records  # noqa - registers tables
    Base.metadata.create_all(bind=engine)
