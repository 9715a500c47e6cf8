"""Database connection and session management."""

from typing import Optional
from sqlalchemy import create_engine, Engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config

# Base class for all database models
Base = declarative_base()

# Global engine and session factory instances
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine with settings suited to the URL's dialect."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        return create_engine(database_url, connect_args=connect_args, echo=echo)

    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True
    )


def get_database_engine(database_url: Optional[str] = None,
                        echo: Optional[bool] = None) -> Engine:
    """Get or create the process-wide database engine."""
    global _engine

    if _engine is None:
        config = get_config()
        _engine = create_database_engine(
            database_url or config.database_url,
            echo=config.database_echo if echo is None else echo
        )

    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Get a session factory bound to ``engine`` or to the global engine."""
    global _session_factory

    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_database_engine()
        )
    return _session_factory


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mapped classes
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())


def check_database_connection(engine: Optional[Engine] = None) -> bool:
    """Run a trivial query to verify the database is reachable."""
    with (engine or get_database_engine()).connect() as connection:
        connection.execute(text("SELECT 1"))
    return True
