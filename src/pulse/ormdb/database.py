"""Database configuration and session management."""

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config.logging import get_logger
from ..config.settings import get_settings

# Get logger for this module
logger = get_logger(__name__)

# Base class for all ORM models
Base = declarative_base()

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

SessionFactory = Callable[[], Session]


def _configure_sqlite_for_performance(dbapi_connection, connection_record):
    """Configure SQLite for better performance and reliability."""
    cursor = dbapi_connection.cursor()
    # Enable WAL mode for better concurrency
    cursor.execute("PRAGMA journal_mode=WAL")
    # Enable foreign key constraints
    cursor.execute("PRAGMA foreign_keys=ON")
    # Wait for concurrent writers instead of failing immediately
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine_from_url(database_url: str, echo: bool = False) -> Engine:
    """Create a database engine for the given URL."""
    settings = get_settings()

    logger.info(
        "Creating database engine",
        url_type="sqlite" if database_url.startswith("sqlite") else "other",
        echo_sql=echo,
    )

    # Configure engine parameters based on database type
    engine_kwargs = {
        "echo": echo,
        "pool_pre_ping": settings.database_pool_pre_ping,
    }

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": 30,  # 30 second timeout for connections
        }
        # In-memory databases only exist on a single connection
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            engine_kwargs["poolclass"] = StaticPool
    else:
        # PostgreSQL/MySQL configuration
        engine_kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_recycle": settings.database_pool_recycle,
            }
        )

    engine = create_engine(database_url, **engine_kwargs)

    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _configure_sqlite_for_performance)

    return engine


def create_engine_from_settings() -> Engine:
    """Create database engine using application settings."""
    settings = get_settings()
    return create_engine_from_url(
        settings.get_database_url(), echo=settings.database_echo_sql
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Keep objects accessible after commit
    )


def get_engine() -> Engine:
    """Get the database engine, creating it if necessary."""
    global _engine

    if _engine is None:
        _engine = create_engine_from_settings()
        logger.info("Database engine initialized")

    return _engine


def get_session_factory() -> sessionmaker:
    """Get the session factory, creating it if necessary."""
    global _SessionLocal

    if _SessionLocal is None:
        _SessionLocal = create_session_factory(get_engine())
        logger.debug("Session factory created")

    return _SessionLocal


@contextmanager
def session_scope(session_factory: SessionFactory) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    The session is committed when the block exits cleanly and rolled back
    when it raises.
    """
    session = session_factory()

    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error("Database session rolled back", error=str(e), exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    # Make sure every model is registered on the metadata
    from . import models  # noqa: F401

    engine = engine or get_engine()

    logger.info("Creating database tables")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def check_database_health(session_factory: Optional[SessionFactory] = None) -> dict:
    """
    Check database connectivity and return health information.

    Returns:
        dict: Database health status
    """
    session_factory = session_factory or get_session_factory()

    try:
        with session_scope(session_factory) as session:
            health_check = session.execute(text("SELECT 1 as health_check")).scalar()

        logger.debug("Database health check successful")
        return {
            "status": "healthy",
            "connectivity": health_check == 1,
        }

    except Exception as e:
        logger.error("Database health check failed", error=str(e), exc_info=True)
        return {
            "status": "unhealthy",
            "error": str(e),
            "connectivity": False,
        }


def reset_engine():
    """Dispose of the global engine so the next call rebuilds it from settings."""
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
