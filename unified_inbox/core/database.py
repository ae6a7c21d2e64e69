"""
Database engine and session management for the SQL storage backend.
"""
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from unified_inbox.core.logging import get_logger

logger = get_logger(__name__)

# Create base class for models
Base = declarative_base()


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    db_path = database_url.replace("sqlite:///", "")
    if not db_path or db_path == ":memory:":
        return
    if db_path.startswith("./"):
        db_path = db_path[2:]
    db_dir = Path(db_path).parent
    if db_dir and not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created database directory: {db_dir}")


def create_db_engine(database_url: str, debug: bool = False, busy_timeout: float = 10.0) -> Engine:
    """Create the database engine."""
    connect_args = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = busy_timeout
        _ensure_sqlite_directory(database_url)

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=debug,
        pool_pre_ping=True,
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred BEGIN
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def begin_immediate(conn):
            # Take the write lock up front so read-then-write never deadlocks
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    logger.info("Database engine created", extra={"extra_data": {"database_url": database_url}})
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_db(engine: Engine) -> None:
    """Initialize database tables."""
    from unified_inbox.models import conversation, idempotency, message  # noqa: F401 - Import to register models

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def check_db_connection(engine: Engine) -> bool:
    """Check if database is reachable."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
