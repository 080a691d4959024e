import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """
    Build the SQLAlchemy engine for the billing store.

    SQLite is only used for local runs and tests; it needs the same-thread check
    disabled because worker threads share the pool, and a generous busy timeout
    so concurrent writers wait for the lock instead of failing.
    """
    if not database_url:
        raise ValueError("DATABASE_URL is required.")

    is_sqlite = database_url.startswith("sqlite")
    connect_args = {}
    if is_sqlite:
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=not is_sqlite,
        connect_args=connect_args,
    )

    if is_sqlite:
        # pysqlite defers BEGIN until the first write, which lets two writers
        # deadlock on lock promotion. Take the write lock up front instead.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """
    Session maker for sync operations. Objects stay readable after commit so
    callers can map them to read models once the transaction is closed.
    """
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """
    Create all billing tables.
    """
    Base.metadata.create_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Test database connection
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as exc:  # noqa: BLE001 - health probe reports instead of raising
        logger.error("Database connection failed: %s", exc)
        return False
