from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL


def build_engine(url: str):
    """Create the SQLAlchemy engine for ``url``.

    SQLite gets the pysqlite transaction fix so SAVEPOINTs (used by the
    audit trails and coupon redemption) work, and opens every transaction
    with BEGIN IMMEDIATE: SQLite has no row locks, so writers serialize on
    the database lock instead of FOR UPDATE.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


# Create the SQLAlchemy engine.
engine = build_engine(DATABASE_URL)

# Create a configured "Session" class for database interactions.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative ORM models.
Base = declarative_base()


def get_db():
    """FastAPI dependency to get a DB session for a single request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        # Ensure the session is always closed after the request is finished.
        db.close()
