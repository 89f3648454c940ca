"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the Channel Escrow deal service.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _begin_immediate_on_sqlite(sqlite_engine: Engine) -> None:
    """
    SQLite ignores SELECT ... FOR UPDATE. Taking the write lock when the
    transaction begins makes concurrent deal transitions queue up the same way
    the PostgreSQL row lock does.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transaction_handling(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Build an engine with pool settings suited to the backing database.

    PostgreSQL gets a conservative QueuePool with pre-ping. SQLite gets a single
    shared connection for in-memory databases (the test-suite); file databases
    take the write lock at BEGIN so transitions serialize across connections.
    """
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if in_memory else None,
        )
        if not in_memory:
            _begin_immediate_on_sqlite(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=7,           # Base pool
        max_overflow=15,       # Burst capacity
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "channel_escrow_deals",  # For monitoring in pg_stat_activity
        },
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory. expire_on_commit=False keeps loaded deals readable after the
# transaction commits, so results can be serialized outside the unit of work.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Test database connection"""
    target = bind or engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
