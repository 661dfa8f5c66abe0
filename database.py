"""
Engine and session factory for the escrow ledger.

SQLite is used for local runs and tests, PostgreSQL in production. The
derivation index allocator takes an advisory lock only on PostgreSQL.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL must be set before the escrow engine starts")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # Sweeps run through asyncio.to_thread, so connections cross threads
    engine = create_engine(
        Config.DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    engine = create_engine(
        Config.DATABASE_URL,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "btc_escrow_engine",  # visible in pg_stat_activity
        }
    )

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


def create_tables() -> bool:
    """Create missing escrow tables; existing ones are left as they are"""
    try:
        logger.info(f"🏗️ SCHEMA_INIT: ensuring {len(Base.metadata.tables)} escrow tables exist")
        Base.metadata.create_all(bind=engine, checkfirst=True)

        table_names = sorted(inspect(engine).get_table_names())
        logger.info(f"✅ SCHEMA_READY: {len(table_names)} tables ({', '.join(table_names)})")
        return True
    except Exception as e:
        logger.error(f"❌ SCHEMA_INIT_FAILED: {e}", exc_info=True)
        return False


@contextmanager
def managed_session():
    """Session that commits on clean exit and rolls back on error"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Escrow DB session rolled back: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Run SELECT 1 against the configured database"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ DB_CONNECTION_OK")
        return True
    except Exception as e:
        logger.error(f"❌ DB_CONNECTION_FAILED: {e}")
        return False
