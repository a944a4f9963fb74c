from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from stockledger.core.config import settings

_is_sqlite = settings.database_url.lower().startswith("sqlite")

if _is_sqlite:
    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        # Writers wait on a locked database instead of failing straight away.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={settings.sqlite_busy_timeout_ms}")
        cursor.close()

else:
    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout_seconds,
        pool_recycle=settings.db_pool_recycle_seconds,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
