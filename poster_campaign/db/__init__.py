# poster_campaign/db/__init__.py

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from poster_campaign.config import settings


def _connect_args() -> dict:
    if settings.DATABASE_URL.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(),
    pool_pre_ping=True,
)


if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    @event.listens_for(engine, "connect")
    def _enable_sqlite_fks(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    # Import models so every table is registered on Base.metadata
    import poster_campaign.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# Re-export for easy imports
__all__ = ["Base", "engine", "SessionLocal", "get_db", "init_db"]
