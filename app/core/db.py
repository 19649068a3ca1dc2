from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .settings import config_settings

DATABASE_URL = config_settings.DATABASE_URL


def build_engine(database_url: str, echo: bool = False):
    # Only needed for SQLite to handle concurrent requests
    connect_args = (
        {"check_same_thread": False, "timeout": 30} if "sqlite" in database_url else {}
    )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


# The engine manages the connection pool and dialect.
engine = build_engine(DATABASE_URL, echo=config_settings.SQL_ECHO)

# Each request gets its own session (a unit of work).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> None:
    """Creates any missing tables."""
    # Imported for their side effect of registering tables on Base.metadata
    from app.models.orm import assignment, experiment  # noqa: F401
    from app.models.orm.base import Base

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
