from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .settings import config_settings


def build_engine(database_url: str) -> Engine:
    """
    Creates the SQLAlchemy engine for the durable assignment/occurrence store.

    SQLite needs check_same_thread disabled because store writes run in
    worker threads off the event loop.
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Creates all tables known to the ORM base if they do not exist yet."""
    # Import models so they register on Base.metadata
    from paygate.models.orm import assignment, occurrence  # noqa: F401
    from paygate.models.orm.base import Base

    Base.metadata.create_all(bind=engine)


engine = build_engine(config_settings.DATABASE_URL)

SessionLocal = build_session_factory(engine)
