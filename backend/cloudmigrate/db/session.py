from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from cloudmigrate.core.config import settings
from cloudmigrate.db.base import Base

_connect_args = {"check_same_thread": False} if settings.database_dsn.startswith("sqlite") else {}

engine = create_engine(settings.database_dsn, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    # Imported for its side effect of registering the tables on Base.metadata.
    import cloudmigrate.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
