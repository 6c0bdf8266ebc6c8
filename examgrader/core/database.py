from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from examgrader.core.config import get_settings


def build_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions hop threads under the test client and the race tests
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=echo, future=True, pool_pre_ping=True, connect_args=connect_args)


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@lru_cache()
def get_engine() -> Engine:
    settings = get_settings()
    return build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)


@lru_cache()
def get_sessionmaker() -> sessionmaker:
    return build_sessionmaker(get_engine())


def get_db() -> Iterator[Session]:
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine | None = None) -> None:
    """Create tables if they don't exist. Production schemas are managed outside this service."""
    from examgrader.models.orm import Base
    Base.metadata.create_all(engine or get_engine())
