from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .models import Base


def make_engine(url: str | None = None, echo: bool = False) -> Engine:
    url = url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # FastAPI runs sync handlers and the monitor in worker threads
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=echo, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
