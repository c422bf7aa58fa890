import os
from collections.abc import Iterator
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from makerspace.db.base import Base

load_dotenv()


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


MAKERSPACE_DB_URL = _require_env("MAKERSPACE_DB_URL")


def _engine_options(db_url: str) -> dict:
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        # One shared connection, otherwise every checkout sees an empty database.
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine_makerspace = create_engine(
    MAKERSPACE_DB_URL,
    future=True,
    **_engine_options(MAKERSPACE_DB_URL),
)

SessionLocalMakerspace = sessionmaker(
    bind=engine_makerspace,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    import makerspace.models.shop_models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=engine_makerspace)


@contextmanager
def session_scope() -> Iterator[Session]:
    db = SessionLocalMakerspace()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
