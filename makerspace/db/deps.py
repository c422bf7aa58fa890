from collections.abc import Generator

from .session import SessionLocalMakerspace


def get_makerspace_db() -> Generator:
    db = SessionLocalMakerspace()
    try:
        yield db
    finally:
        db.close()
