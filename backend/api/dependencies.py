from typing import Generator

from sqlalchemy.orm import Session

from .. import config


def get_db() -> Generator[Session, None, None]:
    # Resolved at call time so tests can swap config.SessionLocal.
    db = config.SessionLocal()
    try:
        yield db
    finally:
        db.close()
